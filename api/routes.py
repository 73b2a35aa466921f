"""
api/routes.py — FastAPI 엔드포인트

UI 레이어에 시험 세션 엔진을 노출한다. 렌더링은 하지 않는다.
타이머 진행/경고/시간 종료 알림은 /api/session/events 폴링으로 전달한다.
"""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

import api.session as session
from api.sample_test import SAMPLE_READING_TEST_ID
from language_test_cbt.errors import LoadError, SessionInitError
from language_test_cbt.models.question_model import Question
from language_test_cbt.models.session_state import SessionState
from language_test_cbt.services.audio_guard import AudioPlayGuard, audio_id_for
from language_test_cbt.services.backend import ExamBackend
from language_test_cbt.services.session_engine import ExamSessionEngine

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class StartSessionBody(BaseModel):
    test_id: int

class StartSampleBody(BaseModel):
    test_id: int = SAMPLE_READING_TEST_ID

class SaveAnswerBody(BaseModel):
    question_id: int
    value: str

class AudioPlayBody(BaseModel):
    autoplay: bool = False
    blocked: bool = False


# ── 헬퍼 ─────────────────────────────────────────────────────────────────────

def _state(request: Request) -> dict:
    state = session.get_session(request.state.session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="세션이 만료되었습니다.")
    return state


def _engine(request: Request) -> ExamSessionEngine:
    engine = _state(request).get("engine")
    if engine is None:
        raise HTTPException(status_code=404, detail="시험 세션이 없습니다.")
    return engine


def _question_to_dict(q: Question, guard: AudioPlayGuard) -> dict:
    d = {
        "id": q.id,
        "type": q.type.value,
        "content": q.content,
        "options": q.options,
        "passage_index": q.passage_index,
        "audio_path": q.audio_path,
        "allow_replay": q.allow_replay,
    }
    if q.audio_path:
        audio_id = audio_id_for(q.audio_path)
        d["audio_id"] = audio_id
        d["can_play"] = guard.can_play(audio_id, q.allow_replay)
    return d


def _replay_allowed(state: dict, audio_id: str) -> bool:
    """재생 제한은 문제 설정을 따른다. 진행 중인 시험에 없는 음원은 1회 재생."""
    engine: ExamSessionEngine | None = state.get("engine")
    if engine is None:
        return False
    for q in engine.questions:
        if q.audio_path and audio_id_for(q.audio_path) == audio_id:
            return q.allow_replay
    return False


def _session_to_dict(engine: ExamSessionEngine) -> dict:
    snap = engine.snapshot()
    progress = engine.progress()
    return {
        "test_id": snap.test_id,
        "title": engine.paper.title if engine.paper else None,
        "module": engine.paper.module.value if engine.paper else None,
        "state": snap.state.value,
        "attempt_id": snap.attempt.id if snap.attempt else None,
        "time_remaining": snap.time_remaining_seconds,
        "completion_reason": snap.completion_reason.value if snap.completion_reason else None,
        "answered_count": progress.answered_count,
        "total": progress.total_count,
        "pending_answers": snap.pending_answers,
        "question_ids": [q.id for q in engine.questions],
    }


async def _start(request: Request, test_id: int, backend: ExamBackend) -> dict:
    state = _state(request)
    # 먼저 들어온 요청이 엔진을 등록할 때까지 기다린 뒤 그 엔진을 그대로 쓴다
    async with state["start_lock"]:
        return await _start_locked(state, test_id, backend)


async def _start_locked(state: dict, test_id: int, backend: ExamBackend) -> dict:
    current: ExamSessionEngine | None = state.get("engine")
    if current is not None and current.state in (SessionState.IN_PROGRESS, SessionState.PAUSED):
        if current.test_id == test_id:
            return {"ok": True, **_session_to_dict(current)}
        raise HTTPException(status_code=409, detail="다른 시험이 진행 중입니다. 먼저 제출하거나 초기화하세요.")
    if current is not None:
        await current.close()

    engine = ExamSessionEngine(test_id, backend, sinks=[state["events"]])
    try:
        await engine.start()
    except SessionInitError as e:
        await engine.close()
        if isinstance(e.__cause__, LoadError):
            raise HTTPException(
                status_code=503,
                detail={"message": "시험 정보를 불러오지 못했습니다. 다시 시도해 주세요.", "retryable": True},
            )
        raise HTTPException(status_code=409, detail=str(e))

    state["engine"] = engine
    return {"ok": True, **_session_to_dict(engine)}


# ── 엔드포인트 ───────────────────────────────────────────────────────────────

@router.post("/api/session/start")
async def start_session(request: Request, body: StartSessionBody):
    return await _start(request, body.test_id, request.app.state.backend)


@router.post("/api/session/start-sample")
async def start_sample_session(request: Request, body: StartSampleBody):
    return await _start(request, body.test_id, request.app.state.sample_backend)


@router.get("/api/session/state")
async def get_session_state(request: Request):
    return _session_to_dict(_engine(request))


@router.post("/api/session/pause")
async def pause_session(request: Request):
    engine = _engine(request)
    changed = await engine.pause()
    return {"ok": True, "changed": changed, **_session_to_dict(engine)}


@router.post("/api/session/resume")
async def resume_session(request: Request):
    engine = _engine(request)
    changed = await engine.resume()
    return {"ok": True, "changed": changed, **_session_to_dict(engine)}


@router.post("/api/session/complete")
async def complete_session(request: Request):
    engine = _engine(request)
    await engine.complete()
    flush = engine.last_flush
    return {
        "ok": True,
        "failed_answers": sorted(flush.failed) if flush else [],
        **_session_to_dict(engine),
    }


@router.get("/api/question/{index}")
async def get_question(request: Request, index: int):
    engine = _engine(request)
    questions = engine.questions
    if not questions or not (0 <= index < len(questions)):
        raise HTTPException(status_code=404, detail="문제를 찾을 수 없습니다.")

    q = questions[index]
    d = _question_to_dict(q, _state(request)["audio_guard"])
    d.update({"saved_answer": engine.get_answer(q.id), "index": index, "total": len(questions)})
    return d


@router.get("/api/passages")
async def get_passages(request: Request):
    engine = _engine(request)
    return [p.model_dump() for p in engine.passages]


@router.post("/api/session/answer")
async def save_answer(request: Request, body: SaveAnswerBody):
    engine = _engine(request)
    try:
        accepted = engine.set_answer(body.question_id, body.value)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not accepted:
        raise HTTPException(status_code=400, detail="진행 중인 시험이 아닙니다.")
    return {"ok": True, "answered_count": engine.progress().answered_count}


@router.get("/api/session/progress")
async def get_progress(request: Request):
    return _engine(request).progress().model_dump()


@router.get("/api/session/events")
async def get_events(request: Request):
    events = _state(request)["events"]
    return {
        "time_remaining": events.time_remaining,
        "events": [e.model_dump(mode="json") for e in events.drain()],
    }


@router.get("/api/audio/{audio_id}")
async def get_audio_status(request: Request, audio_id: str):
    state = _state(request)
    guard: AudioPlayGuard = state["audio_guard"]
    return {
        "audio_id": audio_id,
        "has_played": guard.has_played(audio_id),
        "can_play": guard.can_play(audio_id, _replay_allowed(state, audio_id)),
    }


@router.post("/api/audio/{audio_id}/play")
async def play_audio(request: Request, audio_id: str, body: AudioPlayBody):
    state = _state(request)
    guard: AudioPlayGuard = state["audio_guard"]
    allow_replay = _replay_allowed(state, audio_id)
    if body.autoplay:
        decision = guard.record_autoplay(audio_id, allow_replay, blocked=body.blocked)
    else:
        decision = guard.request_play(audio_id, allow_replay)
    return {"ok": True, **decision.model_dump()}


@router.post("/api/reset")
async def reset_session(request: Request):
    state = _state(request)
    # 시작 처리 중이면 끝날 때까지 기다린 뒤 초기화
    async with state["start_lock"]:
        previous = session.reset(request.state.session_id)
    if previous is not None:
        await session.release(previous)
    return {"ok": True}
