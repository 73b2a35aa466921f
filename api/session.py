"""
api/session.py — 멀티유저 인메모리 세션 (쿠키 기반)

각 브라우저(클라이언트 프로필)에 UUID 세션 ID를 발급하고, 세션별로
시험 세션 엔진 / 이벤트 버퍼 / 음원 재생 가드를 유지한다.
TTL(기본 1시간) 경과 시 만료되며, 진행 중이던 응시는 포기(abandoned)로 기록된다.
"""

import asyncio
import logging
import os
import threading
import time
import uuid
from typing import Any, List

from config import PLAYED_AUDIO_DIR, SESSION_TTL
from language_test_cbt.errors import PersistTransientError
from language_test_cbt.models.session_state import SessionState
from language_test_cbt.services.audio_guard import (
    AudioPlayGuard, JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore,
)
from language_test_cbt.services.events import EventLog

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_sessions: dict[str, dict[str, Any]] = {}
_timestamps: dict[str, float] = {}


def _audio_store(sid: str) -> KeyValueStore:
    if PLAYED_AUDIO_DIR:
        return JsonFileKeyValueStore(os.path.join(PLAYED_AUDIO_DIR, f"{sid}.json"))
    return MemoryKeyValueStore()


def _new_state(sid: str) -> dict[str, Any]:
    return {
        "engine": None,
        "events": EventLog(),
        "audio_guard": AudioPlayGuard(_audio_store(sid)),
        # 같은 쿠키로 동시에 들어온 시작 요청을 한 줄로 세운다
        "start_lock": asyncio.Lock(),
    }


def create_session() -> str:
    """새 세션을 생성하고 세션 ID를 반환."""
    sid = uuid.uuid4().hex
    with _lock:
        _sessions[sid] = _new_state(sid)
        _timestamps[sid] = time.time()
    return sid


def get_session(sid: str) -> dict[str, Any] | None:
    """세션 ID로 세션 데이터를 가져옴. 만료되었거나 없으면 None (정리는 cleanup_expired 가 담당)."""
    with _lock:
        if sid not in _sessions:
            return None
        if time.time() - _timestamps[sid] > SESSION_TTL:
            return None
        _timestamps[sid] = time.time()  # 접근 시 갱신
        return _sessions[sid]


def reset(sid: str) -> dict[str, Any] | None:
    """
    세션 초기화 (음원 재생 기록과 시작 Lock 은 클라이언트 프로필 단위이므로 유지).
    이전 상태를 반환하므로 호출자가 release() 로 엔진을 정리해야 한다.
    """
    with _lock:
        if sid not in _sessions:
            return None
        previous = _sessions[sid]
        _sessions[sid] = _new_state(sid)
        _sessions[sid]["audio_guard"] = previous["audio_guard"]
        _sessions[sid]["start_lock"] = previous["start_lock"]
        _timestamps[sid] = time.time()
        return previous


def cleanup_expired() -> List[dict[str, Any]]:
    """만료된 세션을 레지스트리에서 제거하고 그 상태들을 반환."""
    now = time.time()
    with _lock:
        expired = [sid for sid, ts in _timestamps.items() if now - ts > SESSION_TTL]
        removed = [_sessions.pop(sid) for sid in expired]
        for sid in expired:
            del _timestamps[sid]
    return removed


def drain_all() -> List[dict[str, Any]]:
    """서버 종료 시 전체 세션 제거."""
    with _lock:
        removed = list(_sessions.values())
        _sessions.clear()
        _timestamps.clear()
    return removed


async def release(state: dict[str, Any]) -> None:
    """
    세션 상태 정리. 진행 중/일시정지 응시는 포기로 기록한 뒤
    엔진을 닫는다 (미저장 답안은 닫을 때 저장 시도).
    """
    engine = state.get("engine")
    if engine is None:
        return
    live = engine.state in (SessionState.IN_PROGRESS, SessionState.PAUSED)
    if live:
        engine.mark_abandoned()
    await engine.close()
    if live:
        try:
            await engine.backend.abandon_attempt(engine.attempt.id)
        except PersistTransientError as e:
            logger.warning(f"응시 포기 기록 실패 (attempt={engine.attempt.id}): {e}")
