"""
services/backend.py

시험 백엔드 경계 (REST API).

Public API:
  - ExamBackend     : 엔진이 의존하는 추상 인터페이스 (모두 async)
  - HttpExamBackend : requests 기반 구현. 블로킹 호출은 asyncio.to_thread 로 실행

오류 매핑:
  - 시험/문제/지문/기존 답안 조회 실패 → LoadError
  - 응시 생성/재개 실패                → SessionInitError
  - 답안 저장, 상태 동기화 실패        → PersistTransientError
재시도는 여기서 하지 않는다 (AnswerStore / 세션 엔진 소관).
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from config import API_BASE_URL, API_TOKEN, REQUEST_TIMEOUT
from language_test_cbt.errors import LoadError, PersistTransientError, SessionInitError
from language_test_cbt.models.question_model import ExamPaper, Passage, Question
from language_test_cbt.models.session_state import Answer, Attempt, AttemptStatus

logger = logging.getLogger(__name__)


class ExamBackend:
    """세션 엔진이 사용하는 백엔드 계약. 각 원격 호출은 멱등이다."""

    # ── 시험/문제/지문 ─────────────────────────────────────────────────────
    async def fetch_test(self, test_id: int) -> ExamPaper:
        raise NotImplementedError

    async def fetch_questions(self, test_id: int) -> List[Question]:
        raise NotImplementedError

    async def fetch_passages(self, test_id: int) -> List[Passage]:
        raise NotImplementedError

    # ── 응시 ───────────────────────────────────────────────────────────────
    async def create_or_resume_attempt(self, test_id: int) -> Attempt:
        raise NotImplementedError

    async def pause_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        raise NotImplementedError

    async def resume_attempt(self, attempt_id: int) -> None:
        raise NotImplementedError

    async def complete_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        raise NotImplementedError

    async def abandon_attempt(self, attempt_id: int) -> None:
        raise NotImplementedError

    # ── 답안 ───────────────────────────────────────────────────────────────
    async def submit_answer(self, attempt_id: int, question_id: int, value: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def fetch_existing_answers(self, attempt_id: int) -> List[Answer]:
        raise NotImplementedError


def latest_answers(answers: List[Answer]) -> List[Answer]:
    """같은 문제에 답안이 여러 건이면 마지막 것만 남긴다 (last-write-wins)."""
    latest: Dict[int, Answer] = {}
    for a in answers:
        prev = latest.get(a.question_id)
        if prev is None or a.last_modified >= prev.last_modified:
            latest[a.question_id] = a
    return list(latest.values())


class HttpExamBackend(ExamBackend):

    def __init__(
        self,
        *,
        api_base_url: str = API_BASE_URL,
        token: str = API_TOKEN,
        timeout_seconds: float = REQUEST_TIMEOUT,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not api_base_url:
            raise ValueError("API_BASE_URL 이 설정되지 않았습니다.")
        self.api_base_url = api_base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = float(timeout_seconds)
        self.http = http or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.api_base_url}{path}"
        r = self.http.request(method, url, headers=self._headers(), timeout=self.timeout_seconds, **kwargs)
        r.raise_for_status()
        if not r.content:
            return None
        return r.json()

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # ── 시험/문제/지문 ─────────────────────────────────────────────────────

    async def _load(self, path: str) -> Any:
        try:
            return await self._call("GET", path)
        except requests.RequestException as e:
            logger.error(f"데이터 로드 실패 {path}: {e}")
            raise LoadError(f"시험 데이터를 불러오지 못했습니다: {path}") from e

    async def fetch_test(self, test_id: int) -> ExamPaper:
        data = await self._load(f"/api/tests/{int(test_id)}")
        try:
            return ExamPaper.model_validate(data)
        except ValidationError as e:
            raise LoadError(f"시험 정보 형식 오류 (test_id={test_id})") from e

    async def fetch_questions(self, test_id: int) -> List[Question]:
        data = await self._load(f"/api/tests/{int(test_id)}/questions")
        try:
            return [Question.model_validate(item) for item in data or []]
        except ValidationError as e:
            raise LoadError(f"문제 형식 오류 (test_id={test_id})") from e

    async def fetch_passages(self, test_id: int) -> List[Passage]:
        data = await self._load(f"/api/tests/{int(test_id)}/passages")
        try:
            return [Passage.model_validate(item) for item in data or []]
        except ValidationError as e:
            raise LoadError(f"지문 형식 오류 (test_id={test_id})") from e

    # ── 응시 ───────────────────────────────────────────────────────────────

    def _find_or_create_attempt(self, test_id: int) -> Dict[str, Any]:
        try:
            active = self._request("GET", "/api/attempts/active", params={"testId": int(test_id)})
        except requests.HTTPError as e:
            if e.response is None or e.response.status_code != 404:
                raise
            active = None
        if active:
            logger.info(f"진행 중인 응시 재개: attempt={active.get('id')} test={test_id}")
            return active
        return self._request("POST", f"/api/tests/{int(test_id)}/attempts", json={"status": "in_progress"})

    async def create_or_resume_attempt(self, test_id: int) -> Attempt:
        try:
            data = await asyncio.to_thread(self._find_or_create_attempt, test_id)
            return Attempt.model_validate(data)
        except requests.RequestException as e:
            raise SessionInitError(f"응시를 시작하지 못했습니다 (test_id={test_id}): {e}") from e
        except ValidationError as e:
            raise SessionInitError(f"응시 정보 형식 오류 (test_id={test_id})") from e

    async def _patch_status(self, attempt_id: int, payload: Dict[str, Any]) -> None:
        try:
            await self._call("PATCH", f"/api/attempts/{int(attempt_id)}", json=payload)
        except requests.RequestException as e:
            raise PersistTransientError(
                f"응시 상태 동기화 실패 (attempt={attempt_id}, status={payload.get('status')}): {e}"
            ) from e

    async def pause_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        await self._patch_status(attempt_id, {
            "status": AttemptStatus.PAUSED.value,
            "timeRemaining": time_remaining_seconds,
        })

    async def resume_attempt(self, attempt_id: int) -> None:
        await self._patch_status(attempt_id, {"status": AttemptStatus.IN_PROGRESS.value})

    async def complete_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        await self._patch_status(attempt_id, {
            "status": AttemptStatus.COMPLETED.value,
            "timeRemaining": time_remaining_seconds,
        })

    async def abandon_attempt(self, attempt_id: int) -> None:
        await self._patch_status(attempt_id, {"status": AttemptStatus.ABANDONED.value})

    # ── 답안 ───────────────────────────────────────────────────────────────

    async def submit_answer(self, attempt_id: int, question_id: int, value: str) -> Dict[str, Any]:
        try:
            ack = await self._call(
                "POST",
                f"/api/attempts/{int(attempt_id)}/answers",
                json={"questionId": int(question_id), "answer": value},
            )
        except requests.RequestException as e:
            raise PersistTransientError(f"답안 저장 실패 (question={question_id}): {e}") from e
        return ack or {}

    async def fetch_existing_answers(self, attempt_id: int) -> List[Answer]:
        data = await self._load(f"/api/attempts/{int(attempt_id)}/answers")
        try:
            answers = [Answer.model_validate(item) for item in data or []]
        except ValidationError as e:
            raise LoadError(f"답안 형식 오류 (attempt={attempt_id})") from e
        return latest_answers(answers)
