"""
services/answer_store.py

문제별 답안 인메모리 저장소 + 지연(debounce) 백엔드 저장.

정책:
  - set_answer() 는 즉시 메모리에 반영하고, 문제별로 조용한 구간(debounce)이
    지난 뒤 한 번만 백엔드에 저장한다 (키 입력 연타를 하나의 호출로 합침).
  - flush_all() 은 debounce 를 건너뛰고 미저장 답안 전체를 저장한 뒤 반환한다.
  - 저장 실패는 조용히 1회 재시도한다. 다시 실패하면 메모리 값을 유지하고
    경고를 호출자에게 전달한다. 답안은 절대 버리지 않는다.
  - 같은 문제에 대한 저장 호출은 동시에 하나만 진행된다 (문제별 Lock).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from config import ANSWER_DEBOUNCE_SECONDS
from language_test_cbt.errors import PersistTransientError
from language_test_cbt.models.session_state import Answer, FlushResult, utcnow

logger = logging.getLogger(__name__)

SubmitFn = Callable[[int, str], Awaitable[Any]]
WarningFn = Callable[[int, PersistTransientError], None]

_MAX_PERSIST_ATTEMPTS = 2   # 최초 1회 + 재시도 1회


async def persist_with_retry(call: Callable[[], Awaitable[Any]], what: str) -> Any:
    """
    PersistTransientError 에 한해 1회 재시도.
    두 번째 실패는 그대로 올려 보낸다.
    """
    for attempt in range(1, _MAX_PERSIST_ATTEMPTS + 1):
        try:
            return await call()
        except PersistTransientError as e:
            if attempt >= _MAX_PERSIST_ATTEMPTS:
                raise
            logger.info(f"{what} 실패, 재시도 ({attempt}/{_MAX_PERSIST_ATTEMPTS}): {e}")


@dataclass
class _Entry:
    value: str
    last_modified: datetime = field(default_factory=utcnow)
    version: int = 1
    persisted_version: int = 0

    @property
    def dirty(self) -> bool:
        return self.persisted_version != self.version


class AnswerStore:

    def __init__(
        self,
        submit: SubmitFn,
        *,
        debounce_seconds: float = ANSWER_DEBOUNCE_SECONDS,
        on_warning: Optional[WarningFn] = None,
    ):
        self._submit = submit
        self.debounce_seconds = debounce_seconds
        self._on_warning = on_warning
        self._entries: Dict[int, _Entry] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ── 조회 ───────────────────────────────────────────────────────────────

    def get_answer(self, question_id: int) -> str:
        entry = self._entries.get(question_id)
        return entry.value if entry else ""

    def snapshot(self) -> Dict[int, str]:
        """읽기 전용 복사본 {question_id: value}."""
        return {qid: e.value for qid, e in self._entries.items()}

    def answers(self) -> List[Answer]:
        return [
            Answer(question_id=qid, value=e.value, last_modified=e.last_modified)
            for qid, e in self._entries.items()
        ]

    @property
    def pending(self) -> List[int]:
        return sorted(qid for qid, e in self._entries.items() if e.dirty)

    def __len__(self) -> int:
        return len(self._entries)

    # ── 변경 ───────────────────────────────────────────────────────────────

    def hydrate(self, answers: Iterable[Answer]) -> None:
        """재개 시 백엔드에 이미 저장된 답안을 불러온다 (저장 완료 상태)."""
        for a in answers:
            self._entries[a.question_id] = _Entry(
                value=a.value, last_modified=a.last_modified, version=1, persisted_version=1
            )

    def set_answer(self, question_id: int, value: str) -> Answer:
        if self._closed:
            raise RuntimeError("닫힌 AnswerStore 에 답안을 쓸 수 없습니다.")
        entry = self._entries.get(question_id)
        now = utcnow()
        if entry is None:
            entry = _Entry(value=value, last_modified=now)
            self._entries[question_id] = entry
        else:
            entry.value = value
            entry.last_modified = now
            entry.version += 1
        self._schedule(question_id)
        return Answer(question_id=question_id, value=value, last_modified=now)

    # ── 저장 ───────────────────────────────────────────────────────────────

    def _schedule(self, question_id: int) -> None:
        handle = self._timers.pop(question_id, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[question_id] = loop.call_later(
            self.debounce_seconds, self._spawn_persist, question_id
        )

    def _spawn_persist(self, question_id: int) -> None:
        self._timers.pop(question_id, None)
        task = asyncio.get_running_loop().create_task(self._persist_quietly(question_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist_quietly(self, question_id: int) -> None:
        try:
            await self._persist(question_id)
        except PersistTransientError as e:
            self._warn(question_id, e)

    def _warn(self, question_id: int, error: PersistTransientError) -> None:
        logger.warning(f"답안 저장 실패, 메모리 값 유지 (question={question_id}): {error}")
        if self._on_warning is not None:
            self._on_warning(question_id, error)

    async def _persist(self, question_id: int) -> None:
        lock = self._locks.setdefault(question_id, asyncio.Lock())
        async with lock:
            entry = self._entries.get(question_id)
            if entry is None or not entry.dirty:
                return
            version, value = entry.version, entry.value
            await persist_with_retry(
                lambda: self._submit(question_id, value),
                f"답안 저장 (question={question_id})",
            )
            # 저장 중 새로 수정되었으면 dirty 유지 → 다음 저장에서 최신 값 전송
            entry.persisted_version = max(entry.persisted_version, version)

    async def flush_all(self) -> FlushResult:
        """
        debounce 대기 중인 답안을 포함해 미저장 답안 전체를 저장한다.
        진행 중인 저장이 있으면 끝나기를 기다린 뒤 최신 값인지 다시 확인한다.
        """
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        question_ids = list(self._entries)
        results = await asyncio.gather(
            *(self._persist(qid) for qid in question_ids),
            return_exceptions=True,
        )

        flushed = FlushResult()
        for qid, outcome in zip(question_ids, results):
            if isinstance(outcome, PersistTransientError):
                self._warn(qid, outcome)
                flushed.failed[qid] = str(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif self._entries[qid].dirty:
                flushed.failed[qid] = "저장 후 변경됨"
            else:
                flushed.persisted.append(qid)
        logger.info(f"답안 일괄 저장: 성공 {len(flushed.persisted)}개, 실패 {len(flushed.failed)}개")
        return flushed

    async def close(self) -> None:
        """타이머 취소 및 진행 중 저장 대기. 이후 set_answer 는 거부된다."""
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
