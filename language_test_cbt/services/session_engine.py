"""
services/session_engine.py

단일 응시의 시작부터 종료까지를 관리하는 상태 머신.

상태:
    NOT_STARTED → IN_PROGRESS ⇄ PAUSED → COMPLETED
                  IN_PROGRESS / PAUSED → ABANDONED (외부 협력자가 기록)

  - 틱마다 남은 시간을 정확히 1초 감소시킨다 (벽시계 차이가 아니라 틱 수 기준).
  - 0초가 되면 시간 종료 경로로 완료 처리하고 on_time_end 를 정확히 한 번 발행한다.
  - 300초/60초 임계값 통과 시 1회성 경고를 발행하고 5초 뒤 자동으로 닫는다.
  - 종료 상태에서 들어온 틱/일시정지/재개/답안 호출은 무시하고 보고만 한다.

Attempt.status 와 time_remaining_seconds 는 이 클래스만 변경한다.
UI 와 진행률 집계는 snapshot()/progress() 로 읽기만 한다.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config import ANSWER_DEBOUNCE_SECONDS, WARNING_DISMISS_SECONDS, WARNING_THRESHOLDS
from language_test_cbt.errors import LoadError, PersistTransientError, SessionInitError
from language_test_cbt.models.event_model import Notice, TimeWarning
from language_test_cbt.models.progress_model import ProgressReport
from language_test_cbt.models.question_model import ExamPaper, Passage, Question
from language_test_cbt.models.session_state import (
    Attempt, AttemptStatus, CompletionReason, FlushResult,
    SessionSnapshot, SessionState, utcnow,
)
from language_test_cbt.services.answer_store import AnswerStore, persist_with_retry
from language_test_cbt.services.backend import ExamBackend
from language_test_cbt.services.clock import ClockSource, IntervalClock
from language_test_cbt.services.events import NotificationSink, SessionNotifier
from language_test_cbt.services.progress import calculate_progress

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    AttemptStatus.IN_PROGRESS: {AttemptStatus.PAUSED, AttemptStatus.COMPLETED, AttemptStatus.ABANDONED},
    AttemptStatus.PAUSED: {AttemptStatus.IN_PROGRESS, AttemptStatus.COMPLETED, AttemptStatus.ABANDONED},
}


class ExamSessionEngine:

    def __init__(
        self,
        test_id: int,
        backend: ExamBackend,
        *,
        clock: Optional[ClockSource] = None,
        sinks: Optional[List[NotificationSink]] = None,
        debounce_seconds: float = ANSWER_DEBOUNCE_SECONDS,
        warning_thresholds=WARNING_THRESHOLDS,
        warning_dismiss_seconds: float = WARNING_DISMISS_SECONDS,
    ):
        self.test_id = test_id
        self.backend = backend
        self.clock = clock if clock is not None else IntervalClock()
        self.notifier = SessionNotifier(sinks)
        self.answers = AnswerStore(
            self._submit_answer,
            debounce_seconds=debounce_seconds,
            on_warning=self._on_persist_warning,
        )
        self.warning_thresholds = tuple(sorted(set(warning_thresholds), reverse=True))
        self.warning_dismiss_seconds = warning_dismiss_seconds

        self.paper: Optional[ExamPaper] = None
        self.questions: List[Question] = []
        self.passages: List[Passage] = []
        self.attempt: Optional[Attempt] = None
        self.completion_reason: Optional[CompletionReason] = None
        self.last_flush: Optional[FlushResult] = None

        self._fired_warnings: Set[int] = set()
        self._dismiss_handles: List[asyncio.TimerHandle] = []
        self._time_end_fired = False
        self._starting = False

    # ── 상태 조회 ──────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        if self.attempt is None:
            return SessionState.NOT_STARTED
        return SessionState(self.attempt.status.value)

    @property
    def time_remaining_seconds(self) -> Optional[int]:
        return self.attempt.time_remaining_seconds if self.attempt else None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            test_id=self.test_id,
            state=self.state,
            attempt=self.attempt.model_copy() if self.attempt else None,
            completion_reason=self.completion_reason,
            fired_warnings=sorted(self._fired_warnings, reverse=True),
            pending_answers=self.answers.pending,
        )

    def progress(self) -> ProgressReport:
        return calculate_progress(self.questions, self.answers.snapshot(), self.passages)

    def get_answer(self, question_id: int) -> str:
        return self.answers.get_answer(question_id)

    def question(self, question_id: int) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)

    # ── 시작 ───────────────────────────────────────────────────────────────

    async def load(self) -> ExamPaper:
        """시험지/문제/지문 로드. 실패 시 LoadError 전파."""
        paper, questions, passages = await asyncio.gather(
            self.backend.fetch_test(self.test_id),
            self.backend.fetch_questions(self.test_id),
            self.backend.fetch_passages(self.test_id),
        )
        self.paper = paper
        self.questions = list(questions)
        self.passages = sorted(passages, key=lambda p: p.index)
        logger.info(
            f"시험 로드 완료: test={self.test_id} 문제 {len(self.questions)}개, 지문 {len(self.passages)}개"
        )
        return paper

    async def start(self) -> Attempt:
        """
        응시 시작. 진행 중인 응시가 있으면 새로 만들지 않고 그 응시를 재개한다
        (남은 시간과 기존 답안 유지).

        Raises:
            SessionInitError: 시험을 불러올 수 없거나 응시를 만들/재개할 수 없을 때.
                              원인이 LoadError 이면 __cause__ 로 연결된다.
        """
        if self.state != SessionState.NOT_STARTED:
            self._ignored("start")
            return self.attempt
        if self._starting:
            raise SessionInitError("이미 응시를 시작하는 중입니다.")
        if not isinstance(self.test_id, int) or self.test_id <= 0:
            raise SessionInitError(f"올바르지 않은 시험 ID: {self.test_id!r}")

        self._starting = True
        try:
            attempt = await self._open_attempt()
        finally:
            self._starting = False

        self.attempt = attempt
        logger.info(
            f"응시 시작: attempt={attempt.id} test={self.test_id} "
            f"남은 시간 {attempt.time_remaining_seconds}초, 기존 답안 {len(self.answers)}개"
        )
        self.notifier.status_changed(SessionState.NOT_STARTED, SessionState.IN_PROGRESS)
        self.notifier.update_time_remaining(attempt.time_remaining_seconds)
        self.clock.start(self._on_tick)
        return attempt

    async def _open_attempt(self) -> Attempt:
        try:
            await self.load()
        except LoadError as e:
            raise SessionInitError(f"시험 정보를 불러오지 못했습니다 (test_id={self.test_id})") from e

        try:
            attempt = await self.backend.create_or_resume_attempt(self.test_id)
        except PersistTransientError as e:
            raise SessionInitError(f"응시를 생성하지 못했습니다 (test_id={self.test_id})") from e

        if attempt.status.is_terminal:
            raise SessionInitError(f"이미 종료된 응시입니다 (attempt={attempt.id}, status={attempt.status.value})")
        if attempt.time_remaining_seconds is None:
            attempt.time_remaining_seconds = self.paper.duration_seconds
        elif attempt.time_remaining_seconds == 0:
            raise SessionInitError(f"시험 시간이 만료된 응시입니다 (attempt={attempt.id})")

        try:
            existing = await self.backend.fetch_existing_answers(attempt.id)
        except LoadError as e:
            raise SessionInitError(f"기존 답안을 불러오지 못했습니다 (attempt={attempt.id})") from e
        self.answers.hydrate(existing)

        if attempt.status == AttemptStatus.PAUSED:
            await self._sync("응시 재개", self.backend.resume_attempt, attempt.id)
            attempt.status = AttemptStatus.IN_PROGRESS
        return attempt

    # ── 일시정지 / 재개 ────────────────────────────────────────────────────

    async def pause(self) -> bool:
        """IN_PROGRESS → PAUSED. 시계를 멈추고 남은 시간을 저장한다."""
        if self.state == SessionState.PAUSED:
            return False
        if self.state != SessionState.IN_PROGRESS:
            self._ignored("pause")
            return False
        self.clock.stop()
        self._set_status(AttemptStatus.PAUSED)
        await self._sync(
            "일시정지", self.backend.pause_attempt,
            self.attempt.id, self.attempt.time_remaining_seconds,
        )
        return True

    async def resume(self) -> bool:
        """PAUSED → IN_PROGRESS. 저장된 남은 시간부터 시계를 다시 시작한다."""
        if self.state == SessionState.IN_PROGRESS:
            return False
        if self.state != SessionState.PAUSED:
            self._ignored("resume")
            return False
        self._set_status(AttemptStatus.IN_PROGRESS)
        self.clock.start(self._on_tick)
        await self._sync("재개", self.backend.resume_attempt, self.attempt.id)
        return True

    # ── 완료 / 포기 ────────────────────────────────────────────────────────

    async def complete(self) -> Optional[Attempt]:
        """수동 제출. 미저장 답안을 모두 저장한 뒤 반환한다."""
        if self.state not in (SessionState.IN_PROGRESS, SessionState.PAUSED):
            self._ignored("complete")
            return self.attempt
        await self._finish(CompletionReason.SUBMITTED)
        return self.attempt

    async def _finish(self, reason: CompletionReason) -> None:
        self.clock.stop()
        self.attempt.end_time = utcnow()
        self.completion_reason = reason
        self._set_status(AttemptStatus.COMPLETED)

        if reason == CompletionReason.TIME_UP and not self._time_end_fired:
            self._time_end_fired = True
            self.notifier.time_end(self.attempt)

        self.last_flush = await self.answers.flush_all()
        if not self.last_flush.ok:
            self._notice(
                "flush_incomplete",
                f"답안 {len(self.last_flush.failed)}개를 서버에 저장하지 못했습니다. 답안은 이 기기에 보관됩니다.",
            )
        await self._sync(
            "제출", self.backend.complete_attempt,
            self.attempt.id, self.attempt.time_remaining_seconds,
        )
        logger.info(
            f"응시 완료: attempt={self.attempt.id} 사유={reason.value} "
            f"남은 시간 {self.attempt.time_remaining_seconds}초"
        )

    def mark_abandoned(self) -> bool:
        """
        외부 협력자(세션 레지스트리 등)가 응시 포기를 기록할 때 호출.
        로컬 상태 전이만 하며 백엔드 기록은 호출자 몫이다.
        """
        if self.state not in (SessionState.IN_PROGRESS, SessionState.PAUSED):
            self._ignored("abandon")
            return False
        self.clock.stop()
        self.attempt.end_time = utcnow()
        self._set_status(AttemptStatus.ABANDONED)
        return True

    async def close(self) -> None:
        """컴포넌트 정리: 시계 정지, 타이머 취소, 미저장 답안 저장."""
        self.clock.stop()
        for handle in self._dismiss_handles:
            handle.cancel()
        self._dismiss_handles.clear()
        if self.attempt is not None and self.answers.pending:
            await self.answers.flush_all()
        await self.answers.close()

    # ── 답안 ───────────────────────────────────────────────────────────────

    def set_answer(self, question_id: int, value: str) -> bool:
        """진행 중일 때만 답안을 받는다. 그 외 상태에서는 무시하고 False."""
        if self.state != SessionState.IN_PROGRESS:
            self._ignored("answer", question_id=question_id)
            return False
        if self.questions and self.question(question_id) is None:
            raise ValueError(f"이 시험에 없는 문제입니다: {question_id}")
        self.answers.set_answer(question_id, value)
        return True

    async def _submit_answer(self, question_id: int, value: str) -> Dict[str, Any]:
        return await self.backend.submit_answer(self.attempt.id, question_id, value)

    def _on_persist_warning(self, question_id: int, error: PersistTransientError) -> None:
        self._notice(
            "persist_failed",
            "답안을 서버에 저장하지 못했습니다. 답안은 이 기기에 보관되며 제출 시 다시 저장합니다.",
            question_id=question_id,
        )

    # ── 타이머 ─────────────────────────────────────────────────────────────

    async def _on_tick(self) -> None:
        if self.state != SessionState.IN_PROGRESS:
            self._ignored("tick")
            return

        previous = self.attempt.time_remaining_seconds
        remaining = max(previous - 1, 0)
        self.attempt.time_remaining_seconds = remaining
        self.notifier.update_time_remaining(remaining)
        self._check_warnings(previous, remaining)

        if remaining == 0:
            logger.info(f"시험 시간 종료: attempt={self.attempt.id}")
            await self._finish(CompletionReason.TIME_UP)

    def _check_warnings(self, previous: int, remaining: int) -> None:
        for threshold in self.warning_thresholds:
            if threshold in self._fired_warnings:
                continue
            if remaining <= threshold < previous:
                self._fired_warnings.add(threshold)
                warning = TimeWarning(
                    threshold_seconds=threshold,
                    time_remaining_seconds=remaining,
                    dismiss_after_seconds=self.warning_dismiss_seconds,
                )
                self.notifier.warning(warning)
                handle = asyncio.get_running_loop().call_later(
                    self.warning_dismiss_seconds, self.notifier.warning_dismissed, warning
                )
                self._dismiss_handles.append(handle)

    # ── 내부 헬퍼 ──────────────────────────────────────────────────────────

    def _set_status(self, status: AttemptStatus) -> None:
        current = self.attempt.status
        if status not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise RuntimeError(f"허용되지 않는 상태 전이: {current.value} → {status.value}")
        previous = self.state
        self.attempt.status = status
        logger.info(f"세션 상태 변경: {previous.value} → {status.value} (attempt={self.attempt.id})")
        self.notifier.status_changed(previous, self.state)

    async def _sync(self, what: str, call: Callable[..., Awaitable[Any]], *args) -> bool:
        """상태 동기화. 1회 재시도 후에도 실패하면 경고만 남기고 로컬 상태 유지."""
        try:
            await persist_with_retry(lambda: call(*args), what)
            return True
        except PersistTransientError as e:
            logger.warning(f"{what} 동기화 실패: {e}")
            self._notice("sync_failed", f"{what} 상태를 서버에 저장하지 못했습니다. 현재 상태는 이 기기에서 유지됩니다.")
            return False

    def _ignored(self, action: str, question_id: Optional[int] = None) -> None:
        self._notice(
            f"ignored_{action}",
            f"'{action}' 요청을 무시했습니다 (현재 상태: {self.state.value}).",
            question_id=question_id,
        )

    def _notice(self, code: str, message: str, question_id: Optional[int] = None) -> None:
        self.notifier.notice(Notice(code=code, message=message, question_id=question_id))
