"""
services/memory_backend.py

딕셔너리 기반 ExamBackend. 샘플 시험과 테스트에서 사용한다.
fail_* 카운터로 일시 장애를 흉내 낼 수 있다.
"""

import asyncio
import itertools
from typing import Any, Dict, Iterable, List, Tuple

from language_test_cbt.errors import LoadError, PersistTransientError, SessionInitError
from language_test_cbt.models.question_model import ExamPaper, Passage, Question
from language_test_cbt.models.session_state import Answer, Attempt, AttemptStatus, utcnow
from language_test_cbt.services.backend import ExamBackend


class InMemoryExamBackend(ExamBackend):

    def __init__(self, user_id: int = 1):
        self.user_id = user_id
        self.papers: Dict[int, ExamPaper] = {}
        self.questions: Dict[int, List[Question]] = {}
        self.passages: Dict[int, List[Passage]] = {}
        self.attempts: Dict[int, Attempt] = {}
        self.answers: Dict[int, Dict[int, Answer]] = {}

        # 호출 기록
        self.submit_log: List[Tuple[int, int, str]] = []
        self.status_log: List[Tuple[int, str]] = []

        # 장애 주입: 남은 횟수만큼 실패
        self.fail_loads = 0
        self.fail_submits = 0
        self.fail_status_calls = 0
        self.submit_delay = 0.0

        self._ids = itertools.count(1)

    def add_paper(
        self,
        paper: ExamPaper,
        questions: Iterable[Question],
        passages: Iterable[Passage] = (),
    ) -> None:
        self.papers[paper.id] = paper
        self.questions[paper.id] = list(questions)
        self.passages[paper.id] = list(passages)

    # ── 시험/문제/지문 ─────────────────────────────────────────────────────

    def _check_load(self, test_id: int) -> None:
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise LoadError(f"시험 데이터를 불러오지 못했습니다 (test_id={test_id})")
        if test_id not in self.papers:
            raise LoadError(f"존재하지 않는 시험입니다 (test_id={test_id})")

    async def fetch_test(self, test_id: int) -> ExamPaper:
        self._check_load(test_id)
        return self.papers[test_id].model_copy()

    async def fetch_questions(self, test_id: int) -> List[Question]:
        self._check_load(test_id)
        return [q.model_copy() for q in self.questions[test_id]]

    async def fetch_passages(self, test_id: int) -> List[Passage]:
        self._check_load(test_id)
        return [p.model_copy() for p in self.passages[test_id]]

    # ── 응시 ───────────────────────────────────────────────────────────────

    async def create_or_resume_attempt(self, test_id: int) -> Attempt:
        if test_id not in self.papers:
            raise SessionInitError(f"존재하지 않는 시험입니다 (test_id={test_id})")
        for attempt in self.attempts.values():
            if (attempt.test_id == test_id and attempt.user_id == self.user_id
                    and not attempt.status.is_terminal):
                return attempt.model_copy()
        attempt = Attempt(id=next(self._ids), test_id=test_id, user_id=self.user_id)
        self.attempts[attempt.id] = attempt
        self.answers[attempt.id] = {}
        return attempt.model_copy()

    def _update_status(self, attempt_id: int, status: AttemptStatus, **fields: Any) -> None:
        self.status_log.append((attempt_id, status.value))
        if self.fail_status_calls > 0:
            self.fail_status_calls -= 1
            raise PersistTransientError(f"응시 상태 동기화 실패 (attempt={attempt_id})")
        attempt = self.attempts[attempt_id]
        attempt.status = status
        for key, value in fields.items():
            setattr(attempt, key, value)

    async def pause_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        self._update_status(attempt_id, AttemptStatus.PAUSED, time_remaining_seconds=time_remaining_seconds)

    async def resume_attempt(self, attempt_id: int) -> None:
        self._update_status(attempt_id, AttemptStatus.IN_PROGRESS)

    async def complete_attempt(self, attempt_id: int, time_remaining_seconds: int) -> None:
        self._update_status(
            attempt_id, AttemptStatus.COMPLETED,
            time_remaining_seconds=time_remaining_seconds, end_time=utcnow(),
        )

    async def abandon_attempt(self, attempt_id: int) -> None:
        self._update_status(attempt_id, AttemptStatus.ABANDONED, end_time=utcnow())

    # ── 답안 ───────────────────────────────────────────────────────────────

    async def submit_answer(self, attempt_id: int, question_id: int, value: str) -> Dict[str, Any]:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.fail_submits > 0:
            self.fail_submits -= 1
            raise PersistTransientError(f"답안 저장 실패 (question={question_id})")
        self.submit_log.append((attempt_id, question_id, value))
        self.answers.setdefault(attempt_id, {})[question_id] = Answer(question_id=question_id, value=value)
        return {"attemptId": attempt_id, "questionId": question_id, "answer": value}

    async def fetch_existing_answers(self, attempt_id: int) -> List[Answer]:
        return [a.model_copy() for a in self.answers.get(attempt_id, {}).values()]
