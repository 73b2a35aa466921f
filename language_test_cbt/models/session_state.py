"""
models/session_state.py

응시(Attempt)와 답안(Answer), 세션 스냅샷 모델.
Pydantic BaseModel 기반: 백엔드 JSON(camelCase) 직렬화/역직렬화 및 타입 안전성 확보.
상태 전이 로직은 services/session_engine.py 에 있다.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptStatus(str, Enum):
    """백엔드에 저장되는 응시 상태."""
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.COMPLETED, AttemptStatus.ABANDONED)


class SessionState(str, Enum):
    """엔진 상태. NOT_STARTED 는 응시가 아직 없을 때만 존재한다."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class CompletionReason(str, Enum):
    SUBMITTED = "submitted"
    TIME_UP = "time_up"


class Attempt(BaseModel):
    """
    단일 응시 인스턴스.

    Attributes:
        id:                     응시 ID (백엔드 발급).
        test_id:                시험 ID.
        user_id:                응시자 ID.
        status:                 응시 상태. 세션 엔진만 변경한다.
        start_time:             응시 시작 시각.
        end_time:               종료 시각. 완료/포기 전에는 None.
        time_remaining_seconds: 남은 시간 (초). None 이면 시험 제한 시간으로 초기화.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    id: int = Field(..., description="응시 ID")
    test_id: int = Field(..., description="시험 ID")
    user_id: Optional[int] = Field(None, description="응시자 ID")
    status: AttemptStatus = Field(
        default=AttemptStatus.IN_PROGRESS,
        description="응시 상태"
    )
    start_time: Optional[datetime] = Field(
        default_factory=utcnow,
        description="응시 시작 시각"
    )
    end_time: Optional[datetime] = Field(None, description="응시 종료 시각")
    time_remaining_seconds: Optional[int] = Field(
        None,
        ge=0,
        alias="timeRemaining",
        description="남은 시간 (초)"
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        # 구버전 클라이언트가 남긴 timed_out 은 완료로 취급
        if v == "timed_out":
            return AttemptStatus.COMPLETED
        return v


class Answer(BaseModel):
    """문제별 답안. 응시당 문제 하나에 최신 답안 하나만 유효 (last-write-wins)."""

    model_config = ConfigDict(populate_by_name=True)

    question_id: int = Field(
        ...,
        validation_alias=AliasChoices("question_id", "questionId"),
        description="문제 ID"
    )
    value: str = Field(
        ...,
        validation_alias=AliasChoices("value", "answer"),
        description="답안 (자유 서술, 선택 보기, 매칭 페이로드 직렬화 문자열)"
    )
    last_modified: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("last_modified", "lastModified", "createdAt"),
        description="마지막 수정 시각"
    )


class FlushResult(BaseModel):
    """AnswerStore.flush_all() 결과."""
    persisted: List[int] = Field(default_factory=list, description="저장 확인된 문제 ID")
    failed: Dict[int, str] = Field(default_factory=dict, description="저장 실패 문제 ID → 오류 메시지")

    @property
    def ok(self) -> bool:
        return not self.failed


class SessionSnapshot(BaseModel):
    """관찰자(UI, 진행률 표시)에게 넘기는 읽기 전용 복사본."""
    test_id: int
    state: SessionState
    attempt: Optional[Attempt] = None
    completion_reason: Optional[CompletionReason] = None
    fired_warnings: List[int] = Field(default_factory=list)
    pending_answers: List[int] = Field(default_factory=list)

    @property
    def time_remaining_seconds(self) -> Optional[int]:
        return self.attempt.time_remaining_seconds if self.attempt else None
