"""
models/event_model.py

엔진이 알림 싱크로 발행하는 이벤트 모델.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from language_test_cbt.models.session_state import utcnow


class TimeWarning(BaseModel):
    """남은 시간 임계값(300초, 60초) 통과 시 1회 발행되는 경고."""
    threshold_seconds: int = Field(..., description="통과한 임계값 (초)")
    time_remaining_seconds: int = Field(..., ge=0, description="발행 시점 남은 시간")
    dismiss_after_seconds: float = Field(5.0, description="자동 닫힘까지 시간")

    @property
    def message(self) -> str:
        minutes, seconds = divmod(self.threshold_seconds, 60)
        if minutes and not seconds:
            return f"시험 종료까지 {minutes}분 남았습니다."
        return f"시험 종료까지 {self.threshold_seconds}초 남았습니다."


class Notice(BaseModel):
    """
    치명적이지 않은 보고.
    저장 실패 경고, 종료된 세션에 대한 무시된 호출, 자동재생 차단 등.
    """
    level: str = Field("warning", description="info | warning")
    code: str = Field(..., description="기계 판독용 코드 (예: persist_failed)")
    message: str = Field(..., description="사용자 표시 메시지")
    question_id: Optional[int] = Field(None, description="관련 문제 ID")


class SessionEvent(BaseModel):
    """EventLog 가 UI 폴링용으로 보관하는 직렬화 가능한 이벤트."""
    type: str = Field(..., description="time_remaining | warning | warning_dismissed | time_end | status | notice")
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
