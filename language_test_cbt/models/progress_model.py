from typing import List

from pydantic import BaseModel, Field


class PassageProgress(BaseModel):
    """지문별 진행 현황 (파생 값, 저장하지 않음)."""
    passage_index: int = Field(..., description="지문 순서")
    answered_count: int = Field(0, ge=0, description="답한 문제 수")
    total_count: int = Field(0, ge=0, description="지문 소속 문제 수")


class ProgressReport(BaseModel):
    answered_count: int = Field(0, ge=0, description="전체 답한 문제 수")
    total_count: int = Field(0, ge=0, description="전체 문제 수")
    percent: float = Field(0.0, ge=0.0, le=100.0, description="진행률 (%)")
    passages: List[PassageProgress] = Field(default_factory=list, description="지문별 현황")
