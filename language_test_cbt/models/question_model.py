from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ExamModule(str, Enum):
    READING = "reading"
    LISTENING = "listening"
    WRITING = "writing"
    SPEAKING = "speaking"


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE_NG = "true_false_ng"
    FILL_BLANK = "fill_blank"
    MATCHING = "matching"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"
    SPEAKING = "speaking"


class _WireModel(BaseModel):
    """백엔드 JSON(camelCase)과 파이썬 필드명(snake_case)을 모두 허용."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExamPaper(_WireModel):
    """
    시험지 메타데이터 (읽기/듣기/쓰기/말하기 모듈 중 하나).
    """
    id: int = Field(..., description="시험 ID")
    title: str = Field(..., min_length=1, description="시험 제목")
    description: Optional[str] = Field(None, description="시험 설명")
    module: ExamModule = Field(..., description="시험 모듈")
    duration_minutes: int = Field(..., gt=0, description="제한 시간 (분)")
    active: bool = Field(True, description="응시 가능 여부")

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60


class Passage(_WireModel):
    """읽기 지문. index는 시험 내 순서 (1-based)."""
    id: int = Field(..., description="지문 ID")
    test_id: int = Field(..., description="소속 시험 ID")
    title: str = Field(..., description="지문 제목")
    content: str = Field(..., description="지문 본문")
    index: int = Field(..., ge=1, description="시험 내 지문 순서")


class Question(_WireModel):
    """
    시험 문제 모델.
    정답(correct_answer)은 채점 서비스 소관이므로 엔진에서는 다루지 않는다.
    """
    id: int = Field(..., description="문제 ID (고유 식별자)")
    test_id: int = Field(..., description="소속 시험 ID")
    type: QuestionType = Field(..., description="문제 유형")
    content: str = Field(..., min_length=1, description="문제 내용")
    options: Optional[Union[List[str], Dict[str, Any]]] = Field(
        None,
        description="보기 (객관식/참거짓은 리스트, 매칭은 딕셔너리)"
    )
    audio_path: Optional[str] = Field(None, description="듣기 문제 음원 경로")
    passage_index: Optional[int] = Field(None, description="읽기 문제가 속한 지문 순서")
    allow_replay: bool = Field(False, description="음원 재청취 허용 여부")

    @field_validator("options")
    @classmethod
    def validate_options_length(cls, v):
        """보기 리스트가 있으면 최소 2개 이상이어야 한다."""
        if isinstance(v, list) and len(v) < 2:
            raise ValueError("보기(options)는 최소 2개 이상의 항목이 필요합니다.")
        return v

    @model_validator(mode="after")
    def validate_choice_has_options(self) -> "Question":
        if self.type == QuestionType.MULTIPLE_CHOICE and not self.options:
            raise ValueError(f"객관식 문제({self.id})에 보기가 없습니다.")
        return self
