"""
services/progress.py

지문별/전체 답안 진행률 집계.
순수 Python 함수로 구성. 입력을 변경하지 않고, 캐시하지 않는다.
문제 수가 시험 길이(보통 100문항 미만)로 제한되므로 매번 다시 계산한다.
"""

from typing import Dict, Iterable, List, Mapping, Optional

from language_test_cbt.models.progress_model import PassageProgress, ProgressReport
from language_test_cbt.models.question_model import Passage, Question


def is_answered(value: Optional[str]) -> bool:
    """빈 문자열/None 은 미응답."""
    return bool(value)


def calculate_progress(
    questions: List[Question],
    answers: Mapping[int, str],
    passages: Optional[Iterable[Passage]] = None,
) -> ProgressReport:
    """
    문제 목록과 답안 스냅샷으로 진행 현황을 계산한다.

    Args:
        questions: 시험 전체 Question 리스트.
        answers:   답안 스냅샷. {question.id: 답안 문자열}
        passages:  지문 리스트. 주어지면 지문 index 순서로 분류하고,
                   없으면 문제의 passage_index 값들로 분류한다.

    Returns:
        ProgressReport. 지문에 속하지 않은 문제는 전체 합계에만 포함된다.
    """
    total = len(questions)
    answered = sum(1 for q in questions if is_answered(answers.get(q.id)))
    percent = round(answered / total * 100, 1) if total else 0.0

    return ProgressReport(
        answered_count=answered,
        total_count=total,
        percent=percent,
        passages=calculate_passage_progress(questions, answers, passages),
    )


def calculate_passage_progress(
    questions: List[Question],
    answers: Mapping[int, str],
    passages: Optional[Iterable[Passage]] = None,
) -> List[PassageProgress]:
    buckets: Dict[int, List[Question]] = {}
    for q in questions:
        if q.passage_index is not None:
            buckets.setdefault(q.passage_index, []).append(q)

    if passages is not None:
        indexes = sorted({p.index for p in passages})
    else:
        indexes = sorted(buckets)

    result = []
    for idx in indexes:
        qs = buckets.get(idx, [])
        result.append(PassageProgress(
            passage_index=idx,
            answered_count=sum(1 for q in qs if is_answered(answers.get(q.id))),
            total_count=len(qs),
        ))
    return result
