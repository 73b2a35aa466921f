import pytest

from language_test_cbt.models.question_model import (
    ExamModule, ExamPaper, Passage, Question, QuestionType,
)
from language_test_cbt.services.events import NotificationSink
from language_test_cbt.services.memory_backend import InMemoryExamBackend

TEST_ID = 7


class RecordingSink(NotificationSink):
    def __init__(self):
        self.times = []
        self.warnings = []
        self.dismissed = []
        self.time_ends = []
        self.statuses = []
        self.notices = []

    def update_time_remaining(self, seconds):
        self.times.append(seconds)

    def on_warning(self, warning):
        self.warnings.append(warning)

    def on_warning_dismissed(self, warning):
        self.dismissed.append(warning)

    def on_time_end(self, attempt):
        self.time_ends.append(attempt)

    def on_status_changed(self, previous, current):
        self.statuses.append((previous.value, current.value))

    def on_notice(self, notice):
        self.notices.append(notice)

    def notice_codes(self):
        return [n.code for n in self.notices]


def make_paper(duration_minutes=10):
    paper = ExamPaper(id=TEST_ID, title="Reading Mock", module=ExamModule.READING,
                      duration_minutes=duration_minutes)
    passages = [
        Passage(id=1, test_id=TEST_ID, index=1, title="P1", content="..."),
        Passage(id=2, test_id=TEST_ID, index=2, title="P2", content="..."),
    ]
    questions = [
        Question(id=101, test_id=TEST_ID, passage_index=1, type=QuestionType.MULTIPLE_CHOICE,
                 content="Q1", options=["A", "B", "C"]),
        Question(id=102, test_id=TEST_ID, passage_index=1, type=QuestionType.FILL_BLANK, content="Q2"),
        Question(id=103, test_id=TEST_ID, passage_index=2, type=QuestionType.TRUE_FALSE_NG,
                 content="Q3", options=["TRUE", "FALSE", "NOT GIVEN"]),
    ]
    return paper, questions, passages


@pytest.fixture
def backend():
    b = InMemoryExamBackend()
    paper, questions, passages = make_paper()
    b.add_paper(paper, questions, passages)
    return b


@pytest.fixture
def sink():
    return RecordingSink()
