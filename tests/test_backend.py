import asyncio
import json

import pytest
import requests

from language_test_cbt.errors import LoadError, PersistTransientError, SessionInitError
from language_test_cbt.models.question_model import ExamModule
from language_test_cbt.models.session_state import AttemptStatus
from language_test_cbt.services.backend import HttpExamBackend


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode()

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeHttp:
    """requests.Session 대역. (method, path) → 응답 또는 예외."""

    def __init__(self, routes):
        self.routes = routes
        self.captured = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.replace("http://exam.test", "")
        self.captured.append((method, path, kwargs, headers))
        result = self.routes.get((method, path))
        if result is None:
            return FakeResponse(404)
        if isinstance(result, Exception):
            raise result
        return result


def make_backend(routes):
    http = FakeHttp(routes)
    return HttpExamBackend(api_base_url="http://exam.test/", token="secret", http=http), http


def test_fetch_test_parses_camel_case():
    backend, http = make_backend({
        ("GET", "/api/tests/3"): FakeResponse(payload={
            "id": 3, "title": "Listening 1", "module": "listening", "durationMinutes": 30,
        }),
    })
    paper = asyncio.run(backend.fetch_test(3))
    assert paper.module == ExamModule.LISTENING
    assert paper.duration_seconds == 1800
    assert http.captured[0][3]["Authorization"] == "Bearer secret"


def test_fetch_questions_connection_error_is_load_error():
    backend, _ = make_backend({
        ("GET", "/api/tests/3/questions"): requests.ConnectionError("down"),
    })
    with pytest.raises(LoadError):
        asyncio.run(backend.fetch_questions(3))


def test_existing_attempt_is_returned_without_creating():
    backend, http = make_backend({
        ("GET", "/api/attempts/active"): FakeResponse(payload={
            "id": 11, "testId": 3, "userId": 5, "status": "paused", "timeRemaining": 420,
        }),
    })
    attempt = asyncio.run(backend.create_or_resume_attempt(3))
    assert attempt.id == 11
    assert attempt.status == AttemptStatus.PAUSED
    assert attempt.time_remaining_seconds == 420
    assert [c[0] for c in http.captured] == ["GET"]
    assert http.captured[0][2]["params"] == {"testId": 3}


def test_attempt_created_when_none_active():
    backend, http = make_backend({
        ("POST", "/api/tests/3/attempts"): FakeResponse(201, payload={
            "id": 12, "testId": 3, "userId": 5, "status": "in_progress",
        }),
    })
    attempt = asyncio.run(backend.create_or_resume_attempt(3))
    assert attempt.id == 12
    assert attempt.time_remaining_seconds is None
    assert [c[0] for c in http.captured] == ["GET", "POST"]


def test_attempt_creation_failure_is_session_init_error():
    backend, _ = make_backend({
        ("GET", "/api/attempts/active"): FakeResponse(500),
    })
    with pytest.raises(SessionInitError):
        asyncio.run(backend.create_or_resume_attempt(3))


def test_status_sync_payload_and_failure():
    backend, http = make_backend({
        ("PATCH", "/api/attempts/11"): FakeResponse(200, payload={"id": 11}),
    })
    asyncio.run(backend.pause_attempt(11, 275))
    assert http.captured[-1][2]["json"] == {"status": "paused", "timeRemaining": 275}

    failing, _ = make_backend({("PATCH", "/api/attempts/11"): requests.Timeout("slow")})
    with pytest.raises(PersistTransientError):
        asyncio.run(failing.complete_attempt(11, 0))


def test_submit_answer_failure_is_transient():
    backend, _ = make_backend({
        ("POST", "/api/attempts/11/answers"): requests.ConnectionError("down"),
    })
    with pytest.raises(PersistTransientError):
        asyncio.run(backend.submit_answer(11, 101, "A"))


def test_existing_answers_keep_latest_per_question():
    backend, _ = make_backend({
        ("GET", "/api/attempts/11/answers"): FakeResponse(payload=[
            {"questionId": 101, "answer": "A", "createdAt": "2024-01-01T10:00:00Z"},
            {"questionId": 101, "answer": "B", "createdAt": "2024-01-01T10:05:00Z"},
            {"questionId": 102, "answer": "text", "createdAt": "2024-01-01T10:01:00Z"},
        ]),
    })
    answers = {a.question_id: a.value for a in asyncio.run(backend.fetch_existing_answers(11))}
    assert answers == {101: "B", 102: "text"}


def test_missing_base_url_is_rejected():
    with pytest.raises(ValueError):
        HttpExamBackend(api_base_url="")
