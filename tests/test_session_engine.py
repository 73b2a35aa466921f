import asyncio

import pytest

from conftest import TEST_ID, RecordingSink
from language_test_cbt.errors import LoadError, SessionInitError
from language_test_cbt.models.session_state import (
    Answer, AttemptStatus, CompletionReason, SessionState,
)
from language_test_cbt.services.clock import IntervalClock, ManualClock
from language_test_cbt.services.session_engine import ExamSessionEngine


def make_engine(backend, sink, **kwargs):
    kwargs.setdefault("clock", ManualClock())
    kwargs.setdefault("debounce_seconds", 60)
    return ExamSessionEngine(TEST_ID, backend, sinks=[sink], **kwargs)


def test_full_countdown_warnings_and_time_end(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        attempt = await engine.start()
        assert engine.state == SessionState.IN_PROGRESS
        assert attempt.time_remaining_seconds == 600

        await engine.clock.advance(300)
        assert engine.time_remaining_seconds == 300
        assert [w.threshold_seconds for w in sink.warnings] == [300]

        await engine.clock.advance(240)
        assert engine.time_remaining_seconds == 60
        assert [w.threshold_seconds for w in sink.warnings] == [300, 60]

        await engine.clock.advance(60)
        assert engine.time_remaining_seconds == 0
        assert engine.state == SessionState.COMPLETED
        assert engine.completion_reason == CompletionReason.TIME_UP
        assert len(sink.time_ends) == 1
        assert engine.attempt.end_time is not None

        # 잘못 재시작된 시계의 틱은 처리되지 않는다
        engine.clock.start(engine._on_tick)
        assert await engine.clock.advance(5) == 5
        assert engine.time_remaining_seconds == 0
        assert len(sink.time_ends) == 1
        assert len(sink.warnings) == 2
        assert "ignored_tick" in sink.notice_codes()

        assert backend.attempts[attempt.id].status == AttemptStatus.COMPLETED
        await engine.close()

    asyncio.run(scenario())


def test_time_remaining_strictly_decreases_by_one(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        await engine.clock.advance(20)
        ticks = sink.times[1:]  # 첫 값은 시작 시 발행
        assert ticks == list(range(599, 579, -1))
        await engine.close()

    asyncio.run(scenario())


def test_pause_freezes_time_and_resume_continues(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        attempt = await engine.start()
        await engine.clock.advance(10)

        assert await engine.pause() is True
        assert engine.state == SessionState.PAUSED
        assert await engine.pause() is False  # 이미 일시정지
        assert await engine.clock.advance(5) == 0
        assert engine.time_remaining_seconds == 590
        assert backend.attempts[attempt.id].time_remaining_seconds == 590

        assert await engine.resume() is True
        assert await engine.resume() is False  # 이미 진행 중
        assert engine.time_remaining_seconds == 590
        await engine.clock.advance(1)
        assert engine.time_remaining_seconds == 589
        await engine.close()

    asyncio.run(scenario())


def test_pause_then_resume_leaves_time_unchanged(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        await engine.clock.advance(3)
        before = engine.time_remaining_seconds
        await engine.pause()
        await engine.resume()
        assert engine.time_remaining_seconds == before
        await engine.close()

    asyncio.run(scenario())


def test_warning_fires_once_and_is_dismissed(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink, warning_thresholds=(598,), warning_dismiss_seconds=0.01)
        await engine.start()
        await engine.clock.advance(2)
        assert [w.threshold_seconds for w in sink.warnings] == [598]
        assert sink.warnings[0].time_remaining_seconds == 598

        await engine.pause()
        await engine.resume()
        await engine.clock.advance(3)
        assert len(sink.warnings) == 1

        await asyncio.sleep(0.05)
        assert [w.threshold_seconds for w in sink.dismissed] == [598]
        await engine.close()

    asyncio.run(scenario())


def test_starting_with_open_attempt_resumes_it(backend, sink):
    async def scenario():
        existing = await backend.create_or_resume_attempt(TEST_ID)
        backend.attempts[existing.id].time_remaining_seconds = 420
        backend.answers[existing.id][101] = Answer(question_id=101, value="B")

        engine = make_engine(backend, sink)
        attempt = await engine.start()

        assert attempt.id == existing.id
        assert len(backend.attempts) == 1
        assert engine.time_remaining_seconds == 420
        assert engine.get_answer(101) == "B"
        assert engine.answers.pending == []
        await engine.close()

    asyncio.run(scenario())


def test_paused_attempt_is_resumed_on_start(backend, sink):
    async def scenario():
        existing = await backend.create_or_resume_attempt(TEST_ID)
        await backend.pause_attempt(existing.id, 300)

        engine = make_engine(backend, sink)
        await engine.start()

        assert engine.state == SessionState.IN_PROGRESS
        assert engine.time_remaining_seconds == 300
        assert backend.attempts[existing.id].status == AttemptStatus.IN_PROGRESS
        await engine.close()

    asyncio.run(scenario())


def test_start_fails_when_test_cannot_be_loaded(backend, sink):
    async def scenario():
        backend.fail_loads = 3
        engine = make_engine(backend, sink)
        with pytest.raises(SessionInitError) as excinfo:
            await engine.start()
        assert isinstance(excinfo.value.__cause__, LoadError)
        assert engine.state == SessionState.NOT_STARTED
        assert backend.attempts == {}

    asyncio.run(scenario())


def test_start_fails_for_unknown_or_invalid_test(backend, sink):
    async def scenario():
        with pytest.raises(SessionInitError):
            await ExamSessionEngine(999, backend, clock=ManualClock()).start()
        with pytest.raises(SessionInitError):
            await ExamSessionEngine(0, backend, clock=ManualClock()).start()

    asyncio.run(scenario())


def test_start_rejects_expired_attempt(backend, sink):
    async def scenario():
        existing = await backend.create_or_resume_attempt(TEST_ID)
        backend.attempts[existing.id].time_remaining_seconds = 0
        with pytest.raises(SessionInitError):
            await make_engine(backend, sink).start()

    asyncio.run(scenario())


def test_complete_flushes_pending_and_acknowledged_answers(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink, debounce_seconds=0.01)
        attempt = await engine.start()

        engine.set_answer(101, "A")
        await asyncio.sleep(0.05)
        assert backend.submit_log == [(attempt.id, 101, "A")]

        engine.answers.debounce_seconds = 60
        engine.set_answer(102, "glassblowing")
        assert engine.answers.pending == [102]

        await engine.complete()
        assert engine.state == SessionState.COMPLETED
        assert engine.completion_reason == CompletionReason.SUBMITTED
        assert sorted(engine.last_flush.persisted) == [101, 102]
        assert backend.submit_log == [(attempt.id, 101, "A"), (attempt.id, 102, "glassblowing")]
        assert sink.time_ends == []
        await engine.close()

    asyncio.run(scenario())


def test_last_write_wins_single_persisted_value(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        attempt = await engine.start()
        engine.set_answer(103, "TRUE")
        engine.set_answer(103, "FALSE")
        await engine.answers.flush_all()
        assert backend.submit_log == [(attempt.id, 103, "FALSE")]
        assert backend.answers[attempt.id][103].value == "FALSE"
        await engine.close()

    asyncio.run(scenario())


def test_persist_failure_keeps_answer_and_warns(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        backend.fail_submits = 2
        engine.set_answer(101, "C")

        result = await engine.answers.flush_all()
        assert 101 in result.failed
        assert engine.get_answer(101) == "C"
        assert "persist_failed" in sink.notice_codes()

        await engine.complete()
        assert engine.last_flush.persisted == [101]
        await engine.close()

    asyncio.run(scenario())


def test_single_persist_failure_is_retried_silently(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        attempt = await engine.start()
        backend.fail_submits = 1
        engine.set_answer(101, "A")
        result = await engine.answers.flush_all()
        assert result.ok
        assert backend.submit_log == [(attempt.id, 101, "A")]
        assert "persist_failed" not in sink.notice_codes()
        await engine.close()

    asyncio.run(scenario())


def test_status_sync_failure_keeps_local_state(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        backend.fail_status_calls = 2
        assert await engine.pause() is True
        assert engine.state == SessionState.PAUSED
        assert "sync_failed" in sink.notice_codes()
        await engine.close()

    asyncio.run(scenario())


def test_terminal_session_ignores_calls(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        await engine.complete()

        assert await engine.pause() is False
        assert await engine.resume() is False
        assert engine.set_answer(101, "A") is False
        await engine.complete()
        assert engine.state == SessionState.COMPLETED
        codes = sink.notice_codes()
        for code in ("ignored_pause", "ignored_resume", "ignored_answer", "ignored_complete"):
            assert code in codes
        await engine.close()

    asyncio.run(scenario())


def test_answers_rejected_while_paused_and_unknown_question(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        with pytest.raises(ValueError):
            engine.set_answer(999, "x")
        await engine.pause()
        assert engine.set_answer(101, "A") is False
        assert engine.get_answer(101) == ""
        await engine.close()

    asyncio.run(scenario())


def test_mark_abandoned_stops_clock(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        assert engine.mark_abandoned() is True
        assert engine.state == SessionState.ABANDONED
        assert not engine.clock.running
        assert engine.mark_abandoned() is False
        assert await engine.resume() is False
        await engine.close()

    asyncio.run(scenario())


def test_progress_reflects_answers(backend, sink):
    async def scenario():
        engine = make_engine(backend, sink)
        await engine.start()
        engine.set_answer(101, "A")
        engine.set_answer(103, "TRUE")
        report = engine.progress()
        assert (report.answered_count, report.total_count) == (2, 3)
        assert [(p.passage_index, p.answered_count, p.total_count) for p in report.passages] == [
            (1, 1, 2), (2, 1, 1),
        ]
        await engine.close()

    asyncio.run(scenario())


def test_failing_observer_does_not_break_ticks(backend, sink):
    class Broken(RecordingSink):
        def update_time_remaining(self, seconds):
            raise RuntimeError("boom")

    async def scenario():
        engine = ExamSessionEngine(TEST_ID, backend, clock=ManualClock(), sinks=[Broken(), sink])
        await engine.start()
        await engine.clock.advance(3)
        assert engine.time_remaining_seconds == 597
        assert sink.times[-1] == 597
        await engine.close()

    asyncio.run(scenario())


def test_real_clock_runs_out_once(backend, sink):
    async def scenario():
        existing = await backend.create_or_resume_attempt(TEST_ID)
        backend.attempts[existing.id].time_remaining_seconds = 3

        engine = make_engine(backend, sink, clock=IntervalClock(interval=0.005))
        await engine.start()
        await asyncio.sleep(0.2)

        assert engine.state == SessionState.COMPLETED
        assert engine.time_remaining_seconds == 0
        assert len(sink.time_ends) == 1
        assert not engine.clock.running
        await engine.close()

    asyncio.run(scenario())
