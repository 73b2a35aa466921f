"""
services/events.py

세션 엔진 → UI 알림 경로.

엔진은 SessionNotifier 하나에만 발행하고, notifier 가 등록된 싱크들에 전달한다.
싱크는 관찰 전용이다. 싱크에서 예외가 나도 엔진 상태에는 영향이 없다.
"""

import logging
from collections import deque
from typing import Deque, List, Optional

from language_test_cbt.models.event_model import Notice, SessionEvent, TimeWarning
from language_test_cbt.models.session_state import Attempt, SessionState

logger = logging.getLogger(__name__)


class NotificationSink:
    """모든 훅이 no-op 인 기본 싱크. 필요한 것만 오버라이드한다."""

    def update_time_remaining(self, seconds: int) -> None:
        pass

    def on_warning(self, warning: TimeWarning) -> None:
        pass

    def on_warning_dismissed(self, warning: TimeWarning) -> None:
        pass

    def on_time_end(self, attempt: Attempt) -> None:
        pass

    def on_status_changed(self, previous: SessionState, current: SessionState) -> None:
        pass

    def on_notice(self, notice: Notice) -> None:
        pass


class EventLog(NotificationSink):
    """
    이벤트를 버퍼에 쌓아 두었다가 drain() 으로 넘겨주는 싱크 (UI 폴링용).
    남은 시간 갱신은 마지막 값 하나만 유지한다.
    """

    def __init__(self, maxlen: int = 500):
        self._events: Deque[SessionEvent] = deque(maxlen=maxlen)
        self.time_remaining: Optional[int] = None

    def _push(self, type_: str, **payload) -> None:
        self._events.append(SessionEvent(type=type_, payload=payload))

    def update_time_remaining(self, seconds: int) -> None:
        self.time_remaining = seconds

    def on_warning(self, warning: TimeWarning) -> None:
        self._push("warning", **warning.model_dump(), message=warning.message)

    def on_warning_dismissed(self, warning: TimeWarning) -> None:
        self._push("warning_dismissed", threshold_seconds=warning.threshold_seconds)

    def on_time_end(self, attempt: Attempt) -> None:
        self._push("time_end", attempt_id=attempt.id, message="시험 시간이 종료되어 답안이 제출되었습니다.")

    def on_status_changed(self, previous: SessionState, current: SessionState) -> None:
        self._push("status", previous=previous.value, current=current.value)

    def on_notice(self, notice: Notice) -> None:
        self._push("notice", **notice.model_dump())

    def drain(self) -> List[SessionEvent]:
        events = list(self._events)
        self._events.clear()
        return events


class SessionNotifier:
    """등록된 싱크 전체에 이벤트를 전달한다."""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks or [])

    def subscribe(self, sink: NotificationSink) -> None:
        if sink not in self.sinks:
            self.sinks.append(sink)

    def unsubscribe(self, sink: NotificationSink) -> None:
        if sink in self.sinks:
            self.sinks.remove(sink)

    def _dispatch(self, hook: str, *args) -> None:
        for sink in list(self.sinks):
            try:
                getattr(sink, hook)(*args)
            except Exception:
                logger.exception(f"알림 싱크 오류 ({type(sink).__name__}.{hook})")

    def update_time_remaining(self, seconds: int) -> None:
        self._dispatch("update_time_remaining", seconds)

    def warning(self, warning: TimeWarning) -> None:
        self._dispatch("on_warning", warning)

    def warning_dismissed(self, warning: TimeWarning) -> None:
        self._dispatch("on_warning_dismissed", warning)

    def time_end(self, attempt: Attempt) -> None:
        self._dispatch("on_time_end", attempt.model_copy())

    def status_changed(self, previous: SessionState, current: SessionState) -> None:
        self._dispatch("on_status_changed", previous, current)

    def notice(self, notice: Notice) -> None:
        log = logger.warning if notice.level == "warning" else logger.info
        log(f"[{notice.code}] {notice.message}")
        self._dispatch("on_notice", notice)
