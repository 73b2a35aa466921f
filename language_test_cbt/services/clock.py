"""
services/clock.py

1Hz 틱 발생기.
콜백은 인자 없이 호출되며, 남은 시간 감소는 호출자가 직접 한다.

  - IntervalClock : asyncio 태스크 기반 실제 시계
  - ManualClock   : advance() 로 직접 구동하는 테스트/재현용 시계

두 구현 모두:
  - 실행 중 start() 는 무시 (틱 중복 없음)
  - stop() 이후에는 어떤 틱도 전달되지 않음
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from config import TICK_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[None, Awaitable[None]]]


async def _deliver(callback: TickCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class ClockSource:
    """시계 인터페이스."""

    def start(self, callback: TickCallback) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        raise NotImplementedError


class IntervalClock(ClockSource):
    """
    interval 초마다 콜백을 await 하는 asyncio 시계.
    콜백을 await 한 뒤 다음 sleep 에 들어가므로 틱 처리는 직렬화된다.
    """

    def __init__(self, interval: float = TICK_INTERVAL_SECONDS):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: TickCallback) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(callback))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # 콜백 안에서 stop() 한 경우: 콜백이 끝나면 루프가 스스로 빠져나간다
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _run(self, callback: TickCallback) -> None:
        me = asyncio.current_task()
        try:
            while self._task is me:
                await asyncio.sleep(self.interval)
                if self._task is not me:
                    break
                await _deliver(callback)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("틱 콜백 오류, 시계를 정지합니다.")
        finally:
            if self._task is me:
                self._task = None


class ManualClock(ClockSource):
    """advance(n) 호출 시에만 틱을 전달하는 시계."""

    def __init__(self):
        self._callback: Optional[TickCallback] = None
        self.start_count = 0

    @property
    def running(self) -> bool:
        return self._callback is not None

    def start(self, callback: TickCallback) -> None:
        if self.running:
            return
        self._callback = callback
        self.start_count += 1

    def stop(self) -> None:
        self._callback = None

    async def advance(self, ticks: int = 1) -> int:
        """최대 ticks 번 틱을 전달하고 실제 전달 횟수를 반환한다."""
        delivered = 0
        for _ in range(ticks):
            callback = self._callback
            if callback is None:
                break
            await _deliver(callback)
            delivered += 1
        return delivered
