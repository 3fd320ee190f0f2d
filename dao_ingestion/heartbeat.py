from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List

from .logging_utils import get_logger, log_json

logger = get_logger(__name__)

DEFAULT_THRESHOLD_SEC = 5 * 60
DEFAULT_CHECK_INTERVAL_SEC = 60


class HeartbeatMonitor:
    """Last-activity witness per crawl.

    A heartbeat is only proof that something happened; it is not a health
    signal. Stall detection is advisory and never stops a crawl.
    """

    def __init__(self, threshold_sec: float = DEFAULT_THRESHOLD_SEC, clock: Callable[[], float] = time.monotonic):
        self.threshold_sec = threshold_sec
        self._clock = clock
        self._last_activity: Dict[str, float] = {}

    def update_heartbeat(self, source_name: str) -> None:
        self._last_activity[source_name] = self._clock()

    def idle_for(self, source_name: str) -> float | None:
        last = self._last_activity.get(source_name)
        if last is None:
            return None
        return self._clock() - last

    def is_stalled(self, source_name: str) -> bool:
        idle = self.idle_for(source_name)
        return idle is not None and idle > self.threshold_sec

    def clear(self, source_name: str) -> None:
        self._last_activity.pop(source_name, None)

    def get_all_stalled(self) -> List[str]:
        return [name for name in list(self._last_activity) if self.is_stalled(name)]

    def tracked(self) -> List[str]:
        return list(self._last_activity)


class StallChecker:
    """Periodically reports stalled crawls. Use as an async context manager."""

    def __init__(self, monitor: HeartbeatMonitor, interval_sec: float = DEFAULT_CHECK_INTERVAL_SEC):
        self.monitor = monitor
        self.interval_sec = interval_sec
        self._task: asyncio.Task | None = None

    def check_once(self) -> List[str]:
        stalled = self.monitor.get_all_stalled()
        for name in stalled:
            log_json(
                logger,
                logging.WARNING,
                "crawl_stalled",
                source=name,
                idle_sec=round(self.monitor.idle_for(name) or 0.0, 1),
                threshold_sec=self.monitor.threshold_sec,
            )
        return stalled

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            self.check_once()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="stall-checker")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "StallChecker":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
