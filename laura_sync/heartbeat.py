"""Fixed-rate status heartbeat."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional, Union

from .core.errors import SyncError
from .core.models import CameraState, StatusReport

LOGGER = logging.getLogger(__name__)

StatusProvider = Callable[[], Union[StatusReport, Awaitable[StatusReport]]]
StatusSender = Callable[[StatusReport], Awaitable[bool]]


def default_status_provider() -> StatusReport:
    """Status for hosts without battery or radio telemetry."""

    return StatusReport(
        battery_percent=100,
        wifi_signal=0,
        state=CameraState.ONLINE,
        free_memory_bytes=0,
    )


class HeartbeatScheduler:
    """Emits a :class:`StatusReport` every ``interval`` seconds.

    Ticks are scheduled against the start time rather than the end of the
    previous send, so a slow send does not stretch the cadence; ticks missed
    entirely are skipped. A report that cannot be delivered (no identity yet,
    or the send failed) is held. Only the newest undelivered report is kept,
    and it is flushed before the next report goes out.
    """

    def __init__(
        self,
        provider: StatusProvider,
        sender: StatusSender,
        *,
        interval: float = 30.0,
        identity_ready: Callable[[], bool] = lambda: True,
    ) -> None:
        if interval <= 0:
            raise ValueError("Heartbeat interval must be positive")
        self._provider = provider
        self._sender = sender
        self._interval = interval
        self._identity_ready = identity_ready
        self._held: Optional[StatusReport] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self.ticks = 0
        self.sent = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def held(self) -> Optional[StatusReport]:
        return self._held

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def emit(self) -> Optional[StatusReport]:
        """Produce one report and try to deliver it; returns the report."""

        self.ticks += 1
        try:
            result = self._provider()
            report = await result if asyncio.iscoroutine(result) else result
        except Exception:
            LOGGER.exception("Status provider failed; skipping heartbeat tick")
            return None

        async with self._lock:
            if not self._identity_ready():
                if self._held is not None:
                    LOGGER.debug("Replacing held status report with a newer one")
                self._held = report
                return report

            if self._held is not None and not await self._deliver(self._held):
                self._held = report
                return report
            self._held = None

            if not await self._deliver(report):
                self._held = report
        return report

    async def flush(self) -> bool:
        """Send the held report, if any. True when nothing remains held."""

        async with self._lock:
            held = self._held
            if held is None:
                return True
            if not self._identity_ready():
                return False
            if not await self._deliver(held):
                return False
            if self._held is held:
                self._held = None
            return True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            await self.emit()
            next_tick += self._interval
            now = loop.time()
            if next_tick <= now:
                skipped = int((now - next_tick) // self._interval) + 1
                LOGGER.debug("Heartbeat fell behind; skipping %d tick(s)", skipped)
                next_tick += skipped * self._interval
            await asyncio.sleep(next_tick - now)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="laura-sync-heartbeat")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _deliver(self, report: StatusReport) -> bool:
        try:
            delivered = await self._sender(report)
        except SyncError as exc:
            LOGGER.warning("Status report failed: %s", exc)
            return False
        except Exception:
            LOGGER.exception("Status sender failed; holding report")
            return False
        if delivered:
            self.sent += 1
        else:
            LOGGER.debug("Status report not delivered; holding it")
        return bool(delivered)
