"""Liveness tracking for the network connection.

A half-open TCP connection never produces a close event, so the session
cannot rely on the transport alone. The monitor records the time of the
last inbound frame, sends a ping every interval, and reports the
connection as stale once nothing has arrived for ``stale_after`` seconds.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """Watches one connection. Create a new one for every connection."""

    def __init__(
        self,
        on_stale: Callable[[], None],
        send_ping: Optional[Callable[[], Awaitable[None]]] = None,
        interval: float = 15.0,
        stale_after: float = 45.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_stale = on_stale
        self.send_ping = send_ping
        self.interval = interval
        self.stale_after = stale_after
        self._clock = clock
        self.last_ack = clock()
        self._task: Optional[asyncio.Task] = None
        self.stale = False

    def record_ack(self) -> None:
        """Note that something arrived from the remote side."""
        self.last_ack = self._clock()

    def seconds_since_ack(self) -> float:
        return self._clock() - self.last_ack

    def is_stale(self) -> bool:
        return self.seconds_since_ack() > self.stale_after

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.record_ack()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)

            if self.is_stale():
                logger.warning(
                    "No traffic for %.1fs (limit %.1fs); connection is stale",
                    self.seconds_since_ack(), self.stale_after,
                )
                self.stale = True
                self.on_stale()
                return

            if self.send_ping is not None:
                try:
                    await self.send_ping()
                    logger.debug("Heartbeat ping sent")
                except Exception as e:
                    # A broken write is reported by the session itself
                    logger.warning("Heartbeat ping failed: %s", e)
