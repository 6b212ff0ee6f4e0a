"""
Failure Watchdog for tdcheck

One counter per target. Every failed check run adds one, a background
task takes one away per decay interval, and the counter going above the
ceiling is fatal: the process stops and its supervisor restarts it.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional

from config.constants import Defaults
from exceptions.probe import WatchdogTrippedError
from utils.logger import get_logger


logger = get_logger("Watchdog")


class FailureWatchdog:
    """
    Decaying failure counter with a fatal ceiling.

    ``increment`` and ``decay`` may be called from any task or thread.
    Once tripped the watchdog stays tripped; ``tripped`` is set and
    ``error`` holds the ``WatchdogTrippedError`` for the entry point.
    """

    def __init__(
        self,
        host: str,
        ceiling: int = Defaults.WATCHDOG_CEILING,
        decay_interval: float = Defaults.WATCHDOG_DECAY_INTERVAL,
        on_trip: Optional[Callable[[WatchdogTrippedError], None]] = None,
    ):
        self.host = host
        self.ceiling = ceiling
        self.decay_interval = decay_interval
        self.tripped = asyncio.Event()
        self.error: Optional[WatchdogTrippedError] = None

        self._on_trip = on_trip
        self._lock = threading.Lock()
        self._count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def increment(self) -> int:
        """Record one failure; returns the new count."""
        with self._lock:
            self._count += 1
            count = self._count
        if count > self.ceiling:
            self._trip(count)
        return count

    def decay(self) -> int:
        """One decay tick; returns the new count."""
        with self._lock:
            count = self._count
            if count > 0:
                self._count -= 1
        if count > self.ceiling:
            self._trip(count)
        return max(count - 1, 0)

    def _trip(self, count: int) -> None:
        if self.tripped.is_set():
            return
        self.error = WatchdogTrippedError(
            f"[{self.host}] too many ws fails: {count}",
            target=self.host,
            failures=count,
            ceiling=self.ceiling,
        )
        logger.critical(self.error.log_format())
        self.tripped.set()
        if self._on_trip is not None:
            self._on_trip(self.error)

    def raise_if_tripped(self) -> None:
        if self.error is not None:
            raise self.error

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._decay_loop(), name=f"watchdog {self.host}")
        logger.debug(f"[{self.host}] watchdog started (ceiling={self.ceiling})")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _decay_loop(self) -> None:
        while True:
            await asyncio.sleep(self.decay_interval)
            self.decay()
