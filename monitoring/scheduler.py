"""
============================================================================
TDCHECK - CHECK SCHEDULER
============================================================================
Runs every enabled check of one target in its own asyncio task:

    loop forever:
        run the check
        on failure:  bump the watchdog, reset the check's sessions,
                     sleep retry_interval
        wait for the next tick of the check's pace

A failing check never stops its loop; an error only delays the next
attempt. Ticks missed while a run was slow are dropped, not queued.

License: MIT
============================================================================
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.constants import Defaults
from monitoring.checks import Check
from monitoring.watchdog import FailureWatchdog
from utils.helpers import TimeHelper
from utils.logger import get_logger


logger = get_logger("Scheduler")


# ============================================================================
# JOB DEFINITION
# ============================================================================

@dataclass
class CheckJob:
    """
    Run bookkeeping of one scheduled check.

    Attributes
    ----------
    check : Check
        The check being driven.
    task : Optional[asyncio.Task]
        The loop task, once started.
    run_count / error_count : int
        Successful and failed runs since startup.
    consecutive_failures : int
        Failed runs since the last success.
    last_run : Optional[float]
        Epoch timestamp of the last finished run.
    last_error : Optional[str]
        Message of the most recent failure.
    """
    check: Check
    task: Optional[asyncio.Task] = None
    run_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_run: Optional[float] = None
    last_error: Optional[str] = None


# ============================================================================
# SCHEDULER
# ============================================================================

class Scheduler:
    """
    One loop per check, all feeding the same watchdog.

    Usage
    -----
        scheduler = Scheduler("demo.example", watchdog)
        scheduler.register(check)
        await scheduler.start()
        # ... later ...
        await scheduler.stop()
    """

    def __init__(
        self,
        host: str,
        watchdog: FailureWatchdog,
        retry_interval: float = Defaults.RETRY_INTERVAL,
    ):
        self.host = host
        self.watchdog = watchdog
        self.retry_interval = retry_interval

        self._jobs: Dict[str, CheckJob] = {}
        self._running = False

    # ------------------------------------------------------------------
    # REGISTRATION
    # ------------------------------------------------------------------

    def register(self, check: Check) -> bool:
        """Add ``check`` if it is enabled. Returns whether it was added."""
        if not check.enabled():
            logger.debug(f"[{self.host}] {check.name}: disabled")
            return False
        if check.name in self._jobs:
            logger.warning(f"[{self.host}] {check.name}: already registered, overwriting")
        self._jobs[check.name] = CheckJob(check=check)
        return True

    @property
    def checks(self) -> List[Check]:
        return [job.check for job in self._jobs.values()]

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start one loop task per registered check."""
        if self._running:
            logger.warning(f"[{self.host}] scheduler is already running")
            return
        self._running = True
        for job in self._jobs.values():
            job.task = asyncio.create_task(
                self._check_loop(job), name=f"{self.host} {job.check.name}"
            )
        logger.info(f"✓ [{self.host}] scheduler started with {len(self._jobs)} checks")

    async def stop(self) -> None:
        """Cancel every loop and wait for them to finish."""
        self._running = False
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        logger.info(f"✓ [{self.host}] scheduler stopped")

    # ------------------------------------------------------------------
    # CHECK LOOP
    # ------------------------------------------------------------------

    async def _check_loop(self, job: CheckJob) -> None:
        check = job.check
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while self._running:
            await self._execute(job)

            pace = check.pace
            if pace <= 0:
                await asyncio.sleep(0)
                continue

            now = loop.time()
            next_tick += pace
            if next_tick < now:
                next_tick = now
            await asyncio.sleep(next_tick - now)

    async def _execute(self, job: CheckJob) -> None:
        """One run with failure accounting; never raises but CancelledError."""
        check = job.check
        start_time = time.perf_counter()
        try:
            await check.run()

        except asyncio.CancelledError:
            raise

        except Exception as e:
            elapsed = time.perf_counter() - start_time
            job.error_count += 1
            job.consecutive_failures += 1
            job.last_error = str(e)
            job.last_run = time.time()

            failures = self.watchdog.increment()
            logger.error(
                f"[{self.host}] {check.name}: fail #{failures}, {e} "
                f"(consecutive={job.consecutive_failures}, "
                f"elapsed={TimeHelper.seconds_to_human(elapsed)})"
            )

            try:
                await check.reset_sessions(e)
            except Exception as reset_error:
                logger.warning(f"[{self.host}] {check.name}: session reset fail: {reset_error}")

            await asyncio.sleep(self.retry_interval)

        else:
            job.run_count += 1
            job.consecutive_failures = 0
            job.last_run = time.time()

    # ------------------------------------------------------------------
    # DIAGNOSTICS
    # ------------------------------------------------------------------

    def get_job_stats(self) -> List[Dict[str, Any]]:
        """Return status of all registered checks."""
        stats = []
        for job in self._jobs.values():
            stats.append({
                "name": job.check.name,
                "interval_seconds": job.check.interval,
                "run_count": job.run_count,
                "error_count": job.error_count,
                "consecutive_failures": job.consecutive_failures,
                "last_error": job.last_error,
                "last_run": (
                    datetime.fromtimestamp(job.last_run).isoformat()
                    if job.last_run else None
                ),
            })
        return stats
