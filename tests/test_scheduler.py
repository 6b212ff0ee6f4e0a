from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from exceptions.probe import DialFailedError
from monitoring.checks import Check
from monitoring.scheduler import Scheduler
from monitoring.watchdog import FailureWatchdog


class ScriptedCheck(Check):
    """Fails its first ``failures`` runs, then succeeds."""

    name = "scripted"

    def __init__(self, server, interval: float, failures: int = 0):
        super().__init__(server, None, interval)
        self.failures = failures
        self.runs = 0
        self.resets: List[Optional[BaseException]] = []

    async def run(self) -> None:
        self.runs += 1
        if self.runs <= self.failures:
            raise DialFailedError(f"run {self.runs} refused", target=self.host)

    async def reset_sessions(self, error: Optional[BaseException] = None) -> None:
        self.resets.append(error)


@pytest.mark.asyncio
async def test_failures_bump_watchdog_and_loop_keeps_going(make_server) -> None:
    watchdog = FailureWatchdog("probe.test", ceiling=100)
    scheduler = Scheduler("probe.test", watchdog, retry_interval=0.01)
    check = ScriptedCheck(make_server(), interval=0.01, failures=3)
    assert scheduler.register(check)

    await scheduler.start()
    await asyncio.sleep(0.3)
    await scheduler.stop()

    assert check.runs > 3
    assert watchdog.count == 3
    assert len(check.resets) == 3
    assert all(isinstance(e, DialFailedError) for e in check.resets)

    (stats,) = scheduler.get_job_stats()
    assert stats["name"] == "scripted"
    assert stats["error_count"] == 3
    assert stats["run_count"] == check.runs - 3
    assert stats["consecutive_failures"] == 0
    assert stats["last_error"] == "run 3 refused"
    assert stats["last_run"] is not None


@pytest.mark.asyncio
async def test_persistent_failure_trips_watchdog(make_server) -> None:
    watchdog = FailureWatchdog("probe.test", ceiling=2)
    scheduler = Scheduler("probe.test", watchdog, retry_interval=0.01)
    scheduler.register(ScriptedCheck(make_server(), interval=0.01, failures=1000))

    await scheduler.start()
    await asyncio.wait_for(watchdog.tripped.wait(), 2.0)
    await scheduler.stop()

    assert watchdog.error.details["ceiling"] == 2


@pytest.mark.asyncio
async def test_zero_pace_runs_back_to_back(make_server) -> None:
    class Eager(ScriptedCheck):
        @property
        def pace(self) -> float:
            return 0.0

    scheduler = Scheduler("probe.test", FailureWatchdog("probe.test"))
    check = Eager(make_server(), interval=60)
    scheduler.register(check)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert check.runs > 10
    assert not scheduler.running


def test_disabled_checks_are_not_registered(make_server) -> None:
    scheduler = Scheduler("probe.test", FailureWatchdog("probe.test"))

    assert not scheduler.register(ScriptedCheck(make_server(), interval=0))
    assert scheduler.checks == []
    assert scheduler.get_job_stats() == []
