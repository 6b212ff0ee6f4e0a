from __future__ import annotations

import asyncio
from typing import List

import pytest

from exceptions.probe import WatchdogTrippedError
from monitoring.watchdog import FailureWatchdog


def test_decay_never_goes_below_zero() -> None:
    watchdog = FailureWatchdog("probe.test", ceiling=3)

    assert watchdog.decay() == 0
    watchdog.increment()
    assert watchdog.decay() == 0
    assert watchdog.decay() == 0
    assert watchdog.count == 0


def test_trips_only_above_ceiling() -> None:
    tripped: List[WatchdogTrippedError] = []
    watchdog = FailureWatchdog("probe.test", ceiling=3, on_trip=tripped.append)

    for _ in range(3):
        watchdog.increment()
    assert not watchdog.tripped.is_set()
    watchdog.raise_if_tripped()

    assert watchdog.increment() == 4
    assert watchdog.tripped.is_set()
    assert len(tripped) == 1
    assert tripped[0].details["failures"] == 4

    watchdog.increment()
    assert len(tripped) == 1
    with pytest.raises(WatchdogTrippedError):
        watchdog.raise_if_tripped()


def test_decay_keeps_counter_below_ceiling() -> None:
    watchdog = FailureWatchdog("probe.test", ceiling=2)

    for _ in range(10):
        watchdog.increment()
        watchdog.decay()

    assert watchdog.count == 0
    assert not watchdog.tripped.is_set()


@pytest.mark.asyncio
async def test_decay_loop_runs_in_background() -> None:
    watchdog = FailureWatchdog("probe.test", ceiling=10, decay_interval=0.02)
    for _ in range(3):
        watchdog.increment()

    await watchdog.start()
    await asyncio.sleep(0.15)
    await watchdog.stop()

    assert watchdog.count == 0
