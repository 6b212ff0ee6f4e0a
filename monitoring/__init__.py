"""
============================================================================
TDCHECK - MONITORING PACKAGE
============================================================================
The probe engine:
    • ProbeIdentity      : a synthetic user and its lazily rebuilt session
    • Checks             : the individual probes and their latest values
    • FailureWatchdog    : decaying failure counter with a fatal ceiling
    • Scheduler          : one loop per enabled check
    • TargetMonitor      : all of the above for one server
    • MetricsExporter    : aiohttp server the scraper reads

monitoring/
├── __init__.py          ← this file
├── identity.py          ← ProbeIdentity + IdentityState
├── checks.py            ← Check and its variants
├── watchdog.py          ← FailureWatchdog
├── scheduler.py         ← Scheduler + CheckJob
├── target.py            ← TargetMonitor + Prometheus rendering
└── exporter.py          ← MetricsExporter

============================================================================
"""

from monitoring.identity import IdentityState, ProbeIdentity
from monitoring.checks import (
    ApiPingProbe,
    Check,
    KeepaliveEcho,
    MessageRoundTrip,
    MetricSample,
    PlainHttpProbe,
    PresenceWatch,
    RealtimeCallRoundTrip,
    build_checks,
)
from monitoring.watchdog import FailureWatchdog
from monitoring.scheduler import CheckJob, Scheduler
from monitoring.target import TargetCollector, TargetMonitor
from monitoring.exporter import MetricsExporter

__all__ = [
    # Identities
    "IdentityState",
    "ProbeIdentity",

    # Checks
    "Check",
    "MetricSample",
    "ApiPingProbe",
    "PlainHttpProbe",
    "KeepaliveEcho",
    "PresenceWatch",
    "MessageRoundTrip",
    "RealtimeCallRoundTrip",
    "build_checks",

    # Scheduling
    "FailureWatchdog",
    "Scheduler",
    "CheckJob",

    # Targets & export
    "TargetMonitor",
    "TargetCollector",
    "MetricsExporter",
]
