"""
Target Monitor for tdcheck

Everything watching one server of the config file: its service client,
its checks, their scheduler and the shared failure watchdog.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from config.constants import MetricNames
from config.settings import ProbeSettings, ServerConfig
from messenger.service import MessengerService, RemoteService
from monitoring.checks import Check, MetricSample, build_checks
from monitoring.scheduler import Scheduler
from monitoring.watchdog import FailureWatchdog
from utils.logger import get_logger


logger = get_logger("TargetMonitor")


METRIC_HELP: Dict[str, str] = {
    MetricNames.API_PING: "REST API ping round trip, ms",
    MetricNames.USERVER_PING: "Plain HTTP probe latency, ms",
    MetricNames.WS_PING: "Event stream ping to confirm, ms",
    MetricNames.ONLINERS: "Contacts online in the last presence push",
    MetricNames.CALLS: "Active calls in the last presence push",
    MetricNames.ECHO_MESSAGE: "Message send to own echo, ms",
    MetricNames.CHECK_MESSAGE: "Message send to delivery, ms",
    MetricNames.CALLS_DURATION: "Call offer to leave confirmed, ms",
    MetricNames.CALLS_FAILS: "Unsuccessful test calls",
    MetricNames.WS_FAILS: "Current value of the failure watchdog",
}


def to_families(host: str, samples: List[MetricSample]) -> Iterator[Metric]:
    """Metric families of ``samples``, each labelled with ``host``."""
    for sample in samples:
        family_cls = CounterMetricFamily if sample.kind == "counter" else GaugeMetricFamily
        family = family_cls(sample.name, METRIC_HELP.get(sample.name, sample.name), labels=["host"])
        family.add_metric([host], sample.value)
        yield family


class TargetCollector:
    """Reads the check snapshots of one target on every scrape."""

    def __init__(self, target: "TargetMonitor"):
        self._target = target

    def collect(self) -> Iterator[Metric]:
        yield from to_families(self._target.host, self._target.metrics())


class TargetMonitor:
    """
    Checks, scheduler and watchdog of a single target.

    ``service`` defaults to a ``MessengerService`` built from the target
    config; tests pass a fake.
    """

    def __init__(
        self,
        server: ServerConfig,
        settings: Optional[ProbeSettings] = None,
        service: Optional[RemoteService] = None,
    ):
        settings = settings or ProbeSettings()

        self.server = server
        self.host = server.host
        self.service = service or MessengerService(
            server.host,
            insecure=server.insecure,
            verbose=server.verbose,
            http_timeout=settings.http_timeout,
            verify_tls=settings.verify_tls,
            user_agent=settings.user_agent,
        )

        self.checks = build_checks(server, self.service, settings)
        self.watchdog = FailureWatchdog(
            server.host,
            ceiling=settings.watchdog_ceiling,
            decay_interval=settings.watchdog_decay_interval,
        )
        self.scheduler = Scheduler(
            server.host,
            self.watchdog,
            retry_interval=settings.retry_interval,
        )
        for check in self.checks.values():
            self.scheduler.register(check)

        self.registry = CollectorRegistry()
        self.registry.register(TargetCollector(self))

    def __repr__(self) -> str:
        return f"<TargetMonitor {self.host}>"

    @property
    def path(self) -> str:
        """Exporter URL path of this target."""
        return "/" + self.host

    @property
    def enabled_checks(self) -> List[Check]:
        return self.scheduler.checks

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for check in self.checks.values():
            state = "enabled" if check.enabled() else "disabled"
            logger.info(f"[{self.host}] {check.name}: {state}")

        await self.watchdog.start()
        await self.scheduler.start()
        logger.info(f"✓ [{self.host}] monitoring started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.watchdog.stop()
        for check in self.checks.values():
            await check.close()
        await self.service.aclose()
        logger.info(f"✓ [{self.host}] monitoring stopped")

    # ------------------------------------------------------------------
    # METRICS
    # ------------------------------------------------------------------

    def metrics(self) -> List[MetricSample]:
        """Latest samples of every enabled check plus the watchdog gauge."""
        samples: List[MetricSample] = []
        for check in self.enabled_checks:
            samples.extend(check.snapshot())
        samples.append(MetricSample(MetricNames.WS_FAILS, self.watchdog.count))
        return samples

    def render(self) -> bytes:
        """Prometheus text exposition of this target."""
        return generate_latest(self.registry)
