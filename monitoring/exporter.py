"""
============================================================================
TDCHECK - METRICS EXPORTER
============================================================================
A lightweight aiohttp server for the scraper:

    GET /health    → 200 JSON  { status, uptime, targets, ... }
    GET /{host}    → 200 text  Prometheus metrics of that target
                     404       unknown target

Every read goes through ``Check.snapshot()``, so a scrape never sees a
half-written measurement.

License: MIT
============================================================================
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from monitoring.target import TargetMonitor
from utils.helpers import SystemHelper, TimeHelper
from utils.logger import get_logger


logger = get_logger("Exporter")


class MetricsExporter:
    """
    HTTP surface of the probe.

    Attributes
    ----------
    _app : aiohttp.web.Application
    _runner : aiohttp.web.AppRunner
    _site : aiohttp.web.TCPSite
    _start_time : float          : epoch seconds when the server started
    _request_count : int         : total requests served
    """

    def __init__(
        self,
        targets: List[TargetMonitor],
        host: str = "127.0.0.1",
        port: int = 8000,
        app_name: str = "tdcheck",
        app_version: str = "1.0.0",
    ):
        self._targets: Dict[str, TargetMonitor] = {t.path: t for t in targets}
        self._host = host
        self._port = port
        self._app_name = app_name
        self._app_version = app_version

        self._app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._start_time: float = 0.0
        self._request_count: int = 0

        # Register routes
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/{host:.+}", self._handle_metrics)

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self) -> None:
        """Bind and start serving."""
        self._start_time = time.time()
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        logger.info(f"✓ Exporter listening on {self._host}:{self._port}")
        for path in self._targets:
            logger.info(f"  metrics: http://{self._host}:{self._port}{path}")

    async def stop(self) -> None:
        """Gracefully shut down the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        logger.info("✓ Exporter stopped")

    # ------------------------------------------------------------------
    # ROUTE HANDLERS
    # ------------------------------------------------------------------

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """GET /{host}: Prometheus text for one target."""
        self._request_count += 1
        target = self._targets.get(request.path)
        if target is None:
            return web.Response(text="unknown target\n", status=404)
        return web.Response(body=target.render(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health: liveness JSON."""
        self._request_count += 1
        uptime_seconds = time.time() - self._start_time if self._start_time else 0

        targets = []
        for target in self._targets.values():
            targets.append({
                "host": target.host,
                "path": target.path,
                "checks": [check.name for check in target.enabled_checks],
                "failures": target.watchdog.count,
                "tripped": target.watchdog.tripped.is_set(),
            })

        health = {
            "status": "unhealthy" if any(t["tripped"] for t in targets) else "healthy",
            "uptime_seconds": round(uptime_seconds, 1),
            "uptime_human": TimeHelper.seconds_to_human(uptime_seconds),
            "memory_mb": round(SystemHelper.get_memory_usage(), 1),
            "requests_served": self._request_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app_name": self._app_name,
            "app_version": self._app_version,
            "targets": targets,
        }

        return web.json_response(health, status=200)
