"""
============================================================================
TDCHECK - MAIN APPLICATION
============================================================================
Synthetic monitoring of a realtime messaging service.

    tdcheck --config /etc/tdcheck/default.yml

Startup Order
-------------
1.  Load settings & configure logging
2.  Load the YAML target file
3.  Build one TargetMonitor per server (checks, scheduler, watchdog)
4.  Start the MetricsExporter (aiohttp)
5.  Start every TargetMonitor
6.  Wait for a signal or a tripped watchdog

Shutdown Order (reverse)
-------------------------
On SIGINT / SIGTERM or a fatal watchdog:
    stop targets (closes every event stream) → stop exporter → exit

Exit Codes
----------
0  clean shutdown
1  configuration error
2  a watchdog tripped; the supervisor should restart the probe

License: MIT
============================================================================
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

from config.constants import ExitCodes
from config.settings import LogLevel, ProbeConfig, Settings, get_settings, load_config
from exceptions.base import ConfigurationError
from exceptions.probe import FatalProbeError
from monitoring.exporter import MetricsExporter
from monitoring.target import TargetMonitor
from utils.logger import get_logger, setup_logging


logger = get_logger("Main")


# ============================================================================
# APPLICATION CLASS
# ============================================================================

class ProbeApplication:
    """
    Top-level application orchestrator.

    Owns every target monitor and the exporter, and is the single place
    that knows the startup / shutdown order.
    """

    def __init__(self, settings: Settings, config_path: Optional[Path] = None):
        self.settings = settings
        self.config_path = Path(config_path or settings.config_path)

        # --- subsystems (populated during startup) ---
        self.config: Optional[ProbeConfig] = None
        self.targets: List[TargetMonitor] = []
        self.exporter: Optional[MetricsExporter] = None

        # --- lifecycle ---
        self._stop_event = asyncio.Event()
        self._is_running = False

    # ==================================================================
    # PHASE 1: CONFIG
    # ==================================================================

    def _load_config(self) -> None:
        logger.info("── Phase 1: Config ───────────────────────────────")
        self.config = load_config(self.config_path)
        if not self.config.servers:
            raise ConfigurationError(
                f"No servers in {self.config_path}", config_key="servers"
            )
        logger.info(f"  ✓ {len(self.config.servers)} servers from {self.config_path}")

    # ==================================================================
    # PHASE 2: TARGETS
    # ==================================================================

    def _init_targets(self) -> None:
        logger.info("── Phase 2: Targets ──────────────────────────────")
        for server in self.config.servers:
            target = TargetMonitor(server, self.settings.probe)
            self.targets.append(target)
            names = ", ".join(c.name for c in target.enabled_checks) or "none"
            logger.info(f"  ✓ [{server.host}] checks: {names}")

    # ==================================================================
    # PHASE 3: EXPORTER
    # ==================================================================

    def _init_exporter(self) -> None:
        logger.info("── Phase 3: Exporter ─────────────────────────────")
        host, port = self.config.listen_address
        self.exporter = MetricsExporter(
            self.targets,
            host=host,
            port=port,
            app_name=self.settings.app_name,
            app_version=self.settings.app_version,
        )

    # ==================================================================
    # FULL STARTUP SEQUENCE
    # ==================================================================

    async def startup(self) -> None:
        """
        Execute the complete startup sequence.

        Raises:
            ConfigurationError: the target file is missing or invalid
        """
        logger.info("=" * 74)
        logger.info(f"  STARTING {self.settings.app_name} v{self.settings.app_version}")
        logger.info("=" * 74)

        self._load_config()
        self._init_targets()
        self._init_exporter()

        logger.info("── Starting background services ───────────────────")
        await self.exporter.start()
        for target in self.targets:
            await target.start()

        self._is_running = True
        logger.info("  ✓ ALL SYSTEMS OPERATIONAL")

    # ==================================================================
    # SHUTDOWN SEQUENCE
    # ==================================================================

    async def shutdown(self) -> None:
        """
        Graceful shutdown in reverse order.

        A failure in one subsystem does not keep the others from cleaning
        up.
        """
        if not self._is_running and not self.targets:
            return
        self._is_running = False

        logger.info("=" * 74)
        logger.info("  SHUTTING DOWN …")
        logger.info("=" * 74)

        for target in self.targets:
            try:
                await target.stop()
            except Exception as e:
                logger.error(f"  ✗ [{target.host}] stop error: {e}")
        self.targets = []

        if self.exporter:
            try:
                await self.exporter.stop()
            except Exception as e:
                logger.error(f"  ✗ Exporter stop error: {e}")
            self.exporter = None

        logger.info("  ✓ SHUTDOWN COMPLETE")

    def request_stop(self) -> None:
        self._stop_event.set()

    # ==================================================================
    # RUN
    # ==================================================================

    async def run(self) -> None:
        """
        Block until a stop is requested or a watchdog trips.

        Raises:
            FatalProbeError: a target's watchdog tripped
        """
        waiters = [asyncio.create_task(self._stop_event.wait())]
        waiters += [asyncio.create_task(t.watchdog.tripped.wait()) for t in self.targets]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        for target in self.targets:
            target.watchdog.raise_if_tripped()


# ============================================================================
# SIGNAL HANDLER SETUP
# ============================================================================

def _install_signal_handlers(loop: asyncio.AbstractEventLoop, app: ProbeApplication) -> None:
    """SIGTERM / SIGINT request a graceful shutdown."""
    def _handle_signal(sig: signal.Signals) -> None:
        logger.info(f"  ⚡ {sig.name} received, initiating graceful shutdown…")
        app.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on Windows; Ctrl+C still raises KeyboardInterrupt
            pass


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

async def main(config_path: Optional[Path] = None, settings: Optional[Settings] = None) -> int:
    """Run the probe until shutdown; returns the process exit code."""
    settings = settings or get_settings()
    app = ProbeApplication(settings, config_path)
    _install_signal_handlers(asyncio.get_running_loop(), app)

    try:
        await app.startup()
        await app.run()
    except ConfigurationError as e:
        logger.error(f"  ✗ {e.log_format()}")
        return ExitCodes.CONFIG_ERROR
    except FatalProbeError as e:
        logger.critical(f"  ✗ {e.log_format()}")
        return ExitCodes.FATAL
    finally:
        await app.shutdown()

    return ExitCodes.OK


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tdcheck",
        description="Synthetic monitoring probe for a realtime messaging service",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=settings.config_path,
        help=f"path to the YAML target file (default: {settings.config_path})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="log at DEBUG level",
    )
    return parser


def cli(argv: Optional[List[str]] = None) -> None:
    """Console script entry point."""
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    if args.verbose:
        settings.logging.level = LogLevel.DEBUG
    setup_logging(settings.logging)

    try:
        code = asyncio.run(main(args.config, settings))
    except KeyboardInterrupt:
        code = ExitCodes.OK
    sys.exit(code)


# ============================================================================
# SCRIPT ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    cli()
