"""
============================================================================
TDCHECK - LOGGING UTILITY
============================================================================
loguru-based logging: a console sink, an optional rotating file sink
(plain text or JSON lines), and a separate error log.

License: MIT
============================================================================
"""

import sys
from typing import Optional

from loguru import logger

from config.settings import LoggingSettings


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]} - {message}"

logger.configure(extra={"name": "tdcheck"})


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================

def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """
    Configure loguru sinks from ``settings``.

    Safe to call more than once: existing sinks are replaced.
    """
    settings = settings or LoggingSettings()

    logger.remove()
    log_level = settings.level.value

    # Console Handler
    if settings.to_console:
        logger.add(
            sys.stdout,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=settings.colorize,
            backtrace=True,
            diagnose=False,
        )

    # File Handler
    if settings.to_file:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.file_path,
            format=FILE_FORMAT,
            level=log_level,
            rotation=settings.rotation,
            retention=settings.retention,
            compression="zip",
            serialize=settings.serialize,
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )

        # Error log file (separate file for errors)
        if settings.error_file:
            logger.add(
                settings.logs_dir / "errors.log",
                format=FILE_FORMAT,
                level="ERROR",
                rotation="1 day",
                retention="7 days",
                compression="zip",
                backtrace=True,
                diagnose=False,
                enqueue=True,
            )

    logger.debug(
        f"Logging initialized: level={log_level}, "
        f"console={settings.to_console}, file={settings.to_file}"
    )


def get_logger(name: Optional[str] = None):
    """
    Get logger instance with optional name.

    Args:
        name: Component name shown in every line

    Returns:
        Logger instance
    """
    if name:
        return logger.bind(name=name)
    return logger


# ============================================================================
# END OF LOGGER MODULE
# ============================================================================
