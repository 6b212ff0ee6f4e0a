"""
Configuration Package for tdcheck

This package contains all configuration-related modules including:
- Settings management with environment variable support
- The YAML target file schema and loader
- Constants: wire vocabulary, metric names, defaults
"""

from config.settings import (
    Settings,
    LoggingSettings,
    ProbeSettings,
    ServerConfig,
    ProbeConfig,
    load_config,
    get_settings,
)

from config.constants import (
    ClientCommands,
    ServerEvents,
    MetricNames,
    ApiPaths,
    Defaults,
    ExitCodes,
)

__all__ = [
    # Settings
    "Settings",
    "LoggingSettings",
    "ProbeSettings",
    "ServerConfig",
    "ProbeConfig",
    "load_config",
    "get_settings",

    # Constants
    "ClientCommands",
    "ServerEvents",
    "MetricNames",
    "ApiPaths",
    "Defaults",
    "ExitCodes",
]
