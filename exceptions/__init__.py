"""
Exceptions Package for tdcheck

Provides the exception hierarchy used for error handling
throughout the application.
"""

from exceptions.base import (
    ProbeException,
    ConfigurationError,
)

from exceptions.probe import (
    ConnectionException,
    DialFailedError,
    AuthFailedError,
    ConnectionClosedError,
    ProbeTimeoutError,
    MaxTimeoutsReachedError,
    ProtocolDecodeError,
    RemoteRejectedError,
    FatalProbeError,
    WatchdogTrippedError,
    invalidates_session,
)

__all__ = [
    # Base exceptions
    "ProbeException",
    "ConfigurationError",

    # Probe exceptions
    "ConnectionException",
    "DialFailedError",
    "AuthFailedError",
    "ConnectionClosedError",
    "ProbeTimeoutError",
    "MaxTimeoutsReachedError",
    "ProtocolDecodeError",
    "RemoteRejectedError",
    "FatalProbeError",
    "WatchdogTrippedError",
    "invalidates_session",
]
