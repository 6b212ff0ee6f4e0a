"""
Probe Exception Classes for tdcheck

Errors raised while talking to the messaging service: dialing and
authenticating, waiting for events, decoding frames, explicit rejections,
and the fatal condition raised by the failure watchdog.
"""

from __future__ import annotations

from typing import Any, Optional

from exceptions.base import ProbeException


class ConnectionException(ProbeException):
    """
    Base Connection Exception

    Parent class for errors that leave the owning connection unusable.
    """

    default_error_code = 2000


class DialFailedError(ConnectionException):
    """The transport could not be opened (DNS, TCP, TLS, websocket upgrade)."""

    default_error_code = 2001


class AuthFailedError(ConnectionException):
    """The service refused the identity token."""

    default_error_code = 2002


class ConnectionClosedError(ConnectionException):
    """
    Connection Closed Error

    Raised to a pending ``wait_for`` when its connection is closed or has
    faulted. Carries the fault, if there was one, as ``cause``.
    """

    default_error_code = 2003


class ProbeTimeoutError(ProbeException):
    """
    Timeout Error

    No matching event arrived before the deadline. Recoverable locally:
    checks count these against their consecutive-timeout budget.
    """

    default_error_code = 3000

    def __init__(
        self,
        message: str = "Timeout",
        event_name: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if event_name:
            self.details["event"] = event_name

        if timeout is not None:
            self.details["timeout"] = round(timeout, 3)


class MaxTimeoutsReachedError(ProbeException):
    """A check exhausted its consecutive-timeout budget."""

    default_error_code = 3001

    def __init__(
        self,
        message: str = "max timeouts",
        timeouts: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if timeouts is not None:
            self.details["timeouts"] = timeouts


class ProtocolDecodeError(ProbeException):
    """A frame or response body could not be decoded."""

    default_error_code = 4000

    def __init__(
        self,
        message: str,
        payload: Optional[bytes] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if payload is not None:
            self.details["payload"] = payload[:200].decode("utf-8", "replace")


class RemoteRejectedError(ProbeException):
    """
    Remote Rejected Error

    The service answered, but with an explicit error: a non-200 status or
    an ``ok: false`` body.
    """

    default_error_code = 4001

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        self.status_code = status_code
        if status_code is not None:
            self.details["status_code"] = status_code


class FatalProbeError(ProbeException):
    """
    Fatal Error

    The monitoring process itself is unhealthy and must be restarted by
    its supervisor.
    """

    default_error_code = 9000
    default_recoverable = False


class WatchdogTrippedError(FatalProbeError):
    """Accumulated probe failures exceeded the watchdog ceiling."""

    default_error_code = 9001

    def __init__(
        self,
        message: str = "too many ws fails",
        failures: Optional[int] = None,
        ceiling: Optional[int] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if failures is not None:
            self.details["failures"] = failures
        if ceiling is not None:
            self.details["ceiling"] = ceiling


def invalidates_session(error: BaseException) -> bool:
    """
    Whether ``error`` means the identity's API session and cached routing
    address are suspect too, rather than just its event connection.
    """
    return isinstance(error, (AuthFailedError, RemoteRejectedError))
