"""
Base Exception Classes for tdcheck

``ProbeException`` is the root of every error the probe raises on purpose.
Each one carries a numeric code, the target it concerns (a host, a URL or
an identity label), free-form details and the error that caused it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type


class ProbeException(Exception):
    """
    Root probe error.

    Attributes:
        message: What went wrong, as logged
        error_code: Numeric category, see the subclasses
        target: Host, URL or identity label the error concerns
        details: Extra context for logs
        cause: The underlying exception, if any
        recoverable: False when retrying on the next tick is pointless
        timestamp: When the error was raised (UTC)
    """

    default_error_code: int = 1000
    default_recoverable: bool = True

    def __init__(
        self,
        message: str = "probe error",
        error_code: Optional[int] = None,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code or self.default_error_code
        self.target = target
        self.details: Dict[str, Any] = dict(details or {})
        self.cause = cause
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.timestamp = datetime.now(timezone.utc)

        if target:
            self.details.setdefault("target", target)
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view, used by the serialized log sink."""
        return {
            "type": type(self).__name__,
            "code": self.error_code,
            "message": self.message,
            "target": self.target,
            "details": self.details,
            "recoverable": self.recoverable,
            "cause": repr(self.cause) if self.cause is not None else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def log_format(self) -> str:
        """One log line: ``[code] Type: message (key=value, ...) <- cause``."""
        line = f"[{self.error_code}] {type(self).__name__}: {self.message}"
        if self.details:
            line += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        if self.cause is not None:
            line += f" <- {type(self.cause).__name__}: {self.cause}"
        return line

    def with_details(self, **kwargs: Any) -> "ProbeException":
        self.details.update(kwargs)
        return self

    @classmethod
    def from_exception(
        cls,
        exception: BaseException,
        message: Optional[str] = None,
        **kwargs: Any
    ) -> "ProbeException":
        """Wrap a foreign exception, keeping it as ``cause``."""
        text = message or f"{type(exception).__name__}: {exception}"
        return cls(text, cause=exception, **kwargs)

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.error_code} {self.message!r}>"


class ConfigurationError(ProbeException):
    """The target file, the environment or a setting is unusable."""

    default_error_code = 1100
    default_recoverable = False

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[Type] = None,
        **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)

        if config_key:
            self.details["config_key"] = config_key
        if expected_type is not None:
            self.details["expected_type"] = expected_type.__name__
