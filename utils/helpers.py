"""
============================================================================
TDCHECK - HELPER UTILITIES
============================================================================
Small pure helpers shared by the config layer and the probes: duration
parsing and formatting, URL scheme handling, payload text generation.

License: MIT
============================================================================
"""

import random
import re
from typing import Optional, Union


# ============================================================================
# TIME UTILITIES
# ============================================================================

class TimeHelper:
    """
    Duration parsing and formatting.
    """

    _DURATION_UNITS = {
        "ns": 1e-9,
        "us": 1e-6,
        "µs": 1e-6,
        "ms": 1e-3,
        "s": 1.0,
        "m": 60.0,
        "h": 3600.0,
    }
    _DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

    @staticmethod
    def parse_duration(value: Union[str, int, float]) -> float:
        """
        Convert a duration to seconds.

        Accepts plain numbers (seconds) and Go-style strings such as
        "500ms", "30s", "1m" or "1h30m".

        Raises:
            ValueError: if the value cannot be parsed or is negative
        """
        if isinstance(value, bool):
            raise ValueError(f"invalid duration: {value!r}")

        if isinstance(value, (int, float)):
            if value < 0:
                raise ValueError(f"negative duration: {value!r}")
            return float(value)

        text = str(value).strip().lower()
        if text in ("", "0"):
            return 0.0

        try:
            seconds = float(text)
        except ValueError:
            pass
        else:
            if seconds < 0:
                raise ValueError(f"negative duration: {value!r}")
            return seconds

        total = 0.0
        pos = 0
        for match in TimeHelper._DURATION_PART.finditer(text):
            if match.start() != pos:
                raise ValueError(f"invalid duration: {value!r}")
            number, unit = match.groups()
            total += float(number) * TimeHelper._DURATION_UNITS[unit]
            pos = match.end()

        if pos == 0 or pos != len(text):
            raise ValueError(f"invalid duration: {value!r}")

        return total

    @staticmethod
    def round_ms(seconds: float) -> int:
        """Seconds to whole milliseconds, rounded to nearest."""
        return int(round(seconds * 1000))

    @staticmethod
    def seconds_to_human(seconds: float) -> str:
        """
        Convert seconds to a human-readable string like '2h 30m 15s'.

        Sub-second values are shown in milliseconds.
        """
        if seconds < 0:
            return "0s"
        if seconds < 1:
            return f"{TimeHelper.round_ms(seconds)}ms"

        seconds = int(seconds)
        days, remainder = divmod(seconds, 86400)
        hours, remainder = divmod(remainder, 3600)
        minutes, secs = divmod(remainder, 60)

        parts = []
        if days:
            parts.append(f"{days}d")
        if hours:
            parts.append(f"{hours}h")
        if minutes:
            parts.append(f"{minutes}m")
        if secs or not parts:
            parts.append(f"{secs}s")
        return " ".join(parts)


# ============================================================================
# STRING UTILITIES
# ============================================================================

class StringHelper:
    """
    String formatting and generation utilities.
    """

    _SUBJECTS = (
        "the probe", "a tired robot", "the night shift", "our courier",
        "a quiet server", "the old relay", "a curious bot", "the watchman",
    )
    _VERBS = (
        "delivers", "whispers", "forgets", "counts", "carries",
        "repeats", "finds", "measures",
    )
    _OBJECTS = (
        "a paper boat", "seven green lamps", "the last packet",
        "an honest answer", "a round number", "the morning news",
        "a cup of tea", "the long way home",
    )

    @staticmethod
    def format_bytes(bytes_value: float) -> str:
        """
        Format bytes to human-readable size.

        Args:
            bytes_value: Number of bytes

        Returns:
            Formatted string (e.g., "1.5 kB")
        """
        if bytes_value < 1000:
            return f"{int(bytes_value)} B"
        for unit in ["kB", "MB", "GB", "TB"]:
            bytes_value /= 1000.0
            if bytes_value < 1000:
                return f"{bytes_value:.1f} {unit}"
        return f"{bytes_value / 1000.0:.1f} PB"

    @staticmethod
    def random_phrase(rng: Optional[random.Random] = None) -> str:
        """A short random sentence used as message payload text."""
        rng = rng or random
        return " ".join((
            rng.choice(StringHelper._SUBJECTS),
            rng.choice(StringHelper._VERBS),
            rng.choice(StringHelper._OBJECTS),
        ))


# ============================================================================
# PROCESS UTILITIES
# ============================================================================

class SystemHelper:
    """
    Process statistics for the health endpoint.
    """

    @staticmethod
    def get_memory_usage() -> float:
        """Resident memory of this process in MB."""
        import os

        import psutil

        process = psutil.Process(os.getpid())
        return process.memory_info().rss / 1024 / 1024


# ============================================================================
# URL UTILITIES
# ============================================================================

def force_scheme(host: str, insecure: bool = False) -> str:
    """
    Prefix ``host`` with a scheme unless it already has one.

    ``insecure`` selects plain http for hosts given without a scheme.
    """
    if host.startswith("http://") or host.startswith("https://"):
        return host.rstrip("/")
    scheme = "http" if insecure else "https"
    return f"{scheme}://{host.rstrip('/')}"


def ws_url(base_url: str) -> str:
    """Turn an http(s) base URL into the matching ws(s) URL."""
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


def parse_duration(value: Union[str, int, float]) -> float:
    """Shortcut for :meth:`TimeHelper.parse_duration`."""
    return TimeHelper.parse_duration(value)


# ============================================================================
# END OF HELPERS MODULE
# ============================================================================
