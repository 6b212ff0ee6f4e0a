"""
Constants Module for tdcheck

Contains the wire vocabulary of the messaging service, exported metric
names, and the static defaults used by the probe engine.
"""

from __future__ import annotations

from enum import Enum
from typing import Final


class ClientCommands(str, Enum):
    """
    Client Commands Enumeration

    Names of the commands the probe sends over the event stream.
    """

    PING = "client.ping"
    CONFIRM = "client.confirm"
    MESSAGE_UPDATED = "client.message.updated"
    MESSAGE_DELETE = "client.message.delete"
    CALL_OFFER = "client.call.offer"
    CALL_LEAVE = "client.call.leave"


class ServerEvents(str, Enum):
    """
    Server Events Enumeration

    Names of the events the probe waits for on the event stream.
    """

    CONFIRM = "server.confirm"
    MESSAGE_UPDATED = "server.message.updated"
    ONLINE = "server.online"
    CALL_ANSWER = "server.call.answer"
    CALL_LEAVE = "server.call.leave"


class MetricNames:
    """Names of the gauges and counters exposed to the scraper."""

    API_PING: Final[str] = "tdcheck_api_ping_ms"
    USERVER_PING: Final[str] = "tdcheck_userver_ping_ms"
    WS_PING: Final[str] = "tdcheck_ws_ping_ms"
    ONLINERS: Final[str] = "tdcheck_onliners"
    CALLS: Final[str] = "tdcheck_calls"
    ECHO_MESSAGE: Final[str] = "tdcheck_echo_message_ms"
    CHECK_MESSAGE: Final[str] = "tdcheck_check_message_ms"
    CALLS_DURATION: Final[str] = "tdcheck_calls_ms"
    CALLS_FAILS: Final[str] = "tdcheck_calls_fails"
    WS_FAILS: Final[str] = "tdcheck_ws_fails"


class ApiPaths:
    """REST endpoints of the messaging service."""

    PING: Final[str] = "/api/v4/ping"
    TEAM: Final[str] = "/api/v4/teams/{team}"
    FEATURES: Final[str] = "/features.json"
    MESSAGING: Final[str] = "/messaging/{team}"


class Defaults:
    """
    Default Values

    Timings and limits of the probe engine. Every value here can be
    overridden through ``ProbeSettings``.
    """

    RETRY_INTERVAL: Final[float] = 1.0
    WATCHDOG_DECAY_INTERVAL: Final[float] = 60.0
    WATCHDOG_CEILING: Final[int] = 120
    MAX_TIMEOUTS: Final[int] = 10
    PRESENCE_SILENCE: Final[float] = 365 * 24 * 3600.0
    HTTP_TIMEOUT: Final[float] = 30.0
    WS_CLOSE_TIMEOUT: Final[float] = 5.0

    INBOX_SIZE: Final[int] = 1000
    OUTBOX_SIZE: Final[int] = 100

    LISTEN: Final[str] = "127.0.0.1:8000"
    CONFIG_PATH: Final[str] = "/etc/tdcheck/default.yml"
    USER_AGENT: Final[str] = "tdcheck/1.0 (Synthetic Monitoring)"


class ExitCodes:
    """Process exit statuses of the entry point."""

    OK: Final[int] = 0
    CONFIG_ERROR: Final[int] = 1
    FATAL: Final[int] = 2
