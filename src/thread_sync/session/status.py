"""Connection status state machine for the realtime session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SOCKET_OPEN = "socket_open"
    READY = "ready"
    ERROR = "error"


_LEGAL: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset({
        ConnectionStatus.SOCKET_OPEN,
        ConnectionStatus.ERROR,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.SOCKET_OPEN: frozenset({
        ConnectionStatus.READY,
        ConnectionStatus.ERROR,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.READY: frozenset({
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.ERROR,
    }),
    ConnectionStatus.ERROR: frozenset({
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    }),
}


def can_transition(current: ConnectionStatus, new: ConnectionStatus) -> bool:
    return new in _LEGAL.get(current, frozenset())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class StatusEvent:
    """A status transition reported to ``on_status`` listeners.

    ``extra`` carries context for the transition: ``attempt``/``wait_ms`` for
    scheduled reconnects, ``code``/``reason`` for closes, ``message`` for
    errors, ``server_time`` for READY.
    """

    status: ConnectionStatus
    thread_id: str
    ts: str = field(default_factory=now_iso)
    extra: dict = field(default_factory=dict)

    @property
    def reconnecting(self) -> bool:
        return bool(self.extra.get("reconnecting"))
