"""Realtime thread session (WebSocket protocol client)."""

from thread_sync.session.client import ThreadSessionClient, compute_backoff_ms
from thread_sync.session.status import ConnectionStatus, StatusEvent, can_transition

__all__ = [
    "ThreadSessionClient",
    "compute_backoff_ms",
    "ConnectionStatus",
    "StatusEvent",
    "can_transition",
]
