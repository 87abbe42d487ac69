"""Upload progress shape and time-based coalescing."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from thread_sync import config

logger = logging.getLogger(__name__)


def clamp_pct(value: Any) -> float | None:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n:  # NaN
        return None
    return max(0.0, min(100.0, n))


@dataclass
class UploadProgress:
    """One progress notification for a draft upload.

    ``sent_bytes`` counts bytes handed to the socket (or, for the
    ``uploading`` stage, bytes pushed to object storage by the server);
    ``received_bytes`` is the server's own count of verified bytes.
    """

    stage: str
    pct: float | None = None
    sent_bytes: int | None = None
    received_bytes: int | None = None
    bytes_total: int | None = None
    upload_id: str | None = None
    item_id: str | None = None


class ProgressThrottle:
    """Coalesce bursts of progress into at most one callback per interval.

    A value that arrives inside the window is held and delivered when the
    window closes (a trailing timer on the running loop), by the next push,
    or by ``flush()``, whichever comes first. Call ``flush()`` when the upload
    finishes or fails so the final value always lands.
    """

    def __init__(
        self,
        callback: Callable[[UploadProgress], None] | None,
        interval: float = config.UPLOAD_PROGRESS_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last_emit: float | None = None
        self._pending: UploadProgress | None = None
        self._timer: asyncio.TimerHandle | None = None

    def push(self, progress: UploadProgress) -> None:
        if self._callback is None:
            return
        now = self._clock()
        if self._last_emit is None or now - self._last_emit >= self._interval:
            self._emit(progress, now)
        else:
            self._pending = progress
            self._arm(self._interval - (now - self._last_emit))

    def flush(self) -> None:
        if self._pending is not None:
            self._emit(self._pending, self._clock())
        self._cancel_timer()

    def _arm(self, delay: float) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(max(0.0, delay), self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._pending is not None:
            self._emit(self._pending, self._clock())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self, progress: UploadProgress, now: float) -> None:
        self._pending = None
        self._last_emit = now
        self._cancel_timer()
        try:
            self._callback(progress)
        except Exception:
            logger.exception("Upload progress callback failed")
