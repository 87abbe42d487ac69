"""Unified exception hierarchy for thread-sync."""

from __future__ import annotations


class ThreadSyncError(Exception):
    """Base exception for all thread-sync errors.

    Carries an optional machine-readable ``code`` and the raw server
    ``payload`` (if any) so callers can surface them verbatim.
    """

    default_code = "THREAD_SYNC_ERROR"

    def __init__(self, message: str = "", code: str | None = None, payload: dict | None = None):
        super().__init__(message)
        self.code = code or self.default_code
        self.payload = payload


# Transport
class TransportError(ThreadSyncError):
    """Socket-level failure (not open, send failed, buffer never drained)."""

    default_code = "WS_TRANSPORT"


class NotConnectedError(TransportError):
    """The realtime socket is not open (or the handshake is not complete)."""

    default_code = "WS_NOT_CONNECTED"


class SendFailedError(TransportError):
    """A frame could not be handed to the socket."""

    default_code = "WS_SEND_FAILED"


class BufferedTimeoutError(TransportError):
    """Outbound buffer did not drain below the threshold in time."""

    default_code = "WS_BUFFER_TIMEOUT"


class SessionClosedError(TransportError):
    """The session was closed by the user while an operation was waiting."""

    default_code = "WS_CLOSED"


# Protocol
class ProtocolError(ThreadSyncError):
    """Handshake or request/reply protocol violation."""

    default_code = "WS_PROTOCOL"


class HandshakeTimeoutError(ProtocolError):
    """No HELLO_OK was received within the handshake timeout."""

    default_code = "WS_HELLO_TIMEOUT"


class ReplyTimeoutError(ProtocolError):
    """Timed out waiting for a matching server reply."""

    default_code = "WS_TIMEOUT"


class ServerError(ProtocolError):
    """The server answered with an ERROR message."""

    default_code = "WS_ERROR"


# Upload / resource
class UploadError(ThreadSyncError):
    """Chunked upload failed on the client side."""

    default_code = "UPLOAD_ERROR"


class UploadRejectedError(UploadError):
    """Server rejected or failed the upload (quota, size, type...)."""

    default_code = "UPLOAD_FAILED"


# Application
class ApplicationError(ThreadSyncError):
    """Caller input rejected before anything reached the wire."""

    default_code = "APP_ERROR"


class NoThreadSelectedError(ApplicationError):
    """No (non-default) thread is selected."""

    default_code = "NO_THREAD"


class NoReadyMediaError(ApplicationError):
    """The draft has no media in a ready stage."""

    default_code = "NO_READY_MEDIA"


class NothingToRunError(ApplicationError):
    """No operation (transcribe/translate/summarize) was requested."""

    default_code = "NOTHING_TO_RUN"


class NothingToRetryError(ApplicationError):
    """No chat item ids (or target languages) were given for a retry."""

    default_code = "NOTHING_TO_RETRY"


class InvalidMediaError(ApplicationError):
    """Only audio/video files (or http(s) links) can be added to a draft."""

    default_code = "INVALID_MEDIA"


# HTTP
class ApiError(ThreadSyncError):
    """HTTP fallback endpoint returned an error response."""

    default_code = "API_ERROR"

    def __init__(
        self,
        message: str = "",
        code: str | None = None,
        payload: dict | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, code=code, payload=payload)
        self.status_code = status_code


# Local cache
class CacheError(ThreadSyncError):
    """The local persistent cache could not be read or written."""

    default_code = "CACHE_ERROR"
