"""Realtime thread session over one persistent WebSocket.

One client is bound to exactly one thread id. After the socket opens the
client sends ``HELLO`` with a bearer credential and its last-known version
stamps; the session is only *ready* once the server answers ``HELLO_OK``.
Unexpected closes are retried with capped exponential backoff plus jitter
until ``disconnect()`` is called.

Outbound frames go through a per-connection queue drained by a writer task,
so ``send()`` is synchronous (usable from event handlers) and
``get_buffered_amount()`` reflects both queued frames and the transport's
own write buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import random
import uuid
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from thread_sync import config
from thread_sync.exceptions import (
    BufferedTimeoutError,
    NoThreadSelectedError,
    NotConnectedError,
    ProtocolError,
    ReplyTimeoutError,
    SessionClosedError,
)
from thread_sync.session.status import ConnectionStatus, StatusEvent, can_transition, now_iso

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]

_HANDSHAKE_ERROR_TYPES = frozenset({"ERROR", "HELLO_ERROR", "HELLO_FAIL"})
_NORMAL_CLOSE_CODES = frozenset({1000, 1001})


def compute_backoff_ms(attempt: int, rng: random.Random | None = None) -> int:
    """Reconnect delay for ``attempt`` (1-based): 1s, 2s, 4s... capped, plus jitter."""
    attempt = max(1, min(int(attempt), config.RECONNECT_MAX_ATTEMPT))
    base = min(config.RECONNECT_BASE_MS * 2 ** (attempt - 1), config.RECONNECT_CAP_MS)
    jitter = (rng or random).randrange(config.RECONNECT_JITTER_MS)
    return base + jitter


def _default_connect(url: str):
    return ws_connect(url, open_timeout=30, max_size=None)


class ThreadSessionClient:
    """Duplex protocol client for a single thread.

    Args:
        thread_id: The thread this socket is bound to.
        get_credential: Callable (sync or async) returning a bearer token,
            or None for guests.
        url: WebSocket endpoint (defaults to ``THREAD_SYNC_WS_URL``).
        client_state: Version stamps sent with every HELLO.
        on_status: Receives a ``StatusEvent`` on every legal transition.
        on_event: Receives every inbound message (before other listeners).
        on_error: Receives transport exceptions; these never close the session.
        reconnect: Schedule reconnects after unexpected closes.
        hello_timeout: Seconds to wait for ``HELLO_OK``.
        connect_factory: ``url -> awaitable connection``; defaults to websockets.
    """

    def __init__(
        self,
        thread_id: str,
        get_credential: Callable[[], Any] | None = None,
        url: str | None = None,
        client_state: dict | None = None,
        on_status: Callable[[StatusEvent], None] | None = None,
        on_event: Listener | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        reconnect: bool = True,
        hello_timeout: float | None = None,
        connect_factory: Callable[[str], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        tid = str(thread_id or "").strip()
        if not tid:
            raise NoThreadSelectedError("Missing threadId for session client")
        self._thread_id = tid
        self.url = url or config.DEFAULT_WS_URL
        self.reconnect = reconnect
        self.hello_timeout = config.HELLO_TIMEOUT_S if hello_timeout is None else hello_timeout

        self._get_credential = get_credential
        self._client_state = dict(client_state) if client_state else None
        self._on_status = on_status
        self._on_error = on_error
        self._connect_factory = connect_factory or _default_connect
        self._rng = rng
        self._sleep = sleep or asyncio.sleep

        self._status = ConnectionStatus.DISCONNECTED
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._closed_by_user = False
        self._attempt = 0

        self._ready = asyncio.Event()
        self._hello_task: asyncio.Task | None = None
        self._hello_fired = False

        self._outbox: asyncio.Queue | None = None
        self._outbox_bytes = 0

        self._listeners: list[Listener] = []
        self._waiters: set[asyncio.Future] = set()
        if on_event is not None:
            self._listeners.append(on_event)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def thread_id(self) -> str:
        return self._thread_id

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def attempt(self) -> int:
        return self._attempt

    def is_connected(self) -> bool:
        return self._ws is not None and self._status in (
            ConnectionStatus.SOCKET_OPEN,
            ConnectionStatus.READY,
        )

    def is_ready(self) -> bool:
        return self._ready.is_set() and self.is_connected()

    def set_client_state(self, state: dict | None) -> None:
        """Replace the stamps included in future HELLO handshakes."""
        self._client_state = dict(state) if isinstance(state, dict) else None

    @staticmethod
    def new_request_id() -> str:
        return str(uuid.uuid4())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start the connection loop. No-op while open, connecting or backing off."""
        if self._task is not None and not self._task.done():
            return
        self._closed_by_user = False
        self._task = asyncio.create_task(self._run(), name=f"thread-session:{self._thread_id}")

    async def disconnect(self, code: int = 1000, reason: str = "client_disconnect") -> None:
        """User-initiated close: suppresses reconnects, rejects pending waits."""
        self._closed_by_user = True
        self._ready.clear()
        self._reject_waiters()

        ws = self._ws
        if ws is not None:
            await self._safe_close(ws, code, reason)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            if ws is None:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._transition(ConnectionStatus.DISCONNECTED, code=code, reason=reason)

    async def _run(self) -> None:
        while not self._closed_by_user:
            await self._connect_once()
            if self._closed_by_user or not self.reconnect:
                break
            self._attempt = min(self._attempt + 1, config.RECONNECT_MAX_ATTEMPT)
            wait_ms = compute_backoff_ms(self._attempt, self._rng)
            self._transition(
                ConnectionStatus.CONNECTING,
                reconnecting=True,
                attempt=self._attempt,
                wait_ms=wait_ms,
            )
            logger.info(
                "Reconnecting thread %s in %dms (attempt %d)",
                self._thread_id, wait_ms, self._attempt,
            )
            await self._sleep(wait_ms / 1000)

    async def _connect_once(self) -> None:
        if self._status is not ConnectionStatus.CONNECTING:
            self._transition(ConnectionStatus.CONNECTING)

        try:
            ws = await self._connect_factory(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("WebSocket connect to %s failed: %s", self.url, e)
            self._report_error(e)
            self._transition(ConnectionStatus.ERROR, message=f"Connect failed: {e}")
            return

        if self._closed_by_user:
            await self._safe_close(ws, 1000, "client_disconnect")
            return

        self._ws = ws
        self._outbox = asyncio.Queue()
        self._outbox_bytes = 0
        self._hello_fired = False
        self._transition(ConnectionStatus.SOCKET_OPEN)

        writer = asyncio.create_task(self._writer(ws, self._outbox))
        try:
            if await self._send_hello(ws):
                self._hello_task = asyncio.create_task(self._hello_watchdog(ws))
                await self._receive(ws)
        finally:
            await self._stop_hello_watchdog()
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            self._ws = None
            self._outbox = None
            self._outbox_bytes = 0
            self._ready.clear()
            if not self._closed_by_user:
                self._reject_waiters(dropped=True)

        self._handle_closed(ws)

    async def _send_hello(self, ws: Any) -> bool:
        try:
            jwt = self._get_credential() if self._get_credential else None
            if inspect.isawaitable(jwt):
                jwt = await jwt
        except Exception as e:
            logger.warning("Credential provider failed for thread %s: %s", self._thread_id, e)
            self._transition(ConnectionStatus.ERROR, message="Failed to get credential")
            await self._safe_close(ws, 4001, "jwt_failed")
            return False

        self.send("HELLO", {"jwt": jwt, "client": self._client_state})
        return True

    async def _hello_watchdog(self, ws: Any) -> None:
        await asyncio.sleep(self.hello_timeout)
        if self._ready.is_set():
            return
        self._hello_fired = True
        logger.warning("HELLO timeout for thread %s (no HELLO_OK)", self._thread_id)
        self._transition(ConnectionStatus.ERROR, message="HELLO timeout (no HELLO_OK)")
        await self._safe_close(ws, 4008, "hello_timeout")

    async def _stop_hello_watchdog(self) -> None:
        task, self._hello_task = self._hello_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        if self._hello_fired:
            # already closing the socket; let it finish
            with contextlib.suppress(asyncio.CancelledError):
                await task
        else:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _disarm_hello(self) -> None:
        task = self._hello_task
        if task is not None and not task.done() and not self._hello_fired:
            task.cancel()

    async def _receive(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.debug("Socket for thread %s closed: %s", self._thread_id, e)
        except OSError as e:
            self._report_error(e)

    def _handle_closed(self, ws: Any) -> None:
        code = int(getattr(ws, "close_code", None) or 0)
        reason = str(getattr(ws, "close_reason", None) or "") or None

        if self._closed_by_user:
            self._transition(ConnectionStatus.DISCONNECTED, code=code, reason=reason)
            return

        if code and code not in _NORMAL_CLOSE_CODES:
            message = f"WS closed ({code}) {reason or ''}".strip()
            self._transition(ConnectionStatus.ERROR, message=message, code=code, reason=reason)
        else:
            self._transition(ConnectionStatus.DISCONNECTED, code=code, reason=reason)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _dispatch(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Dropping non-JSON frame on thread %s", self._thread_id)
            return
        if not isinstance(msg, dict):
            return

        mtype = str(msg.get("type") or "")
        payload = msg.get("payload")
        if payload is not None and not isinstance(payload, dict):
            if mtype == "HELLO_OK":
                # the handshake timer stays armed; a bad HELLO_OK ends in 4008
                self._report_error(ProtocolError(f"Malformed HELLO_OK on thread {self._thread_id}"))
            else:
                logger.debug("Dropping %s with non-object payload on thread %s", mtype, self._thread_id)
            return

        if mtype == "HELLO_OK":
            self._disarm_hello()
            self._attempt = 0
            self._ready.set()
            self._transition(ConnectionStatus.READY, server_time=(payload or {}).get("serverTime"))
        elif mtype in _HANDSHAKE_ERROR_TYPES:
            self._disarm_hello()

        for listener in list(self._listeners):
            try:
                listener(msg)
            except Exception:
                logger.exception("Message listener failed for %s", mtype)

    def on_message(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to every inbound message. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def off() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return off

    def expect(self, predicate: Callable[[dict], bool]) -> asyncio.Future:
        """Register a reply matcher now; the future resolves with the first match.

        A predicate that raises rejects the future with that exception.
        """
        fut = asyncio.get_running_loop().create_future()

        def listener(msg: dict) -> None:
            if fut.done():
                return
            try:
                if predicate(msg):
                    fut.set_result(msg)
            except Exception as e:
                fut.set_exception(e)

        off = self.on_message(listener)
        self._waiters.add(fut)

        def cleanup(_: asyncio.Future) -> None:
            off()
            self._waiters.discard(fut)

        fut.add_done_callback(cleanup)
        return fut

    async def wait_for_message(self, predicate: Callable[[dict], bool], timeout: float) -> dict:
        fut = self.expect(predicate)
        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError as e:
            raise ReplyTimeoutError("Timed out waiting for server response") from e

    async def wait_for_ready(self, timeout: float) -> bool:
        """True once the socket is open and HELLO_OK has been received."""
        if self.is_ready():
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready()

    def _reject_waiters(self, dropped: bool = False) -> None:
        for fut in list(self._waiters):
            if fut.done():
                continue
            if dropped:
                fut.set_exception(
                    NotConnectedError("WebSocket dropped while waiting for a reply", code="WS_DROPPED")
                )
            else:
                fut.set_exception(SessionClosedError("Session closed while waiting for a reply"))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, msg_type: str, payload: dict | None = None, request_id: str | None = None) -> bool:
        """Queue an envelope. Returns False (and sends nothing) when not open."""
        t = str(msg_type or "").strip()
        if not t or not self.is_connected() or self._outbox is None:
            return False

        body = dict(payload) if isinstance(payload, dict) else {}
        body["threadId"] = self._thread_id
        envelope = {"type": t, "threadId": self._thread_id, "ts": now_iso(), "payload": body}
        if request_id:
            envelope["requestId"] = request_id

        try:
            data = json.dumps(envelope)
        except (TypeError, ValueError) as e:
            self._report_error(e)
            return False

        self._outbox.put_nowait(data)
        self._outbox_bytes += len(data)
        return True

    async def _writer(self, ws: Any, outbox: asyncio.Queue) -> None:
        while True:
            data = await outbox.get()
            try:
                await ws.send(data)
            except (ConnectionClosed, OSError) as e:
                self._report_error(e)
                return
            finally:
                self._outbox_bytes = max(0, self._outbox_bytes - len(data))

    def get_buffered_amount(self) -> int:
        transport = getattr(self._ws, "transport", None)
        buffered = 0
        if transport is not None:
            try:
                buffered = int(transport.get_write_buffer_size())
            except (AttributeError, RuntimeError):
                buffered = 0
        return self._outbox_bytes + buffered

    async def wait_for_buffered_below(self, max_bytes: int, timeout: float) -> None:
        """Backpressure gate for bulk sends."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.get_buffered_amount() > max_bytes:
            if not self.is_connected():
                raise NotConnectedError("WebSocket disconnected while draining")
            if loop.time() >= deadline:
                raise BufferedTimeoutError(
                    f"Outbound buffer stayed above {max_bytes} bytes for {timeout}s"
                )
            await asyncio.sleep(0.05)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, new: ConnectionStatus, **extra: Any) -> bool:
        current = self._status
        if not can_transition(current, new):
            logger.debug(
                "Ignoring status %s -> %s on thread %s", current.value, new.value, self._thread_id
            )
            return False
        self._status = new
        event = StatusEvent(
            status=new,
            thread_id=self._thread_id,
            extra={k: v for k, v in extra.items() if v is not None},
        )
        if self._on_status is not None:
            try:
                self._on_status(event)
            except Exception:
                logger.exception("Status listener failed for %s", new.value)
        return True

    def _report_error(self, exc: BaseException) -> None:
        logger.warning("Transport error on thread %s: %s", self._thread_id, exc)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("Error listener failed")

    async def _safe_close(self, ws: Any, code: int, reason: str) -> None:
        try:
            await ws.close(code, reason)
        except (ConnectionClosed, OSError) as e:
            logger.debug("Close on thread %s raised: %s", self._thread_id, e)
