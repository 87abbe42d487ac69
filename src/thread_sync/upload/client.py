"""Chunked draft upload over the realtime session.

Protocol::

    -> UPLOAD_BEGIN {filename, mime, bytesTotal, clientFileId, localMeta, clientItemId, ts}
    <- UPLOAD_ACCEPTED {uploadId, itemId?, chunkBase64MaxLen?}
    -> UPLOAD_CHUNK {uploadId, seq, dataBase64}     (seq = 0, 1, 2, ...)
    -> UPLOAD_END {uploadId, sha256}
    <- UPLOAD_COMPLETE {uploadId, itemId, draftFile?, draftRev?, ...}

The server may also push ``UPLOAD_PROGRESS``, ``UPLOAD_STAGE`` and
``UPLOAD_B2_PROGRESS`` for the upload id, and ``UPLOAD_FAILED``/``ERROR`` at
any point. A failed upload is never resumed; callers start over.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from thread_sync import config
from thread_sync.exceptions import (
    NotConnectedError,
    ReplyTimeoutError,
    SendFailedError,
    UploadError,
    UploadRejectedError,
)
from thread_sync.session.client import ThreadSessionClient
from thread_sync.upload.progress import ProgressThrottle, UploadProgress, clamp_pct

logger = logging.getLogger(__name__)

_FAILURE_TYPES = frozenset({"ERROR", "UPLOAD_FAILED"})


def raw_chunk_size(requested: int | None, base64_cap: int | None) -> int:
    """Largest raw chunk whose base64 encoding fits ``base64_cap``."""
    cap = int(base64_cap or 0) or config.UPLOAD_DEFAULT_B64_CAP
    ceiling = max(3, (cap // 4) * 3)
    want = int(requested or 0) or config.UPLOAD_DEFAULT_CHUNK
    return max(1, min(want, ceiling))


def _iter_chunks(path: Path | None, data: bytes | None, size: int) -> Iterator[bytes]:
    if data is not None:
        for offset in range(0, len(data), size):
            yield data[offset:offset + size]
        return
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(size)
            if not chunk:
                break
            yield chunk


def _rejection(msg: dict) -> UploadRejectedError:
    p = msg.get("payload") or {}
    if msg.get("type") == "UPLOAD_FAILED":
        message = str(p.get("reason") or p.get("message") or "Upload failed")
        return UploadRejectedError(message, code=p.get("code") or "UPLOAD_FAILED", payload=p)
    return UploadRejectedError(
        str(p.get("message") or "Upload failed"),
        code=p.get("code") or "WS_ERROR",
        payload=p,
    )


def _check_failure(failure: asyncio.Future) -> None:
    if failure.done():
        # result() re-raises a dropped-session error as-is
        raise _rejection(failure.result())


async def _race(fut: asyncio.Future, failure: asyncio.Future, timeout: float, what: str) -> dict:
    done, _ = await asyncio.wait(
        {fut, failure}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
    )
    if failure in done:
        _check_failure(failure)
    if fut in done:
        return fut.result()
    raise ReplyTimeoutError(f"Timed out waiting for {what}")


async def upload_draft_file(
    client: ThreadSessionClient,
    *,
    thread_id: str,
    client_file_id: str,
    path: str | Path | None = None,
    data: bytes | None = None,
    filename: str | None = None,
    mime: str | None = None,
    item_id: str | None = None,
    local_meta: dict | None = None,
    chunk_size: int | None = None,
    on_progress: Callable[[UploadProgress], None] | None = None,
    ready_timeout: float = config.UPLOAD_READY_TIMEOUT_S,
    accept_timeout: float = config.UPLOAD_ACCEPT_TIMEOUT_S,
    complete_timeout: float = config.UPLOAD_COMPLETE_TIMEOUT_S,
    progress_interval: float = config.UPLOAD_PROGRESS_INTERVAL_S,
) -> dict[str, Any]:
    """Upload a local file (or in-memory bytes) as a draft media item.

    Returns the ``UPLOAD_COMPLETE`` payload with ``uploadId`` and ``itemId``
    always filled in.

    Raises:
        NotConnectedError: Session not ready (``WS_NOT_READY``), not open
            (``WS_NOT_CONNECTED``) or dropped mid-upload (``WS_DROPPED``).
        SendFailedError: A frame could not be queued.
        UploadRejectedError: The server answered ``UPLOAD_FAILED`` or ``ERROR``.
        ReplyTimeoutError: No acceptance/completion in time (``WS_TIMEOUT``).
        UploadError: Bad arguments, or no upload id in the acceptance.
    """
    tid = str(thread_id or "").strip()
    cfi = str(client_file_id or "").strip()
    if not tid or not cfi:
        raise UploadError("Missing threadId/clientFileId", code="WS_BAD_ARGS")
    if tid != client.thread_id:
        raise UploadError(
            f"Session is bound to {client.thread_id}, not {tid}", code="WS_BAD_ARGS"
        )
    if data is None and path is None:
        raise UploadError("Missing file", code="WS_NO_FILE")

    src = Path(path) if path is not None else None
    if data is not None:
        bytes_total = len(data)
    else:
        try:
            bytes_total = src.stat().st_size
        except OSError as e:
            raise UploadError(f"Cannot read {src}: {e}", code="WS_NO_FILE") from e

    name = filename or (src.name if src is not None else "") or "upload.bin"
    mime = mime or mimetypes.guess_type(name)[0] or "application/octet-stream"

    if not await client.wait_for_ready(ready_timeout):
        raise NotConnectedError("WebSocket not ready yet (no HELLO_OK)", code="WS_NOT_READY")
    if not client.is_connected():
        raise NotConnectedError("WebSocket not connected")

    request_id = client.new_request_id()
    state: dict[str, str | None] = {"upload_id": None}

    def is_failure(msg: dict) -> bool:
        if msg.get("type") not in _FAILURE_TYPES:
            return False
        if str(msg.get("requestId") or "") == request_id:
            return True
        upload_id = state["upload_id"]
        p = msg.get("payload") or {}
        return bool(upload_id) and str(p.get("uploadId") or "") == upload_id

    def is_accepted(msg: dict) -> bool:
        if msg.get("type") != "UPLOAD_ACCEPTED":
            return False
        if str(msg.get("requestId") or "") == request_id:
            return True
        return bool((msg.get("payload") or {}).get("uploadId"))

    throttle = ProgressThrottle(on_progress, interval=progress_interval)
    failure = client.expect(is_failure)
    accepted = client.expect(is_accepted)
    completed: asyncio.Future | None = None
    off_progress: Callable[[], None] | None = None

    try:
        ok = client.send(
            "UPLOAD_BEGIN",
            {
                "filename": name,
                "mime": mime,
                "bytesTotal": bytes_total,
                "clientFileId": cfi,
                "localMeta": local_meta if isinstance(local_meta, dict) else {},
                "clientItemId": item_id or None,
                "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            },
            request_id,
        )
        if not ok:
            raise SendFailedError("Failed to send UPLOAD_BEGIN")

        accepted_msg = await _race(accepted, failure, accept_timeout, "UPLOAD_ACCEPTED")
        ap = accepted_msg.get("payload") or {}
        upload_id = str(ap.get("uploadId") or "").strip()
        if not upload_id:
            raise UploadError("Server did not return uploadId", code="WS_NO_UPLOAD_ID", payload=ap)
        state["upload_id"] = upload_id
        target_item = str(ap.get("itemId") or "").strip() or item_id or None
        logger.info("Upload %s accepted for %s (%d bytes)", upload_id, name, bytes_total)

        def notify(stage: str, pct: Any, sent: int | None = None, received: int | None = None):
            throttle.push(UploadProgress(
                stage=stage,
                pct=clamp_pct(pct),
                sent_bytes=sent,
                received_bytes=received,
                bytes_total=bytes_total,
                upload_id=upload_id,
                item_id=target_item,
            ))

        def on_server_progress(msg: dict) -> None:
            p = msg.get("payload") or {}
            if str(p.get("uploadId") or "") != upload_id:
                return
            t = msg.get("type")
            if t == "UPLOAD_PROGRESS":
                notify(str(p.get("stage") or "verifying"), p.get("pct"),
                       received=int(p.get("receivedBytes") or 0))
            elif t == "UPLOAD_STAGE":
                notify(str(p.get("stage") or ""), p.get("pct"))
            elif t == "UPLOAD_B2_PROGRESS":
                notify("uploading", p.get("pct"), sent=int(p.get("sentBytes") or 0))

        notify("verifying", 0, sent=0, received=0)
        off_progress = client.on_message(on_server_progress)

        size = raw_chunk_size(chunk_size, ap.get("chunkBase64MaxLen"))
        digest = hashlib.sha256()
        sent = 0
        for seq, chunk in enumerate(_iter_chunks(src, data, size)):
            _check_failure(failure)
            if not client.is_connected():
                raise NotConnectedError("WebSocket disconnected during upload", code="WS_DROPPED")
            await client.wait_for_buffered_below(
                config.UPLOAD_BUFFER_HIGH_WATER, config.UPLOAD_BUFFER_TIMEOUT_S
            )

            digest.update(chunk)
            ok = client.send(
                "UPLOAD_CHUNK",
                {
                    "uploadId": upload_id,
                    "seq": seq,
                    "dataBase64": base64.b64encode(chunk).decode("ascii"),
                },
                request_id,
            )
            if not ok:
                raise SendFailedError(
                    "Failed to send upload chunk",
                    code="WS_CHUNK_SEND_FAILED",
                    payload={"uploadId": upload_id, "seq": seq},
                )
            sent += len(chunk)
            if bytes_total:
                notify("verifying", sent * 100 / bytes_total, sent=sent)
            await asyncio.sleep(0)

        _check_failure(failure)
        completed = client.expect(
            lambda m: m.get("type") == "UPLOAD_COMPLETE" and (
                str(m.get("requestId") or "") == request_id
                or str((m.get("payload") or {}).get("uploadId") or "") == upload_id
            )
        )
        if not client.send("UPLOAD_END", {"uploadId": upload_id, "sha256": digest.hexdigest()}, request_id):
            raise SendFailedError("Failed to send UPLOAD_END")

        done_msg = await _race(completed, failure, complete_timeout, "UPLOAD_COMPLETE")
        dp = done_msg.get("payload") or {}
        logger.info("Upload %s complete (%d bytes)", upload_id, sent)
        return {
            **dp,
            "uploadId": upload_id,
            "itemId": str(dp.get("itemId") or "").strip() or target_item,
        }
    finally:
        if off_progress is not None:
            off_progress()
        for fut in (failure, accepted, completed):
            if fut is not None and not fut.done():
                fut.cancel()
        throttle.flush()
