"""State reconciliation: server pushes, delta sync and optimistic draft flows.

``SyncEngine`` owns the realtime session for the active thread and applies
every inbound message to the ``ThreadStore`` as one synchronous
read-modify-write. Token holds in the ``ReservationLedger`` follow the same
events: moved on promotion, released when a step reaches a terminal state,
cleared when the server sends an authoritative balance.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from thread_sync import config
from thread_sync.billing.ledger import (
    ReservationLedger,
    chat_key,
    item_key,
    summarize_key,
    thread_prefix,
    translate_key,
)
from thread_sync.exceptions import (
    ApiError,
    CacheError,
    InvalidMediaError,
    NoThreadSelectedError,
    NotConnectedError,
)
from thread_sync.langkey import normalize_lang_key
from thread_sync.session.client import ThreadSessionClient
from thread_sync.session.status import ConnectionStatus, StatusEvent
from thread_sync.store.merge import merge_chat_item, merge_chat_items, merge_draft
from thread_sync.store.models import (
    STAGE_LINKED,
    STAGE_LINKING,
    STAGE_UPLOADED,
    STAGE_UPLOADING,
    STEP_SUMMARIZE,
    STEP_TRANSCRIBE,
    STEP_TRANSLATE,
    ServerStamp,
    ensure_chat_items,
    ensure_draft_shape,
    find_chat_item,
    is_step_terminal,
    make_new_thread,
    new_id,
    now_iso,
)
from thread_sync.store.store import ThreadStore
from thread_sync.upload.client import upload_draft_file
from thread_sync.upload.progress import UploadProgress

logger = logging.getLogger(__name__)

_TOKEN_FIELDS = ("mediaTokens", "mediaTokensBalance", "mediaTokensReserved", "provider", "pricingVersion")


def _payload(msg: dict) -> dict:
    p = msg.get("payload")
    return p if isinstance(p, dict) else {}


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(x) for x in value if x]


class SyncEngine:
    """Keeps the store consistent with the server for one signed-in (or guest) owner.

    Args:
        store: The thread store to reconcile into.
        ledger: Optimistic token holds; a fresh ledger if omitted.
        api: HTTP client for delta sync, CRUD and token refresh. Without it
            the engine works from pushes alone.
        get_credential: Callable returning a bearer token (sync or async).
        is_anonymous: Guests skip delta sync, server-side CRUD and token refresh.
        ws_url: Realtime endpoint passed to every session client.
        session_factory: Builds the session client (keyword arguments of
            ``ThreadSessionClient``); tests inject fakes here.
        auto_bind: Bind the realtime session whenever the active thread changes.
    """

    def __init__(
        self,
        store: ThreadStore,
        ledger: ReservationLedger | None = None,
        api: Any = None,
        get_credential: Callable[[], Any] | None = None,
        is_anonymous: bool = False,
        ws_url: str | None = None,
        session_factory: Callable[..., ThreadSessionClient] | None = None,
        auto_bind: bool = True,
        token_refresh_interval: float = config.TOKEN_REFRESH_MIN_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ledger = ledger or ReservationLedger()
        self.api = api
        self.is_anonymous = is_anonymous
        self.ws_url = ws_url
        self.auto_bind = auto_bind
        self._get_credential = get_credential
        self._session_factory = session_factory or ThreadSessionClient
        self._token_refresh_interval = token_refresh_interval
        self._clock = clock

        self.client: ThreadSessionClient | None = None
        self.bound_thread_id: str | None = None
        self.status = ConnectionStatus.DISCONNECTED

        self._refresh_at: float | None = None
        self._refresh_task: asyncio.Task | None = None

        self._handlers: dict[str, Callable[[str, dict, dict], None]] = {
            "HELLO_OK": self._on_hello_ok,
            "ERROR": self._on_server_error,
            "TOKENS_UPDATED": self._on_tokens_updated,
            "MEDIA_URL": self._on_media_url,
            "THREAD_SNAPSHOT": self._on_thread_snapshot,
            "THREAD_INVALIDATED": self._on_thread_invalidated,
            "RUN_CREATED": self._on_run_created,
            "CHAT_ITEMS_CREATED": self._on_chat_items_created,
            "CHAT_ITEM_SEGMENTS": self._on_chat_item_segments,
            "CHAT_ITEM_PROGRESS": self._on_chat_item_progress,
            "CHAT_ITEM_STREAM": self._on_chat_item_stream,
            "CHAT_ITEM_UPDATED": self._on_chat_item_updated,
            "RUN_COMPLETED": self._on_run_completed,
            "RUN_FAILED": self._on_run_failed,
        }

    # ------------------------------------------------------------------
    # Session binding
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected()

    async def bind_thread(self, thread_id: str | None) -> ThreadSessionClient | None:
        """Bind the realtime session to ``thread_id``, tearing down any other binding."""
        tid = str(thread_id or "").strip()
        if not tid or tid == config.DEFAULT_THREAD_ID:
            await self.unbind()
            return None

        if self.client is not None and self.bound_thread_id != tid:
            await self.unbind()

        if self.client is not None:
            await self.client.connect()
            return self.client

        self.store.live.clear_thread(tid)
        local = self.store.get(tid)
        self.client = self._session_factory(
            thread_id=tid,
            get_credential=self._get_credential,
            url=self.ws_url,
            client_state=ServerStamp.from_thread(local).to_dict() if local else None,
            on_status=self._on_status,
            on_event=self.handle_event,
            on_error=self._on_transport_error,
        )
        self.bound_thread_id = tid
        logger.info("Binding realtime session to thread %s", tid)
        await self.client.connect()
        return self.client

    async def unbind(self) -> None:
        client, self.client = self.client, None
        bound, self.bound_thread_id = self.bound_thread_id, None
        self.status = ConnectionStatus.DISCONNECTED
        if client is not None:
            logger.info("Unbinding realtime session from thread %s", bound)
            await client.disconnect(1000, "thread_switch")
        self.store.clear_error()

    async def set_active(self, thread_id: str) -> None:
        tid = str(thread_id or config.DEFAULT_THREAD_ID)
        self.store.commit(active_id=tid)
        if self.auto_bind:
            await self.bind_thread(tid)

    def _on_status(self, event: StatusEvent) -> None:
        self.status = event.status
        if event.status is ConnectionStatus.ERROR:
            self.store.set_error("WS_ERROR", event.extra.get("message") or "WebSocket error")
        elif event.status in (
            ConnectionStatus.CONNECTING,
            ConnectionStatus.SOCKET_OPEN,
            ConnectionStatus.READY,
        ):
            self.store.clear_error()

    def _on_transport_error(self, exc: BaseException) -> None:
        self.store.set_error("WS_ERROR", str(exc) or "WebSocket error")

    def send(self, msg_type: str, payload: dict | None = None) -> bool:
        if not self.is_connected():
            return False
        return self.client.send(msg_type, payload)

    def request_thread_snapshot(self) -> bool:
        tid = self.bound_thread_id
        if not tid:
            return False
        return self.send("GET_THREAD_SNAPSHOT", {"threadId": tid, "includeChatItems": True})

    def request_media_url(self, chat_item_id: str, thread_id: str | None = None) -> bool:
        tid = str(thread_id or self.bound_thread_id or "")
        cid = str(chat_item_id or "")
        if not tid or not cid:
            return False
        return self.send("GET_MEDIA_URL", {"threadId": tid, "chatItemId": cid})

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    def handle_event(self, msg: dict) -> None:
        """Apply one inbound message. Unknown types are ignored."""
        mtype = str(msg.get("type") or "")
        handler = self._handlers.get(mtype)
        if handler is None:
            logger.debug("Ignoring message type %s", mtype)
            return
        p = _payload(msg)
        tid = str(msg.get("threadId") or p.get("threadId") or self.bound_thread_id or "")
        handler(tid, p, msg)

    def _on_hello_ok(self, tid: str, p: dict, msg: dict) -> None:
        self.store.clear_error()
        self.store.live.clear_thread(tid)
        self.store.touch_live()
        snapshot = {k: p[k] for k in _TOKEN_FIELDS if k in p}
        if snapshot:
            snapshot["serverTime"] = p.get("serverTime") or msg.get("ts")
            self.ledger.apply_snapshot(snapshot)
        self._schedule_token_refresh()

    def _on_server_error(self, tid: str, p: dict, msg: dict) -> None:
        code = p.get("code") or "WS_ERROR"
        message = p.get("message") or "WebSocket error"
        logger.warning("Server error on thread %s: %s %s", tid, code, message)
        self.store.set_error(code, message)

    def _on_tokens_updated(self, tid: str, p: dict, msg: dict) -> None:
        self.ledger.apply_snapshot(p)

    def _on_media_url(self, tid: str, p: dict, msg: dict) -> None:
        cid = str(p.get("chatItemId") or "")
        url = str(p.get("url") or "")
        if not cid or not url:
            return

        def apply(thread: dict) -> dict | None:
            idx, item = find_chat_item(thread, cid)
            if item is None:
                return None
            items = ensure_chat_items(thread.get("chatItems"))
            media = item.get("media") if isinstance(item.get("media"), dict) else {}
            items[idx] = {**item, "media": {**media, "playbackUrl": url}, "updatedAt": now_iso()}
            return {**thread, "chatItems": items}

        # playback URLs are short-lived; keep them out of the cache
        self.store.update_thread(tid, apply, persist=False)

    def _on_thread_snapshot(self, tid: str, p: dict, msg: dict) -> None:
        self.apply_thread_snapshot(p.get("thread"), p.get("chatItems"))

    def _on_thread_invalidated(self, tid: str, p: dict, msg: dict) -> None:
        if self.bound_thread_id and self.bound_thread_id == tid:
            self.request_thread_snapshot()

    def _on_run_created(self, tid: str, p: dict, msg: dict) -> None:
        self.store.live.set_last_run(tid, str(p.get("runId") or "") or None)
        self.store.touch_live()
        self._schedule_token_refresh()

    def _on_chat_items_created(self, tid: str, p: dict, msg: dict) -> None:
        items = ensure_chat_items(p.get("items"))
        run_id = str(p.get("runId") or "")

        thread = self.store.get(tid)
        patched = items
        if thread is not None:
            draft = ensure_draft_shape(thread.get("draft"))
            by_item = {
                str(f.get("itemId")): f
                for f in draft["files"]
                if isinstance(f, dict) and f.get("itemId")
            }
            patched = []
            for it in items:
                media = it.get("media") if isinstance(it.get("media"), dict) else {}
                hit = by_item.get(str(it.get("itemId") or ""))
                if not media.get("clientFileId") and hit and hit.get("clientFileId"):
                    it = {**it, "media": {**media, "clientFileId": str(hit["clientFileId"])}}
                patched.append(it)

            moved = {str(it.get("itemId")) for it in items if it.get("itemId")}
            files = [f for f in draft["files"] if str((f or {}).get("itemId") or "") not in moved]
            self.store.put_thread({
                **thread,
                "draft": {**draft, "files": files},
                "chatItems": merge_chat_items(thread.get("chatItems"), patched),
            })

        for it in items:
            iid = str(it.get("itemId") or "")
            cid = str(it.get("chatItemId") or "")
            if iid and cid:
                self.ledger.transfer_prefix(item_key(tid, iid), chat_key(tid, cid))
            if cid:
                self.store.live.seed_item(tid, cid, it.get("status"))
        if run_id:
            self.store.live.set_last_run(tid, run_id)
        self.store.touch_live()

        self.store.index_media(tid, patched)
        self._schedule_token_refresh()
        if self.bound_thread_id == tid:
            self.request_thread_snapshot()

    @staticmethod
    def _step_lang(step: str, p: dict) -> str | None:
        if step != STEP_TRANSLATE:
            return None
        return normalize_lang_key(p.get("lang") or p.get("targetLang")) or None

    def _is_terminal(self, tid: str, cid: str, step: str, lang: str | None) -> bool:
        _, item = find_chat_item(self.store.get(tid), cid)
        return is_step_terminal(item, step, lang)

    def _on_chat_item_segments(self, tid: str, p: dict, msg: dict) -> None:
        cid = str(p.get("chatItemId") or "")
        if not cid:
            return
        step = str(p.get("step") or STEP_TRANSCRIBE)
        segments = p.get("segments") if isinstance(p.get("segments"), list) else []
        self.store.live.set_segments(
            tid, cid, step, segments,
            append=bool(p.get("append")),
            lang=self._step_lang(step, p),
        )
        self.store.touch_live()

    def _on_chat_item_progress(self, tid: str, p: dict, msg: dict) -> None:
        cid = str(p.get("chatItemId") or "")
        step = str(p.get("step") or "")
        if not cid or not step:
            return
        lang = self._step_lang(step, p)
        if self._is_terminal(tid, cid, step, lang):
            logger.debug("Dropping late progress for %s/%s (%s)", cid, step, lang)
            return
        try:
            value = float(p.get("progress") or 0)
        except (TypeError, ValueError):
            value = 0.0
        self.store.live.set_progress(tid, cid, step, value, lang=lang)
        self.store.touch_live()

    def _on_chat_item_stream(self, tid: str, p: dict, msg: dict) -> None:
        cid = str(p.get("chatItemId") or "")
        step = str(p.get("step") or "")
        text = str(p.get("text") or "")
        if not cid or not step or not text:
            return
        lang = self._step_lang(step, p)
        if self._is_terminal(tid, cid, step, lang):
            logger.debug("Dropping late stream chunk for %s/%s (%s)", cid, step, lang)
            return
        self.store.live.append_stream(tid, cid, step, text, lang=lang)
        self.store.touch_live()

    def _on_chat_item_updated(self, tid: str, p: dict, msg: dict) -> None:
        cid = str(p.get("chatItemId") or "")
        if not cid:
            return
        patch = p.get("patch") if isinstance(p.get("patch"), dict) else {
            "status": p.get("status") if isinstance(p.get("status"), dict) else None,
            "results": p.get("results") if isinstance(p.get("results"), dict) else None,
            "updatedAt": now_iso(),
        }

        def apply(thread: dict) -> dict | None:
            idx, item = find_chat_item(thread, cid)
            if item is None:
                return None
            items = ensure_chat_items(thread.get("chatItems"))
            items[idx] = merge_chat_item(item, patch)
            return {**thread, "chatItems": items}

        updated = self.store.update_thread(tid, apply)
        if updated is None:
            return
        _, item = find_chat_item(updated, cid)
        self._release_terminal_holds(tid, cid, item, patch.get("status"))

    def _release_terminal_holds(self, tid: str, cid: str, item: dict, status_patch: Any) -> None:
        """Release holds for the steps this patch touched that are now terminal."""
        if not isinstance(status_patch, dict):
            return
        base = chat_key(tid, cid)
        if STEP_TRANSCRIBE in status_patch and is_step_terminal(item, STEP_TRANSCRIBE):
            self.ledger.release(base)
            self._schedule_token_refresh()
        if STEP_SUMMARIZE in status_patch and is_step_terminal(item, STEP_SUMMARIZE):
            self.ledger.release(summarize_key(base))
        translate = status_patch.get(STEP_TRANSLATE)
        if isinstance(translate, dict):
            for lang in (translate.get("byLang") or {}):
                if is_step_terminal(item, STEP_TRANSLATE, lang):
                    self.ledger.release(translate_key(base, lang))

    def _on_run_completed(self, tid: str, p: dict, msg: dict) -> None:
        for cid in _str_list(p.get("chatItemIds")):
            self.ledger.release_chat_item(tid, cid)
        self._schedule_token_refresh()

    def _on_run_failed(self, tid: str, p: dict, msg: dict) -> None:
        message = str(p.get("message") or "Run failed")
        logger.warning("Run %s failed on thread %s: %s", p.get("runId"), tid, message)
        self.store.set_error(p.get("code") or "RUN_FAILED", message)

        chat_ids = _str_list(p.get("chatItemIds"))
        item_ids = _str_list(p.get("itemIds"))
        for cid in chat_ids:
            self.ledger.release_chat_item(tid, cid)
        for iid in item_ids:
            base = item_key(tid, iid)
            self.ledger.release(base)
            self.ledger.release_by_prefix(base + ":")
        if not chat_ids and not item_ids:
            self.ledger.release_by_prefix(thread_prefix(tid))

        self._schedule_token_refresh()
        if self.bound_thread_id == tid:
            self.request_thread_snapshot()

    # ------------------------------------------------------------------
    # Snapshots and delta sync
    # ------------------------------------------------------------------

    def apply_thread_snapshot(self, thread: Any, chat_items: Any = None) -> dict | None:
        if not isinstance(thread, dict) or not thread.get("id"):
            return None
        tid = str(thread["id"])
        existing = self.store.get(tid) or {}

        incoming = chat_items if isinstance(chat_items, list) and chat_items else thread.get("chatItems")
        items = merge_chat_items(existing.get("chatItems"), incoming)
        items = self.store.hydrate_chat_items(tid, items)

        merged = {
            **existing,
            **thread,
            "id": tid,
            "draft": merge_draft(thread.get("draft"), existing.get("draft")),
            "chatItems": items,
            "server": ServerStamp.from_thread(thread).to_dict(),
        }
        self.store.put_thread(merged)
        return merged

    async def sync_from_server(self) -> list[str]:
        """Delta sync against the thread index; returns the ids that were refetched.

        Soft-deleted threads are dropped without a fetch; threads whose four
        version stamps all match are left alone. Fetched threads are merged
        into the store as it stands after the last request, so pushes that
        arrive mid-sync are kept.
        """
        if self.is_anonymous or self.api is None:
            return []

        since = self.store.sync.get("indexAt")
        index = await self.api.threads_index(since)
        server_time = index.get("serverTime") or now_iso()
        rows = [r for r in index.get("threads") or [] if isinstance(r, dict)]

        deleted: list[str] = []
        need_fetch: list[str] = []
        for row in rows:
            tid = str(row.get("threadId") or row.get("id") or "")
            if not tid or tid == config.DEFAULT_THREAD_ID:
                continue
            if row.get("deletedAt"):
                deleted.append(tid)
                continue
            local = self.store.get(tid)
            if local is None or not ServerStamp.from_dict(local.get("server")).matches(row):
                need_fetch.append(tid)

        fetched: list[dict] = []
        for tid in need_fetch:
            thread = await self.api.get_thread(tid)
            if thread and thread.get("id"):
                fetched.append(thread)

        # no awaits from here on: read-modify-write against the current store
        threads = self.store.threads_by_id
        for tid in deleted:
            threads.pop(tid, None)
            self.ledger.release_by_prefix(thread_prefix(tid))
            self.store.live.clear_thread(tid)
        for thread in fetched:
            tid = str(thread["id"])
            existing = threads.get(tid) or {}
            threads[tid] = {
                **existing,
                **thread,
                "draft": merge_draft(thread.get("draft"), existing.get("draft")),
                "chatItems": merge_chat_items(existing.get("chatItems"), thread.get("chatItems")),
                "server": ServerStamp.from_thread(thread).to_dict(),
            }

        active = self.store.active_id
        if active not in threads:
            active = config.DEFAULT_THREAD_ID
        self.store.commit(threads, active, {**self.store.sync, "indexAt": server_time})
        logger.info("Delta sync: %d rows, %d fetched", len(rows), len(need_fetch))

        if self.bound_thread_id and self.bound_thread_id not in threads:
            await self.unbind()
        return need_fetch

    # ------------------------------------------------------------------
    # Thread CRUD
    # ------------------------------------------------------------------

    async def create_thread(self, title: str | None = None) -> str:
        thread = make_new_thread(title or f"Thread {datetime.now():%Y-%m-%d %H:%M}")
        if not self.is_anonymous and self.api is not None:
            server = await self.api.create_thread(thread["id"], thread["title"])
            if server and server.get("id"):
                thread["createdAt"] = server.get("createdAt") or thread["createdAt"]
                thread["updatedAt"] = server.get("updatedAt") or thread["updatedAt"]
                thread["version"] = server.get("version")
                thread["server"] = ServerStamp.from_thread(server).to_dict()

        self.store.put_thread(thread)
        await self.set_active(thread["id"])
        return thread["id"]

    async def rename_thread(self, thread_id: str, title: str) -> bool:
        tid = str(thread_id or "")
        clean = str(title or "").strip()
        if not tid or tid == config.DEFAULT_THREAD_ID or not clean or self.store.get(tid) is None:
            return False
        if not self.is_anonymous and self.api is not None:
            await self.api.rename_thread(tid, clean)
        self.store.update_thread(tid, lambda t: {**t, "title": clean, "updatedAt": now_iso()})
        return True

    async def delete_thread(self, thread_id: str) -> bool:
        tid = str(thread_id or "")
        if not tid or tid == config.DEFAULT_THREAD_ID or self.store.get(tid) is None:
            return False
        if not self.is_anonymous and self.api is not None:
            await self.api.delete_thread(tid)
        if self.bound_thread_id == tid:
            await self.unbind()
        self.ledger.release_by_prefix(thread_prefix(tid))
        self.store.remove_thread(tid)
        return True

    # ------------------------------------------------------------------
    # Draft media
    # ------------------------------------------------------------------

    def _mutate_draft_files(
        self,
        thread_id: str,
        fn: Callable[[list[dict]], list[dict]],
        draft_rev: Any = None,
        draft_updated_at: str | None = None,
        persist: bool = True,
    ) -> dict | None:
        def apply(thread: dict) -> dict:
            draft = ensure_draft_shape(thread.get("draft"))
            rev = draft_rev if isinstance(draft_rev, int) else int(thread.get("draftRev") or 0) + 1
            ts = now_iso()
            return {
                **thread,
                "draft": {**draft, "files": fn(list(draft["files"]))},
                "draftRev": rev,
                "draftUpdatedAt": draft_updated_at or ts,
                "updatedAt": ts,
            }

        return self.store.update_thread(thread_id, apply, persist=persist)

    def _patch_draft_file(self, thread_id: str, item_id: str, patch: dict, persist: bool = True, **kw) -> None:
        def fn(files: list[dict]) -> list[dict]:
            return [
                {**f, **patch} if str((f or {}).get("itemId")) == item_id else f
                for f in files
            ]

        self._mutate_draft_files(thread_id, fn, persist=persist, **kw)

    def _drop_draft_file(self, thread_id: str, item_id: str) -> None:
        self._mutate_draft_files(
            thread_id,
            lambda files: [f for f in files if str((f or {}).get("itemId")) != item_id],
        )

    def _require_draft_thread(self, thread_id: str) -> str:
        tid = str(thread_id or "")
        if not tid or tid == config.DEFAULT_THREAD_ID or self.store.get(tid) is None:
            raise NoThreadSelectedError("No thread selected")
        return tid

    def _forget_local_media(self, thread_id: str, client_file_id: str | None) -> None:
        cache = self.store.cache
        if cache is None or not self.store.scope or not client_file_id:
            return
        try:
            cache.delete_local_media(self.store.scope, thread_id, client_file_id)
        except CacheError as e:
            logger.warning("Could not delete cached media %s: %s", client_file_id, e)

    async def add_draft_media_from_file(
        self,
        thread_id: str,
        path: str | Path,
        mime: str | None = None,
        duration_seconds: float | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
    ) -> str:
        """Add a local audio/video file to the draft via the chunked socket upload.

        The draft entry appears immediately in ``uploading``; on failure it is
        rolled back and the cached copy of the file removed.
        Returns the draft item id.
        """
        tid = self._require_draft_thread(thread_id)
        src = Path(path)
        mime = mime or mimetypes.guess_type(src.name)[0] or ""
        if not (mime.startswith("audio/") or mime.startswith("video/")):
            raise InvalidMediaError(f"Only audio/video files are allowed: {src.name}")
        try:
            stat = src.stat()
        except OSError as e:
            raise InvalidMediaError(f"Cannot read {src}: {e}") from e

        item_id, client_file_id = new_id(), new_id()
        local_meta = {
            "name": src.name,
            "size": stat.st_size,
            "mime": mime,
            "lastModified": int(stat.st_mtime * 1000),
            "isVideo": mime.startswith("video/"),
        }
        if duration_seconds is not None:
            local_meta["durationSeconds"] = duration_seconds

        cache = self.store.cache
        if cache is not None and self.store.scope:
            try:
                cache.put_local_media(self.store.scope, tid, client_file_id, src, {
                    "origin": "upload", "name": src.name, "mime": mime,
                    "isVideo": local_meta["isVideo"], "bytes": stat.st_size, "savedAt": now_iso(),
                })
            except CacheError as e:
                logger.warning("Could not cache %s locally: %s", src.name, e)

        ts = now_iso()
        optimistic = {
            "itemId": item_id,
            "clientFileId": client_file_id,
            "sourceType": "upload",
            "local": local_meta,
            "stage": STAGE_UPLOADING,
            "createdAt": ts,
            "updatedAt": ts,
        }
        self._mutate_draft_files(tid, lambda files: [optimistic, *files])

        def progress(update: UploadProgress) -> None:
            self._patch_draft_file(
                tid, item_id,
                {"uploadProgress": {"stage": update.stage, "pct": update.pct}},
                persist=False,
            )
            if on_progress is not None:
                on_progress(update)

        try:
            if self.bound_thread_id != tid or self.client is None:
                raise NotConnectedError(f"Realtime session is not bound to thread {tid}")
            result = await upload_draft_file(
                self.client,
                thread_id=tid,
                item_id=item_id,
                client_file_id=client_file_id,
                path=src,
                mime=mime,
                local_meta=local_meta,
                on_progress=progress,
            )
        except Exception:
            logger.warning("Upload of %s failed; rolling back draft entry %s", src.name, item_id)
            self._forget_local_media(tid, client_file_id)
            self._drop_draft_file(tid, item_id)
            raise

        server_file = result.get("draftFile") if isinstance(result.get("draftFile"), dict) else {}
        final_id = str(server_file.get("itemId") or result.get("itemId") or item_id)
        self._patch_draft_file(
            tid, item_id,
            {
                **server_file,
                "itemId": final_id,
                "clientFileId": client_file_id,
                "local": local_meta,
                "stage": server_file.get("stage") or STAGE_UPLOADED,
                "uploadProgress": None,
                "updatedAt": now_iso(),
            },
            draft_rev=result.get("draftRev"),
            draft_updated_at=result.get("draftUpdatedAt"),
        )
        return final_id

    async def add_draft_media_from_url(
        self,
        thread_id: str,
        url: str,
        duration_seconds: float | None = None,
    ) -> str:
        """Link remote media into the draft through the HTTP endpoint."""
        tid = self._require_draft_thread(thread_id)
        clean = str(url or "").strip()
        if not clean.startswith(("http://", "https://")):
            raise InvalidMediaError(f"Not an http(s) link: {clean!r}")
        if self.api is None:
            raise ApiError("No HTTP API configured for linking media", code="API_UNAVAILABLE")

        item_id, client_file_id = new_id(), new_id()
        ts = now_iso()
        optimistic = {
            "itemId": item_id,
            "clientFileId": client_file_id,
            "sourceType": "url",
            "url": clean,
            "urlMeta": {},
            "stage": STAGE_LINKING,
            "createdAt": ts,
            "updatedAt": ts,
        }
        self._mutate_draft_files(tid, lambda files: [optimistic, *files])

        url_meta = {"durationSeconds": duration_seconds} if duration_seconds is not None else {}
        try:
            result = await self.api.add_draft_link(
                tid, item_id, client_file_id, clean,
                title=(self.store.get(tid) or {}).get("title"),
                url_meta=url_meta,
            )
        except Exception:
            logger.warning("Linking %s failed; rolling back draft entry %s", clean, item_id)
            self._drop_draft_file(tid, item_id)
            raise

        server_file = result.get("draftFile") if isinstance(result.get("draftFile"), dict) else {}
        self._patch_draft_file(
            tid, item_id,
            {
                **server_file,
                "urlMeta": url_meta,
                "stage": server_file.get("stage") or STAGE_LINKED,
                "updatedAt": now_iso(),
            },
            draft_rev=result.get("draftRev"),
            draft_updated_at=result.get("draftUpdatedAt"),
        )
        return item_id

    async def delete_draft_media(self, thread_id: str, item_id: str) -> bool:
        tid = self._require_draft_thread(thread_id)
        iid = str(item_id or "")
        draft = ensure_draft_shape((self.store.get(tid) or {}).get("draft"))
        entry = next((f for f in draft["files"] if str((f or {}).get("itemId")) == iid), None)
        if entry is None:
            return False

        self._forget_local_media(tid, entry.get("clientFileId"))
        if self.api is not None:
            await self.api.delete_draft_media(tid, iid)
        self._drop_draft_file(tid, iid)
        base = item_key(tid, iid)
        self.ledger.release(base)
        self.ledger.release_by_prefix(base + ":")
        return True

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def refresh_tokens(self) -> bool:
        """Fetch the authoritative balance now. Failures are logged, never raised."""
        if self.is_anonymous or self.api is None:
            return False
        try:
            data = await self.api.get_tokens()
        except ApiError as e:
            logger.warning("Token refresh failed: %s", e)
            return False
        finally:
            self._refresh_at = self._clock()
        self.ledger.apply_snapshot(data)
        return True

    def _schedule_token_refresh(self) -> None:
        """Refresh in the background, at most once per window and never concurrently."""
        if self.is_anonymous or self.api is None:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        now = self._clock()
        if self._refresh_at is not None and now - self._refresh_at < self._token_refresh_interval:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping token refresh")
            return
        self._refresh_at = now
        self._refresh_task = loop.create_task(self.refresh_tokens())
