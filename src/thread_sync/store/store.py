"""The single in-memory thread store.

Reads are synchronous; every write goes through ``commit()``, which replaces
whole slices, notifies subscribers, and persists to the local cache under
the owner scope.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable

from thread_sync.config import DEFAULT_THREAD_ID
from thread_sync.exceptions import CacheError
from thread_sync.store.cache import LocalCache
from thread_sync.store.live import LiveRunState
from thread_sync.store.merge import sort_threads
from thread_sync.store.models import ensure_chat_items, make_default_thread

logger = logging.getLogger(__name__)

StoreListener = Callable[["ThreadStore"], None]


class ThreadStore:
    """Threads by id, the active thread, delta-sync bookkeeping and live run buffers.

    Args:
        cache: Local persistent cache; None keeps everything in memory.
        scope: Owner scope the state is saved under (``user:<id>``/``anon:<id>``).
        media_scopes: Scopes searched, in order, when resolving a chat item's
            local file. Defaults to ``[scope]``.
    """

    def __init__(
        self,
        cache: LocalCache | None = None,
        scope: str | None = None,
        media_scopes: Iterable[str] | None = None,
    ):
        self._cache = cache
        self.scope = scope
        self.media_scopes = [s for s in (media_scopes or [scope]) if s]
        self._threads: dict[str, dict] = {DEFAULT_THREAD_ID: make_default_thread()}
        self._active_id = DEFAULT_THREAD_ID
        self._sync: dict[str, Any] = {"indexAt": None}
        self._listeners: list[StoreListener] = []
        self.live = LiveRunState()
        self.last_error: dict | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def cache(self) -> LocalCache | None:
        return self._cache

    @property
    def threads_by_id(self) -> dict[str, dict]:
        return dict(self._threads)

    @property
    def active_id(self) -> str:
        return self._active_id

    @property
    def sync(self) -> dict[str, Any]:
        return dict(self._sync)

    @property
    def threads(self) -> list[dict]:
        return sort_threads(self._threads)

    @property
    def active_thread(self) -> dict | None:
        return self._threads.get(self._active_id) or self._threads.get(DEFAULT_THREAD_ID)

    def get(self, thread_id: str) -> dict | None:
        return self._threads.get(str(thread_id))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return off

    def load(self) -> None:
        """Restore cached state for the scope; the default thread always exists."""
        data = None
        if self._cache is not None and self.scope:
            try:
                data = self._cache.load_state(self.scope)
            except CacheError as e:
                logger.warning("Could not load cached threads for %s: %s", self.scope, e)

        threads = dict((data or {}).get("threadsById") or {})
        threads.setdefault(DEFAULT_THREAD_ID, make_default_thread())
        active = str((data or {}).get("activeId") or DEFAULT_THREAD_ID)
        if active not in threads:
            active = DEFAULT_THREAD_ID
        sync = (data or {}).get("sync") or {"indexAt": None}

        self._threads = threads
        self._active_id = active
        self._sync = dict(sync)
        self.live.clear()
        logger.info("Loaded %d cached threads for scope %s", len(threads), self.scope)
        self._notify()

    def commit(
        self,
        threads_by_id: dict[str, dict] | None = None,
        active_id: str | None = None,
        sync: dict | None = None,
        persist: bool = True,
    ) -> None:
        """Replace the given slices (None keeps the current one), notify, persist."""
        if threads_by_id is not None:
            self._threads = dict(threads_by_id)
            self._threads.setdefault(DEFAULT_THREAD_ID, make_default_thread())
        if active_id is not None:
            self._active_id = str(active_id)
        if sync is not None:
            self._sync = dict(sync)
        self._notify()
        if persist:
            self._persist()

    def put_thread(self, thread: dict, persist: bool = True) -> None:
        self.commit({**self._threads, str(thread["id"]): thread}, persist=persist)

    def update_thread(
        self,
        thread_id: str,
        fn: Callable[[dict], dict | None],
        persist: bool = True,
    ) -> dict | None:
        """Read-modify-write one thread. ``fn`` returning None leaves it untouched."""
        current = self._threads.get(str(thread_id))
        if current is None:
            return None
        updated = fn(copy.deepcopy(current))
        if updated is None:
            return None
        self.put_thread(updated, persist=persist)
        return updated

    def remove_thread(self, thread_id: str) -> None:
        tid = str(thread_id)
        if tid == DEFAULT_THREAD_ID or tid not in self._threads:
            return
        threads = {k: v for k, v in self._threads.items() if k != tid}
        active = DEFAULT_THREAD_ID if self._active_id == tid else self._active_id
        self.live.clear_thread(tid)
        self.commit(threads, active)

    def set_error(self, code: str | None, message: str | None) -> None:
        self.last_error = {"code": code or "WS_ERROR", "message": message or ""}
        self._notify()

    def clear_error(self) -> None:
        if self.last_error is not None:
            self.last_error = None
            self._notify()

    def touch_live(self) -> None:
        """Notify subscribers after a live-buffer change (nothing is persisted)."""
        self._notify()

    # ------------------------------------------------------------------
    # Media index
    # ------------------------------------------------------------------

    def hydrate_chat_items(self, thread_id: str, items: list[dict]) -> list[dict]:
        """Fill ``media.clientFileId`` from the media index where the server omits it."""
        if self._cache is None or not self.media_scopes:
            return items
        out = []
        for it in ensure_chat_items(items):
            media = it.get("media") if isinstance(it.get("media"), dict) else {}
            cid = str(it.get("chatItemId") or "")
            if not cid or media.get("clientFileId"):
                out.append(it)
                continue
            hit = self._lookup_media_index(thread_id, cid)
            if hit:
                it = {**it, "media": {**media, "clientFileId": hit["clientFileId"]}}
            out.append(it)
        return out

    def index_media(self, thread_id: str, items: list[dict]) -> None:
        if self._cache is None or not self.scope:
            return
        for it in ensure_chat_items(items):
            media = it.get("media") if isinstance(it.get("media"), dict) else {}
            cid = str(it.get("chatItemId") or "")
            cfi = str(media.get("clientFileId") or "")
            if not cid or not cfi:
                continue
            try:
                self._cache.put_media_index(
                    self.scope, thread_id, cid, cfi,
                    filename=media.get("filename") or media.get("name"),
                    mime=media.get("mime"),
                )
            except CacheError as e:
                logger.warning("Could not index media for chat item %s: %s", cid, e)

    def _lookup_media_index(self, thread_id: str, chat_item_id: str) -> dict | None:
        for scope in self.media_scopes:
            try:
                hit = self._cache.get_media_index(scope, thread_id, chat_item_id)
            except CacheError as e:
                logger.warning("Media index lookup failed for %s: %s", chat_item_id, e)
                return None
            if hit and hit.get("clientFileId"):
                return hit
        return None

    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self._cache is None or not self.scope:
            return
        try:
            self._cache.save_state(self.scope, self._threads, self._active_id, self._sync)
        except CacheError as e:
            logger.warning("Could not persist threads for %s: %s", self.scope, e)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")
