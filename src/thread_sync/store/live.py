"""Transient per-run buffers fed by streaming push events.

Layout::

    {thread_id: {
        "lastRunId": str | None,
        "chatItems": {chat_item_id: {
            "status": {...},
            "progress": {"transcribe": 40, "translate": {"fr": 10}},
            "stream":   {"transcribe": ["chunk", ...], "translate": {"fr": [...]}},
            "segments": {"transcribe": [...], "translate": {"fr": [...]}},
        }},
    }}

None of this is authoritative or persisted; a rebind starts from scratch.
"""

from __future__ import annotations

import copy
from typing import Any

from thread_sync.langkey import normalize_lang_key
from thread_sync.store.models import STEP_TRANSLATE, now_iso


class LiveRunState:
    def __init__(self):
        self._threads: dict[str, dict] = {}

    def snapshot(self) -> dict:
        return copy.deepcopy(self._threads)

    def thread(self, thread_id: str) -> dict:
        return self._threads.get(str(thread_id), {})

    def item(self, thread_id: str, chat_item_id: str) -> dict:
        return self.thread(thread_id).get("chatItems", {}).get(str(chat_item_id), {})

    def clear(self) -> None:
        self._threads = {}

    def clear_thread(self, thread_id: str) -> None:
        self._threads.pop(str(thread_id), None)

    def set_last_run(self, thread_id: str, run_id: str | None) -> None:
        t = self._thread(thread_id)
        t["lastRunId"] = run_id or None
        t["updatedAt"] = now_iso()

    def seed_item(self, thread_id: str, chat_item_id: str, status: dict | None = None) -> None:
        """Start fresh buffers for a newly created chat item."""
        entry = self._item(thread_id, chat_item_id)
        entry.update({
            "status": dict(status or {}),
            "progress": {},
            "stream": {},
            "segments": {},
            "updatedAt": now_iso(),
        })

    def set_progress(self, thread_id, chat_item_id, step: str, value: float, lang: str | None = None) -> None:
        entry = self._item(thread_id, chat_item_id)
        self._put(entry.setdefault("progress", {}), step, lang, value)
        entry["lastProgressAt"] = entry["updatedAt"] = now_iso()

    def append_stream(self, thread_id, chat_item_id, step: str, text: str, lang: str | None = None) -> None:
        entry = self._item(thread_id, chat_item_id)
        bucket = entry.setdefault("stream", {})
        current = self._get(bucket, step, lang) or []
        self._put(bucket, step, lang, [*current, text])
        entry["updatedAt"] = now_iso()

    def set_segments(
        self,
        thread_id,
        chat_item_id,
        step: str,
        segments: list[dict],
        append: bool = False,
        lang: str | None = None,
    ) -> None:
        entry = self._item(thread_id, chat_item_id)
        bucket = entry.setdefault("segments", {})
        current = (self._get(bucket, step, lang) or []) if append else []
        self._put(bucket, step, lang, [*current, *segments])
        entry["updatedAt"] = now_iso()

    def reset_step(self, thread_id, chat_item_id, step: str, lang: str | None = None) -> None:
        """Empty one step's buffers (optimistic clear before a retry)."""
        entry = self._item(thread_id, chat_item_id)
        self._put(entry.setdefault("progress", {}), step, lang, 0)
        self._put(entry.setdefault("stream", {}), step, lang, [])
        self._put(entry.setdefault("segments", {}), step, lang, [])
        entry["updatedAt"] = now_iso()

    def get_progress(self, thread_id, chat_item_id, step: str, lang: str | None = None) -> Any:
        return self._get(self.item(thread_id, chat_item_id).get("progress", {}), step, lang)

    def get_stream(self, thread_id, chat_item_id, step: str, lang: str | None = None) -> list[str]:
        return self._get(self.item(thread_id, chat_item_id).get("stream", {}), step, lang) or []

    def get_segments(self, thread_id, chat_item_id, step: str, lang: str | None = None) -> list[dict]:
        return self._get(self.item(thread_id, chat_item_id).get("segments", {}), step, lang) or []

    # ------------------------------------------------------------------

    def _thread(self, thread_id: str) -> dict:
        return self._threads.setdefault(str(thread_id), {"lastRunId": None, "chatItems": {}})

    def _item(self, thread_id: str, chat_item_id: str) -> dict:
        t = self._thread(thread_id)
        t["updatedAt"] = now_iso()
        return t.setdefault("chatItems", {}).setdefault(str(chat_item_id), {})

    @staticmethod
    def _get(bucket: dict, step: str, lang: str | None) -> Any:
        if step == STEP_TRANSLATE and lang:
            per_lang = bucket.get(step)
            return per_lang.get(normalize_lang_key(lang)) if isinstance(per_lang, dict) else None
        return bucket.get(step)

    @staticmethod
    def _put(bucket: dict, step: str, lang: str | None, value: Any) -> None:
        if step == STEP_TRANSLATE and lang:
            per_lang = bucket.get(step)
            if not isinstance(per_lang, dict):
                per_lang = bucket[step] = {}
            per_lang[normalize_lang_key(lang)] = value
        else:
            bucket[step] = value
