"""Per-entity merge functions used when server state meets local state.

All functions are pure: they never mutate their inputs and always return
new containers for anything they change.
"""

from __future__ import annotations

from typing import Any

from thread_sync.langkey import get_lang_key_ci
from thread_sync.store.models import (
    STEP_SUMMARIZE,
    STEP_TRANSCRIBE,
    STEP_TRANSLATE,
    ensure_chat_items,
    ensure_draft_shape,
    is_busy_draft_file,
    now_iso,
    parse_ts,
)


def merge_draft(server_draft: Any, local_draft: Any) -> dict:
    """Server files win; local-only files survive only while still busy."""
    s = ensure_draft_shape(server_draft)
    local = ensure_draft_shape(local_draft)
    server_ids = {str(f.get("itemId") or "") for f in s["files"] if isinstance(f, dict)}

    extras = [
        f for f in local["files"]
        if isinstance(f, dict)
        and f.get("itemId")
        and str(f["itemId"]) not in server_ids
        and is_busy_draft_file(f)
    ]
    return {**s, "files": [*s["files"], *extras]}


def merge_by_lang(prev: Any, patch: Any) -> dict:
    """Merge per-language maps; languages match case-insensitively.

    Entries that are dicts on both sides are merged field by field, anything
    else is replaced.
    """
    out = dict(prev) if isinstance(prev, dict) else {}
    if not isinstance(patch, dict):
        return out
    for lang, value in patch.items():
        key = get_lang_key_ci(out, lang)
        if key is None:
            out[lang] = value
            continue
        cur = out[key]
        if isinstance(cur, dict) and isinstance(value, dict):
            out[key] = {**cur, **value}
        else:
            out[key] = value
    return out


def merge_status(prev: Any, patch: Any) -> dict:
    out = dict(prev) if isinstance(prev, dict) else {}
    if not isinstance(patch, dict):
        return out
    for step, value in patch.items():
        cur = out.get(step)
        if step in (STEP_TRANSCRIBE, STEP_SUMMARIZE) and isinstance(cur, dict) and isinstance(value, dict):
            out[step] = {**cur, **value}
        elif step == STEP_TRANSLATE and isinstance(cur, dict) and isinstance(value, dict):
            merged = {**cur, **value}
            if "byLang" in value:
                merged["byLang"] = merge_by_lang(cur.get("byLang"), value.get("byLang"))
            out[step] = merged
        else:
            out[step] = value
    return out


def merge_results(prev: Any, patch: Any) -> dict:
    out = dict(prev) if isinstance(prev, dict) else {}
    if not isinstance(patch, dict):
        return out
    for field, value in patch.items():
        if field == "translations" and isinstance(value, dict):
            out[field] = merge_by_lang(out.get(field), value)
        else:
            out[field] = value
    return out


def merge_chat_item(prev: Any, patch: Any) -> dict:
    """Last writer wins per top-level field; status and results merge deeply."""
    base = dict(prev) if isinstance(prev, dict) else {}
    p = patch if isinstance(patch, dict) else {}

    out = {**base, **{k: v for k, v in p.items() if k not in ("status", "results")}}
    out["status"] = (
        merge_status(base.get("status"), p["status"])
        if isinstance(p.get("status"), dict)
        else base.get("status") or {}
    )
    out["results"] = (
        merge_results(base.get("results"), p["results"])
        if isinstance(p.get("results"), dict)
        else base.get("results") or {}
    )
    out["updatedAt"] = p.get("updatedAt") or base.get("updatedAt") or now_iso()
    return out


def merge_chat_items(prev: Any, incoming: Any) -> list[dict]:
    """Union by ``chatItemId``, newest ``createdAt`` first."""
    by_id: dict[str, dict] = {}
    for it in ensure_chat_items(prev):
        by_id[str(it.get("chatItemId") or "")] = it
    for it in ensure_chat_items(incoming):
        cid = str(it.get("chatItemId") or "")
        by_id[cid] = merge_chat_item(by_id[cid], it) if cid in by_id else it

    out = [it for cid, it in by_id.items() if cid]
    out.sort(key=lambda it: parse_ts(it.get("createdAt")), reverse=True)
    return out


def sort_threads(threads_by_id: dict[str, dict] | None) -> list[dict]:
    """Most recently updated first (``createdAt`` when never updated)."""
    threads = [t for t in (threads_by_id or {}).values() if isinstance(t, dict)]
    threads.sort(key=lambda t: parse_ts(t.get("updatedAt") or t.get("createdAt")), reverse=True)
    return threads
