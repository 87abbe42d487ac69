"""Thread state: shapes, merges, live buffers, local cache and the store."""

from thread_sync.store.cache import LocalCache
from thread_sync.store.live import LiveRunState
from thread_sync.store.merge import (
    merge_by_lang,
    merge_chat_item,
    merge_chat_items,
    merge_draft,
    merge_results,
    merge_status,
    sort_threads,
)
from thread_sync.store.models import ServerStamp, ensure_draft_shape, is_busy_draft_file, is_ready_draft_file
from thread_sync.store.store import ThreadStore

__all__ = [
    "LocalCache",
    "LiveRunState",
    "merge_by_lang",
    "merge_chat_item",
    "merge_chat_items",
    "merge_draft",
    "merge_results",
    "merge_status",
    "sort_threads",
    "ServerStamp",
    "ensure_draft_shape",
    "is_busy_draft_file",
    "is_ready_draft_file",
    "ThreadStore",
]
