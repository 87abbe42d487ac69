"""Thread, draft and chat-item shapes.

Threads travel as JSON-shaped dicts (that is how the server and the cache
speak); these helpers normalize them and answer the questions the engine
keeps asking: is this draft file ready, is a step terminal, do two version
stamps match.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from thread_sync.config import DEFAULT_THREAD_ID
from thread_sync.langkey import get_by_lang_ci

# Draft file stages
STAGE_CONVERTING = "converting"
STAGE_UPLOADING = "uploading"
STAGE_LINKING = "linking"
STAGE_UPLOADED = "uploaded"
STAGE_LINKED = "linked"

READY_STAGES = frozenset({STAGE_UPLOADED, STAGE_LINKED})
BUSY_STAGES = frozenset({STAGE_UPLOADING, STAGE_CONVERTING, STAGE_LINKING})

# Chat item steps
STEP_TRANSCRIBE = "transcribe"
STEP_TRANSLATE = "translate"
STEP_SUMMARIZE = "summarize"
STEPS = (STEP_TRANSCRIBE, STEP_TRANSLATE, STEP_SUMMARIZE)

TERMINAL_STATES = frozenset({"done", "failed"})
TERMINAL_LANG_STATES = frozenset({"done", "failed", "blocked"})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def parse_ts(value: Any) -> float:
    """ISO timestamp -> epoch seconds; 0 for missing or unparseable values."""
    s = str(value or "").strip()
    if not s:
        return 0.0
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_ready_draft_file(f: Any) -> bool:
    return isinstance(f, dict) and str(f.get("stage") or "") in READY_STAGES


def is_busy_draft_file(f: Any) -> bool:
    return isinstance(f, dict) and str(f.get("stage") or "") in BUSY_STAGES


def ensure_draft_shape(draft: Any) -> dict:
    out = dict(draft) if isinstance(draft, dict) else {}
    if not isinstance(out.get("files"), list):
        out["files"] = []
    if not isinstance(out.get("shared"), dict):
        out["shared"] = {}
    out.setdefault("mode", "batch")
    out.setdefault("status", "staging")
    return out


def ensure_chat_items(items: Any) -> list[dict]:
    return [it for it in items if isinstance(it, dict)] if isinstance(items, list) else []


def find_chat_item(thread: dict | None, chat_item_id: str) -> tuple[int, dict | None]:
    cid = str(chat_item_id or "")
    for i, it in enumerate(ensure_chat_items((thread or {}).get("chatItems"))):
        if str(it.get("chatItemId") or "") == cid:
            return i, it
    return -1, None


def step_state(item: dict | None, step: str, lang: str | None = None) -> str:
    """Current state string of a step (or a translate language) on a chat item."""
    status = (item or {}).get("status") or {}
    node = status.get(step) or {}
    if not isinstance(node, dict):
        return ""
    if step == STEP_TRANSLATE and lang:
        entry = get_by_lang_ci(node.get("byLang") or {}, lang)
        return str((entry or {}).get("state") or "") if isinstance(entry, dict) else ""
    return str(node.get("state") or "")


def is_step_terminal(item: dict | None, step: str, lang: str | None = None) -> bool:
    state = step_state(item, step, lang)
    if step == STEP_TRANSLATE and lang:
        return state in TERMINAL_LANG_STATES
    return state in TERMINAL_STATES


def make_new_thread(title: str | None = None, thread_id: str | None = None) -> dict:
    ts = now_iso()
    return {
        "id": thread_id or new_id(),
        "title": title or "New Thread",
        "createdAt": ts,
        "updatedAt": ts,
        "draft": ensure_draft_shape(None),
        "chatItems": [],
        "draftRev": 0,
        "draftUpdatedAt": None,
        "server": ServerStamp().to_dict(),
    }


def make_default_thread() -> dict:
    return make_new_thread("Default", DEFAULT_THREAD_ID)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ServerStamp:
    """The server's version stamps for a thread.

    Two stamps describe the same server state only when all four fields are
    equal; any difference means the local copy must be refetched.
    """

    updated_at: str | None = None
    draft_updated_at: str | None = None
    version: int | None = None
    draft_rev: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "ServerStamp":
        d = data if isinstance(data, dict) else {}
        return cls(
            updated_at=_opt_str(d.get("updatedAt")),
            draft_updated_at=_opt_str(d.get("draftUpdatedAt")),
            version=_opt_int(d.get("version")),
            draft_rev=_opt_int(d.get("draftRev")),
        )

    @classmethod
    def from_thread(cls, thread: Any) -> "ServerStamp":
        """Prefer an embedded ``server`` stamp, else the thread's own top-level fields."""
        t = thread if isinstance(thread, dict) else {}
        if isinstance(t.get("server"), dict):
            return cls.from_dict(t["server"])
        return cls.from_dict(t)

    def matches(self, row: Any) -> bool:
        return self == ServerStamp.from_dict(row)

    def to_dict(self) -> dict:
        return {
            "updatedAt": self.updated_at,
            "draftUpdatedAt": self.draft_updated_at,
            "version": self.version,
            "draftRev": self.draft_rev,
        }
