"""Owner scope strings used to key the local cache."""

from __future__ import annotations


def make_scope(user_id: str | None, is_anonymous: bool) -> str | None:
    """``anon:<uid>`` for guests, ``user:<uid>`` for signed-in users."""
    uid = str(user_id or "").strip()
    if not uid:
        return None
    return f"anon:{uid}" if is_anonymous else f"user:{uid}"


def scope_candidates(user_id: str | None, is_anonymous: bool) -> list[str]:
    """Primary scope first, then legacy scopes so older cached media still resolves."""
    uid = str(user_id or "").strip()
    candidates = [make_scope(user_id, is_anonymous)]
    if uid:
        candidates.append(uid)
    candidates.append("guest")
    if uid:
        candidates.extend([f"anon:{uid}", f"user:{uid}"])

    out: list[str] = []
    for c in candidates:
        if c and c not in out:
            out.append(c)
    return out
