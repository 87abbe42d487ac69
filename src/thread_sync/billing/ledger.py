"""Optimistic media-token reservations.

Before a run starts the client holds an estimate per unit of work so the
available balance shown to the user drops immediately. Keys are
hierarchical strings::

    <thread>:item:<itemId>            transcription of a draft item
    <thread>:chat:<chatItemId>        transcription of a chat item
    <base>:tr:<lang>                  translation target
    <base>:sum                        summarization

A key holds at most one amount: reserving again replaces it. Holds are capped
so their total never exceeds the last known available balance, and every
authoritative token snapshot from the server clears them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Callable

from thread_sync.langkey import normalize_lang_key

logger = logging.getLogger(__name__)


def item_key(thread_id: str, item_id: str) -> str:
    return f"{thread_id}:item:{item_id}"


def chat_key(thread_id: str, chat_item_id: str) -> str:
    return f"{thread_id}:chat:{chat_item_id}"


def translate_key(base: str, lang: str) -> str:
    return f"{base}:tr:{normalize_lang_key(lang)}"


def summarize_key(base: str) -> str:
    return f"{base}:sum"


def thread_prefix(thread_id: str) -> str:
    return f"{thread_id}:"


def _int(value: Any) -> int:
    try:
        n = float(value or 0)
    except (TypeError, ValueError):
        return 0
    return int(n) if math.isfinite(n) else 0


@dataclass(frozen=True)
class TokenSnapshot:
    """Authoritative token state as last reported by the server."""

    media_tokens: int = 0
    media_tokens_balance: int = 0
    media_tokens_reserved: int = 0
    provider: str | None = None
    pricing_version: str | None = None
    server_time: str | None = None

    _WIRE = {
        "mediaTokens": "media_tokens",
        "mediaTokensBalance": "media_tokens_balance",
        "mediaTokensReserved": "media_tokens_reserved",
        "provider": "provider",
        "pricingVersion": "pricing_version",
        "serverTime": "server_time",
    }

    def updated(self, partial: "TokenSnapshot | dict | None") -> "TokenSnapshot":
        """Apply only the fields present in ``partial`` (camelCase wire keys)."""
        if isinstance(partial, TokenSnapshot):
            return partial
        if not isinstance(partial, dict):
            return self
        changes: dict[str, Any] = {}
        for wire, attr in self._WIRE.items():
            if wire not in partial:
                continue
            if attr.startswith("media_tokens"):
                changes[attr] = _int(partial[wire])
            else:
                changes[attr] = partial[wire] or None
        return replace(self, **changes)

    @classmethod
    def from_payload(cls, payload: dict | None) -> "TokenSnapshot":
        return cls().updated(payload)

    def to_dict(self) -> dict:
        return {wire: getattr(self, attr) for wire, attr in self._WIRE.items()}


def compute_available_unused(snapshot: TokenSnapshot, pending: int | None = None) -> int:
    """Tokens still free once optimistic holds are subtracted.

    ``pending`` is server-reserved plus optimistic holds. The optimistic part
    is clamped to what is available, so the result is never negative.
    """
    available = max(0, snapshot.media_tokens)
    server_reserved = max(0, snapshot.media_tokens_reserved)
    pending_total = server_reserved if pending is None else max(0, pending)
    optimistic = min(max(0, pending_total - server_reserved), available)
    return max(0, available - optimistic)


class ReservationLedger:
    """Key -> amount map of optimistic holds, plus the token snapshot they are capped by.

    All mutations are synchronous, so a ``transfer`` is atomic with respect to
    any other event handler running on the same loop.
    """

    def __init__(
        self,
        snapshot: TokenSnapshot | None = None,
        on_change: Callable[["ReservationLedger"], None] | None = None,
    ):
        self._snapshot = snapshot or TokenSnapshot()
        self._holds: dict[str, int] = {}
        self._on_change = on_change

    @property
    def snapshot(self) -> TokenSnapshot:
        return self._snapshot

    @property
    def total(self) -> int:
        return sum(self._holds.values())

    @property
    def pending(self) -> int:
        return max(0, self._snapshot.media_tokens_reserved) + self.total

    @property
    def available_unused(self) -> int:
        return compute_available_unused(self._snapshot, self.pending)

    def keys(self) -> list[str]:
        return list(self._holds)

    def get(self, key: str) -> int:
        return self._holds.get(str(key or "").strip(), 0)

    def is_reserved(self, key: str, amount: int | None = None) -> bool:
        held = self.get(key)
        if amount is None:
            return held > 0
        return held == amount

    def as_dict(self) -> dict[str, int]:
        return dict(self._holds)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reserve(self, key: str, amount: Any) -> int:
        """Hold ``amount`` under ``key``, replacing any previous hold.

        Returns the amount actually held, which is lower than requested when
        the balance cannot cover it.
        """
        k = str(key or "").strip()
        if not k:
            return 0
        try:
            wanted = max(0, math.ceil(float(amount or 0)))
        except (TypeError, ValueError, OverflowError):
            wanted = 0

        prior = self._holds.pop(k, None)
        headroom = max(0, self._snapshot.media_tokens - self.total)
        effective = min(wanted, headroom)
        if effective < wanted:
            logger.warning(
                "Reservation %s capped at %d tokens (requested %d)", k, effective, wanted
            )

        if effective > 0:
            self._holds[k] = effective
        if effective > 0 or prior is not None:
            self._changed()
        return effective

    def release(self, key: str) -> int:
        amount = self._holds.pop(str(key or "").strip(), None)
        if amount is None:
            return 0
        self._changed()
        return amount

    def release_by_prefix(self, prefix: str) -> int:
        p = str(prefix or "")
        if not p:
            return 0
        doomed = [k for k in self._holds if k.startswith(p)]
        released = sum(self._holds.pop(k) for k in doomed)
        if doomed:
            self._changed()
        return released

    def release_chat_item(self, thread_id: str, chat_item_id: str) -> int:
        """Release the chat item's transcription hold and all its sub-keys."""
        base = chat_key(thread_id, chat_item_id)
        released = self.release(base)
        return released + self.release_by_prefix(base + ":")

    def clear_all(self) -> None:
        if self._holds:
            self._holds.clear()
            self._changed()

    def transfer(self, old_key: str, new_key: str) -> int:
        """Move a hold to a new key (replacing whatever the new key held)."""
        old = str(old_key or "").strip()
        new = str(new_key or "").strip()
        if not old or not new or old == new or old not in self._holds:
            return 0
        amount = self._holds.pop(old)
        self._holds[new] = amount
        self._changed()
        return amount

    def transfer_prefix(self, old_base: str, new_base: str) -> int:
        """Move ``old_base`` and every ``old_base:...`` key under ``new_base``."""
        old = str(old_base or "").strip()
        new = str(new_base or "").strip()
        if not old or not new or old == new:
            return 0
        moving = [k for k in self._holds if k == old or k.startswith(old + ":")]
        if not moving:
            return 0
        moved = 0
        for k in moving:
            amount = self._holds.pop(k)
            self._holds[new + k[len(old):]] = amount
            moved += amount
        self._changed()
        return moved

    def apply_snapshot(self, snapshot: TokenSnapshot | dict | None) -> TokenSnapshot:
        """Merge a (partial) server snapshot and drop every optimistic hold."""
        self._snapshot = self._snapshot.updated(snapshot)
        self._holds.clear()
        self._changed()
        return self._snapshot

    def _changed(self) -> None:
        if self._on_change is not None:
            try:
                self._on_change(self)
            except Exception:
                logger.exception("Reservation listener failed")
