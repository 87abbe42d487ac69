"""Media-token estimates and optimistic reservations."""

from thread_sync.billing.estimates import (
    LlmEstimate,
    estimate_run_tokens,
    estimate_summarization,
    estimate_transcription_tokens,
    estimate_translation,
)
from thread_sync.billing.ledger import (
    ReservationLedger,
    TokenSnapshot,
    chat_key,
    compute_available_unused,
    item_key,
    summarize_key,
    thread_prefix,
    translate_key,
)

__all__ = [
    "LlmEstimate",
    "estimate_run_tokens",
    "estimate_summarization",
    "estimate_transcription_tokens",
    "estimate_translation",
    "ReservationLedger",
    "TokenSnapshot",
    "chat_key",
    "compute_available_unused",
    "item_key",
    "summarize_key",
    "thread_prefix",
    "translate_key",
]
