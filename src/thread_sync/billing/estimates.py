"""Deterministic media-token estimates for transcription, translation and summarization.

The server is authoritative for charges; these numbers only size the
optimistic reservations made before a run starts. Everything is integer
math with explicit ceilings so client and server agree to the token.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable

from thread_sync.langkey import normalize_lang_key
from thread_sync.srt import normalize_whitespace, segments_to_plain_text, srt_to_segments

PRICING_VERSION = "v1_2026-02-14"
TOKENS_PER_USD = 200
BILLING_QUANTUM_SECONDS = 1
MIN_BILLABLE_SECONDS = 1

# transcription model id -> media tokens per minute of audio
TOKENS_PER_MINUTE: dict[str, int] = {
    "deepgram_nova3": 24,
    "deepgram_whisper": 30,
    "upliftai_scribe": 18,
    "upliftai_scribe_mini": 12,
}

# LLM pricing: $2.00 per 1M tokens with a 20x markup
USD_CENTS_PER_1M_LLM_TOKENS = 200 * 20

CHARS_PER_TOKEN = 4
WORDS_PER_MINUTE = 150
CHARS_PER_WORD = 5.0
OUTPUT_RATIO = 1.1
TRANSLATION_PROMPT_OVERHEAD = 120
TRANSLATION_PER_TARGET_OVERHEAD = 40
SUMMARY_PROMPT_OVERHEAD = 160


def _ceil_div(a: int, b: int) -> int:
    if a <= 0 or b <= 0:
        return 0
    return -(-a // b)


def _ratio_ceil(value: int, ratio: float) -> int:
    # ratio applied in thousandths so 100 * 1.1 is exactly 110
    return _ceil_div(value * round(ratio * 1000), 1000)


# ----------------------------------------------------------------------
# Transcription
# ----------------------------------------------------------------------


def tokens_per_minute(model_id: str | None) -> int:
    return TOKENS_PER_MINUTE.get(str(model_id or ""), 0)


def billable_seconds(
    duration_seconds: Any,
    quantum: int = BILLING_QUANTUM_SECONDS,
    minimum: int = MIN_BILLABLE_SECONDS,
) -> int:
    """Round up to the quantum, then apply the minimum. Zero for no duration."""
    try:
        dur = float(duration_seconds or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(dur) or dur <= 0:
        return 0
    q = max(1, int(quantum))
    rounded = _ceil_div(math.ceil(dur), q) * q
    return max(int(minimum), rounded)


def estimate_transcription_tokens(duration_seconds: Any, model_id: str | None) -> int:
    """``ceil(billable_seconds * tokens_per_minute / 60)``; 0 for unknown models."""
    tpm = tokens_per_minute(model_id)
    if not tpm:
        return 0
    return _ceil_div(billable_seconds(duration_seconds) * tpm, 60)


def estimate_run_tokens(items: Iterable[dict], model_id: str | None) -> int:
    """Sum over ``[{"durationSeconds", "modelId"?}]``; per-item model wins."""
    return sum(
        estimate_transcription_tokens(it.get("durationSeconds"), it.get("modelId") or model_id)
        for it in items or []
    )


def tokens_to_usd(tokens: Any) -> float:
    try:
        t = float(tokens or 0)
    except (TypeError, ValueError):
        return 0.0
    return t / TOKENS_PER_USD if t > 0 else 0.0


def usd_to_tokens(usd: Any) -> int:
    try:
        u = float(usd or 0)
    except (TypeError, ValueError):
        return 0
    return round(u * TOKENS_PER_USD) if u > 0 else 0


# ----------------------------------------------------------------------
# LLM-backed steps (translation, summarization)
# ----------------------------------------------------------------------


@dataclass
class LlmEstimate:
    input_tokens: int = 0
    output_tokens: int = 0
    usd_cents: int = 0
    media_tokens: int = 0
    from_duration: bool = False

    @property
    def billable_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def input_to_text(source: Any) -> str:
    """Plain text from a string, a segment list, or ``{segments|srt|text}``."""
    if not source:
        return ""
    if isinstance(source, str):
        return normalize_whitespace(source)
    if isinstance(source, list):
        return segments_to_plain_text(source)
    if isinstance(source, dict):
        if isinstance(source.get("segments"), list):
            return segments_to_plain_text(source["segments"])
        if isinstance(source.get("srt"), str):
            return segments_to_plain_text(srt_to_segments(source["srt"]))
        if isinstance(source.get("text"), str):
            return normalize_whitespace(source["text"])
    return ""


def approx_tokens_from_text(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    return _ceil_div(len(text or ""), max(1, chars_per_token))


def approx_tokens_from_duration(duration_seconds: Any) -> int:
    """Speech-rate heuristic used when no transcript text exists yet."""
    try:
        sec = float(duration_seconds or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(sec) or sec <= 0:
        return 0
    chars = math.floor(sec * WORDS_PER_MINUTE / 60 * CHARS_PER_WORD + 0.5)
    return approx_tokens_from_text("x" * min(chars, 1_000_000))


def usd_cents_from_llm_tokens(tokens: int) -> int:
    return _ceil_div(int(tokens) * USD_CENTS_PER_1M_LLM_TOKENS, 1_000_000)


def media_tokens_from_usd_cents(cents: int) -> int:
    return _ceil_div(int(cents) * TOKENS_PER_USD, 100)


def _base_tokens(source: Any, duration_seconds: Any) -> tuple[int, bool]:
    text = input_to_text(source)
    if text:
        return approx_tokens_from_text(text), False
    return approx_tokens_from_duration(duration_seconds), True


def _priced(input_tokens: int, output_tokens: int, from_duration: bool) -> LlmEstimate:
    cents = usd_cents_from_llm_tokens(input_tokens + output_tokens)
    return LlmEstimate(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        usd_cents=cents,
        media_tokens=media_tokens_from_usd_cents(cents),
        from_duration=from_duration,
    )


def estimate_translation(
    source: Any,
    target_langs: Iterable[str],
    duration_seconds: Any = None,
) -> LlmEstimate:
    """One LLM request per target: input is billed every time, output scales with input."""
    targets = {normalize_lang_key(t) for t in target_langs or []} - {""}
    base, from_duration = _base_tokens(source, duration_seconds)
    if not targets or base + TRANSLATION_PROMPT_OVERHEAD <= 0:
        return LlmEstimate(from_duration=from_duration)

    per_input = base + TRANSLATION_PROMPT_OVERHEAD + TRANSLATION_PER_TARGET_OVERHEAD
    per_output = _ratio_ceil(base, OUTPUT_RATIO)
    return _priced(per_input * len(targets), per_output * len(targets), from_duration)


def estimate_summarization(source: Any, duration_seconds: Any = None) -> LlmEstimate:
    base, from_duration = _base_tokens(source, duration_seconds)
    return _priced(
        base + SUMMARY_PROMPT_OVERHEAD,
        _ratio_ceil(base, OUTPUT_RATIO),
        from_duration,
    )
