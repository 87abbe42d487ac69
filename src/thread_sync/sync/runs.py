"""Run and retry requests issued over the bound session.

Every request is validated locally first (nothing reaches the wire on a bad
call), then the estimated cost is held in the ledger, then the message is
sent. A failed send releases exactly the holds that request made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from thread_sync import config
from thread_sync.billing.estimates import (
    estimate_summarization,
    estimate_transcription_tokens,
    estimate_translation,
)
from thread_sync.billing.ledger import chat_key, item_key, summarize_key, translate_key
from thread_sync.exceptions import (
    ApplicationError,
    NoReadyMediaError,
    NoThreadSelectedError,
    NotConnectedError,
    NothingToRetryError,
    NothingToRunError,
    SendFailedError,
)
from thread_sync.langkey import delete_lang_key, safe_lang_key
from thread_sync.srt import segments_to_plain_text, segments_to_srt
from thread_sync.store.models import (
    STEP_SUMMARIZE,
    STEP_TRANSCRIBE,
    STEP_TRANSLATE,
    ensure_chat_items,
    ensure_draft_shape,
    find_chat_item,
    is_ready_draft_file,
    now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_ASR_MODEL = "deepgram_nova3"
DEFAULT_TR_PROVIDER = "google"
DEFAULT_SUM_MODEL = "gpt-4o-mini"


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _target_langs(raw: dict) -> list[str]:
    values: list[Any] = []
    if isinstance(raw.get("targetLangs"), (list, tuple)):
        values.extend(raw["targetLangs"])
    if raw.get("trLang"):
        values.append(raw["trLang"])

    out: list[str] = []
    for v in values:
        key = safe_lang_key(v)
        if key and key not in out:
            out.append(key)
    return out


@dataclass
class RunOptions:
    do_transcribe: bool = True
    asr_lang: str = "auto"
    asr_model: str = DEFAULT_ASR_MODEL
    asr_provider: str | None = None
    do_translate: bool = False
    tr_provider: str = DEFAULT_TR_PROVIDER
    target_langs: list[str] = field(default_factory=list)
    do_summarize: bool = False
    sum_model: str = DEFAULT_SUM_MODEL
    clear: bool = False

    @property
    def has_any(self) -> bool:
        return self.do_transcribe or (self.do_translate and bool(self.target_langs)) or self.do_summarize

    def to_payload(self) -> dict:
        payload = {
            "doTranscribe": self.do_transcribe,
            "asrLang": self.asr_lang,
            "asrModel": self.asr_model,
            "doTranslate": self.do_translate,
            "trProvider": self.tr_provider,
            "trLang": self.target_langs[0] if self.target_langs else None,
            "targetLangs": list(self.target_langs),
            "doSummarize": self.do_summarize,
            "sumModel": self.sum_model,
        }
        if self.asr_provider:
            payload["asrProvider"] = self.asr_provider
        if self.clear:
            payload["clear"] = True
        return payload


def build_run_options(raw: RunOptions | dict | None = None) -> RunOptions:
    """Normalize loose caller input (camelCase keys, string booleans) into ``RunOptions``."""
    if isinstance(raw, RunOptions):
        return raw
    r = raw if isinstance(raw, dict) else {}
    return RunOptions(
        do_transcribe=_flag(r.get("doTranscribe"), True),
        asr_lang=safe_lang_key(r.get("asrLang"), allow_auto=True) or "auto",
        asr_model=str(r.get("asrModel") or DEFAULT_ASR_MODEL),
        asr_provider=str(r["asrProvider"]) if r.get("asrProvider") else None,
        do_translate=_flag(r.get("doTranslate"), False),
        tr_provider=str(r.get("trProvider") or DEFAULT_TR_PROVIDER),
        target_langs=_target_langs(r),
        do_summarize=_flag(r.get("doSummarize"), False),
        sum_model=str(r.get("sumModel") or DEFAULT_SUM_MODEL),
        clear=_flag(r.get("clear"), False),
    )


def _ids(values: Iterable[Any] | str | None) -> list[str]:
    if isinstance(values, str):
        values = [values]
    out: list[str] = []
    for v in values or []:
        s = str(v or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def _duration(entry: dict | None) -> float | None:
    e = entry or {}
    for holder in (e.get("local"), e.get("urlMeta"), e.get("media"), e):
        if isinstance(holder, dict) and holder.get("durationSeconds"):
            return holder["durationSeconds"]
    return None


def _transcript_source(item: dict | None) -> Any:
    results = (item or {}).get("results") or {}
    if results.get("transcriptSegments"):
        return results["transcriptSegments"]
    return results.get("transcriptText") or results.get("transcriptSrt") or ""


class RunOrchestrator:
    """Issues START_RUN / RETRY_* / SAVE_* for the engine's bound thread."""

    def __init__(self, engine: Any):
        self.engine = engine

    @property
    def ledger(self):
        return self.engine.ledger

    @property
    def store(self):
        return self.engine.store

    def _require_session(self) -> str:
        tid = self.engine.bound_thread_id or self.store.active_id
        if not tid or tid == config.DEFAULT_THREAD_ID:
            raise NoThreadSelectedError("No thread selected")
        if not self.engine.is_connected() or self.engine.bound_thread_id != tid:
            raise NotConnectedError("Not connected to the realtime server yet")
        return tid

    def _send_or_release(self, msg_type: str, payload: dict, holds: list[str]) -> None:
        if self.engine.client.send(msg_type, payload):
            return
        for key in holds:
            self.ledger.release(key)
        logger.warning("Failed to send %s; released %d holds", msg_type, len(holds))
        raise SendFailedError(f"Failed to send {msg_type}")

    def _hold(self, holds: list[str], key: str, amount: int) -> None:
        if self.ledger.reserve(key, amount) > 0:
            holds.append(key)

    def _patch_items(self, tid: str, ids: list[str], fn: Callable[[dict], dict]) -> None:
        def apply(thread: dict) -> dict | None:
            items = ensure_chat_items(thread.get("chatItems"))
            hit = False
            for i, it in enumerate(items):
                if str(it.get("chatItemId") or "") in ids:
                    items[i] = {**fn(it), "updatedAt": now_iso()}
                    hit = True
            return {**thread, "chatItems": items, "updatedAt": now_iso()} if hit else None

        self.store.update_thread(tid, apply)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_run(self, item_ids: Iterable[str] | str | None = None, options: Any = None) -> dict[str, int]:
        """Start a run over ready draft items; returns the holds placed (key -> tokens).

        Without ``item_ids`` every ready draft file is included.
        """
        tid = self._require_session()
        draft = ensure_draft_shape((self.store.get(tid) or {}).get("draft"))
        ready = {str(f["itemId"]): f for f in draft["files"] if is_ready_draft_file(f) and f.get("itemId")}
        wanted = _ids(item_ids) or list(ready)
        ids = [i for i in wanted if i in ready]
        if not ids:
            raise NoReadyMediaError("No ready media in the draft")
        opts = build_run_options(options)
        if not opts.has_any:
            raise NothingToRunError("Pick at least one of transcribe, translate or summarize")

        holds: list[str] = []
        for iid in ids:
            base = item_key(tid, iid)
            dur = _duration(ready[iid])
            if opts.do_transcribe:
                self._hold(holds, base, estimate_transcription_tokens(dur, opts.asr_model))
            if opts.do_translate:
                for lang in opts.target_langs:
                    est = estimate_translation(None, [lang], duration_seconds=dur)
                    self._hold(holds, translate_key(base, lang), est.media_tokens)
            if opts.do_summarize:
                self._hold(holds, summarize_key(base), estimate_summarization(None, dur).media_tokens)

        self._send_or_release("START_RUN", {"itemIds": ids, "options": opts.to_payload()}, holds)
        logger.info("START_RUN on thread %s for %d items", tid, len(ids))
        return {k: self.ledger.get(k) for k in holds}

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    def retry_transcribe(
        self,
        chat_item_ids: Iterable[str] | str | None,
        options: Any = None,
        clear: bool = False,
    ) -> dict[str, int]:
        tid = self._require_session()
        ids = _ids(chat_item_ids)
        if not ids:
            raise NothingToRetryError("No chat items given to retry")
        opts = build_run_options(options)
        clear = clear or opts.clear

        thread = self.store.get(tid)
        holds: list[str] = []
        for cid in ids:
            _, item = find_chat_item(thread, cid)
            self._hold(holds, chat_key(tid, cid), estimate_transcription_tokens(_duration(item), opts.asr_model))

        payload = {"chatItemIds": ids, "options": {**opts.to_payload(), "clear": clear}}
        self._send_or_release("RETRY_TRANSCRIBE", payload, holds)

        # items are only cleared once the request is on the wire
        if clear:
            for cid in ids:
                self.store.live.reset_step(tid, cid, STEP_TRANSCRIBE)
            self._patch_items(tid, ids, _cleared_transcript)
            self.store.touch_live()
        return {k: self.ledger.get(k) for k in holds}

    def retry_translate(
        self,
        chat_item_ids: Iterable[str] | str | None,
        target_langs: Iterable[str] | str | None = None,
        options: Any = None,
        clear: bool = False,
    ) -> dict[str, int]:
        tid = self._require_session()
        ids = _ids(chat_item_ids)
        raw = dict(options) if isinstance(options, dict) else {}
        if target_langs is not None:
            raw["targetLangs"] = [target_langs] if isinstance(target_langs, str) else list(target_langs)
        opts = build_run_options({**raw, "doTranslate": True})
        if not ids or not opts.target_langs:
            raise NothingToRetryError("No chat items or target languages given to retry")
        clear = clear or opts.clear

        thread = self.store.get(tid)
        holds: list[str] = []
        for cid in ids:
            _, item = find_chat_item(thread, cid)
            base = chat_key(tid, cid)
            for lang in opts.target_langs:
                est = estimate_translation(_transcript_source(item), [lang], duration_seconds=_duration(item))
                self._hold(holds, translate_key(base, lang), est.media_tokens)

        payload = {
            "chatItemIds": ids,
            "targetLangs": list(opts.target_langs),
            "options": {**opts.to_payload(), "clear": clear},
        }
        self._send_or_release("RETRY_TRANSLATE", payload, holds)

        if clear:
            for cid in ids:
                for lang in opts.target_langs:
                    self.store.live.reset_step(tid, cid, STEP_TRANSLATE, lang)
            self._patch_items(tid, ids, lambda it: _cleared_translations(it, opts.target_langs))
            self.store.touch_live()
        return {k: self.ledger.get(k) for k in holds}

    def retry_summarize(
        self,
        chat_item_ids: Iterable[str] | str | None,
        options: Any = None,
        clear: bool = False,
    ) -> dict[str, int]:
        tid = self._require_session()
        ids = _ids(chat_item_ids)
        if not ids:
            raise NothingToRetryError("No chat items given to retry")
        opts = build_run_options(options)
        clear = clear or opts.clear

        thread = self.store.get(tid)
        holds: list[str] = []
        for cid in ids:
            _, item = find_chat_item(thread, cid)
            est = estimate_summarization(_transcript_source(item), duration_seconds=_duration(item))
            self._hold(holds, summarize_key(chat_key(tid, cid)), est.media_tokens)

        payload = {"chatItemIds": ids, "options": {**opts.to_payload(), "clear": clear}}
        self._send_or_release("RETRY_SUMMARIZE", payload, holds)

        if clear:
            for cid in ids:
                self.store.live.reset_step(tid, cid, STEP_SUMMARIZE)
            self._patch_items(tid, ids, _cleared_summary)
            self.store.touch_live()
        return {k: self.ledger.get(k) for k in holds}

    # ------------------------------------------------------------------
    # Transcript edits
    # ------------------------------------------------------------------

    def save_segments(self, chat_item_id: str, segments: list[dict]) -> None:
        """Persist an edited transcript; SRT and plain text are derived from the segments."""
        tid = self._require_session()
        cid = str(chat_item_id or "")
        if not cid:
            raise NothingToRetryError("No chat item given")
        segs = list(segments or [])
        srt, text = segments_to_srt(segs), segments_to_plain_text(segs)

        self._send_or_release(
            "SAVE_SEGMENTS",
            {"chatItemId": cid, "transcriptSrt": srt, "transcriptText": text, "segments": segs},
            [],
        )
        self._patch_items(tid, [cid], lambda it: {
            **it,
            "results": {
                **(it.get("results") or {}),
                "transcriptSegments": segs,
                "transcriptSrt": srt,
                "transcriptText": text,
            },
        })

    def save_translation_segments(self, chat_item_id: str, lang: str, segments: list[dict]) -> None:
        tid = self._require_session()
        cid = str(chat_item_id or "")
        key = safe_lang_key(lang)
        if not cid or not key:
            raise ApplicationError(f"Bad chat item or language: {chat_item_id!r}/{lang!r}", code="BAD_ARGS")
        segs = list(segments or [])
        srt, text = segments_to_srt(segs), segments_to_plain_text(segs)

        self._send_or_release(
            "SAVE_TRANSLATION_SEGMENTS",
            {"chatItemId": cid, "lang": key, "srt": srt, "text": text, "segments": segs},
            [],
        )

        def apply(it: dict) -> dict:
            results = it.get("results") or {}
            translations = delete_lang_key(results.get("translations") or {}, key)
            translations = {**translations, key: {"segments": segs, "srt": srt, "text": text}}
            return {**it, "results": {**results, "translations": translations}}

        self._patch_items(tid, [cid], apply)


def _queued() -> dict:
    ts = now_iso()
    return {"state": "queued", "stage": "queued", "queuedAt": ts, "updatedAt": ts, "error": None}


def _cleared_transcript(item: dict) -> dict:
    status = item.get("status") or {}
    results = item.get("results") or {}
    return {
        **item,
        "status": {**status, STEP_TRANSCRIBE: {**(status.get(STEP_TRANSCRIBE) or {}), **_queued()}},
        "results": {
            **results,
            "transcriptText": "",
            "transcriptSrt": "",
            "transcriptSegments": [],
        },
    }


def _cleared_translations(item: dict, langs: list[str]) -> dict:
    status = item.get("status") or {}
    results = item.get("results") or {}
    node = status.get(STEP_TRANSLATE) or {}
    by_lang = dict(node.get("byLang") or {})
    translations = dict(results.get("translations") or {})
    for lang in langs:
        by_lang = delete_lang_key(by_lang, lang)
        by_lang[lang] = _queued()
        translations = delete_lang_key(translations, lang)
    return {
        **item,
        "status": {**status, STEP_TRANSLATE: {**node, "byLang": by_lang}},
        "results": {**results, "translations": translations},
    }


def _cleared_summary(item: dict) -> dict:
    status = item.get("status") or {}
    results = item.get("results") or {}
    return {
        **item,
        "status": {**status, STEP_SUMMARIZE: {**(status.get(STEP_SUMMARIZE) or {}), **_queued()}},
        "results": {**results, "summary": ""},
    }
