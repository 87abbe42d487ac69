"""Tests for run and retry orchestration."""

import asyncio

import pytest

from thread_sync.billing.ledger import ReservationLedger, TokenSnapshot
from thread_sync.exceptions import (
    ApplicationError,
    NoReadyMediaError,
    NoThreadSelectedError,
    NotConnectedError,
    NothingToRetryError,
    NothingToRunError,
    SendFailedError,
)
from thread_sync.srt import segments_to_srt
from thread_sync.store.models import make_new_thread
from thread_sync.store.store import ThreadStore
from thread_sync.sync.engine import SyncEngine
from thread_sync.sync.runs import RunOptions, RunOrchestrator, build_run_options


def _setup(fake_session_cls, files=None, items=None, bind=True):
    store = ThreadStore()
    thread = make_new_thread("Runs", "t1")
    thread["draft"]["files"] = list(files or [])
    thread["chatItems"] = list(items or [])
    store.put_thread(thread)
    engine = SyncEngine(
        store,
        ledger=ReservationLedger(TokenSnapshot(media_tokens=10_000)),
        session_factory=lambda **kw: fake_session_cls(**kw),
    )
    if bind:
        asyncio.run(engine.set_active("t1"))
    else:
        store.commit(active_id="t1")
    return engine, RunOrchestrator(engine)


READY = {"itemId": "A", "stage": "uploaded", "local": {"durationSeconds": 61.2}}
BUSY = {"itemId": "B", "stage": "uploading", "local": {"durationSeconds": 30}}


def test_build_run_options_normalizes_loose_input():
    opts = build_run_options({
        "doTranscribe": "false",
        "doTranslate": 1,
        "trLang": "pt_BR",
        "targetLangs": ["EN", "en", "not a lang", "pt-br"],
        "asrLang": "AUTO",
    })
    assert opts.do_transcribe is False
    assert opts.do_translate is True
    assert opts.target_langs == ["en", "pt-br"]
    assert opts.asr_lang == "auto"
    assert opts.asr_model == "deepgram_nova3"
    assert opts.tr_provider == "google"
    assert opts.sum_model == "gpt-4o-mini"


def test_build_run_options_defaults():
    opts = build_run_options(None)
    assert opts == RunOptions()
    assert opts.has_any
    assert build_run_options(opts) is opts
    assert not build_run_options({"doTranscribe": False, "doTranslate": True}).has_any


def test_run_options_payload():
    payload = RunOptions(do_translate=True, target_langs=["fr", "de"], clear=True).to_payload()
    assert payload["trLang"] == "fr"
    assert payload["targetLangs"] == ["fr", "de"]
    assert payload["clear"] is True
    assert "asrProvider" not in payload


def test_start_run_reserves_and_sends(fake_session_cls):
    engine, runs = _setup(fake_session_cls, files=[READY, BUSY])

    holds = runs.start_run(options={
        "doTranscribe": True, "doTranslate": True, "trLang": "FR", "doSummarize": True,
    })

    assert holds == {"t1:item:A": 25, "t1:item:A:tr:fr": 6, "t1:item:A:sum": 6}
    assert engine.ledger.total == 37
    msg = engine.client.sent[-1]
    assert msg["type"] == "START_RUN"
    assert msg["payload"]["itemIds"] == ["A"]
    assert msg["payload"]["options"]["targetLangs"] == ["fr"]


def test_start_run_send_failure_releases_holds(fake_session_cls):
    engine, runs = _setup(fake_session_cls, files=[READY])
    engine.ledger.reserve("t1:item:other", 3)
    engine.client.fail_sends = True

    with pytest.raises(SendFailedError, match="START_RUN"):
        runs.start_run(["A"])
    assert engine.ledger.as_dict() == {"t1:item:other": 3}


def test_start_run_validation_never_reaches_the_wire(fake_session_cls):
    engine, runs = _setup(fake_session_cls, files=[BUSY])
    with pytest.raises(NoReadyMediaError):
        runs.start_run()
    with pytest.raises(NoReadyMediaError):
        runs.start_run(["missing"])

    engine, runs = _setup(fake_session_cls, files=[READY])
    with pytest.raises(NothingToRunError):
        runs.start_run(options={"doTranscribe": False})
    assert engine.client.sent == []
    assert engine.ledger.total == 0


def test_start_run_requires_thread_and_connection(fake_session_cls):
    engine, runs = _setup(fake_session_cls, files=[READY], bind=False)
    with pytest.raises(NotConnectedError):
        runs.start_run()

    engine.store.commit(active_id="default")
    with pytest.raises(NoThreadSelectedError):
        runs.start_run()


def test_retry_transcribe_with_clear(fake_session_cls):
    item = {
        "chatItemId": "Y",
        "media": {"durationSeconds": 60},
        "status": {"transcribe": {"state": "failed", "error": "boom"}},
        "results": {"transcriptText": "old", "transcriptSegments": [{"text": "old"}]},
    }
    engine, runs = _setup(fake_session_cls, items=[item])
    engine.store.live.append_stream("t1", "Y", "transcribe", "old chunk")

    holds = runs.retry_transcribe("Y", clear=True)

    assert holds == {"t1:chat:Y": 24}
    updated = engine.store.get("t1")["chatItems"][0]
    assert updated["status"]["transcribe"]["state"] == "queued"
    assert updated["status"]["transcribe"]["error"] is None
    assert updated["results"]["transcriptText"] == ""
    assert updated["results"]["transcriptSegments"] == []
    assert engine.store.live.get_stream("t1", "Y", "transcribe") == []

    msg = engine.client.sent[-1]
    assert msg["type"] == "RETRY_TRANSCRIBE"
    assert msg["payload"]["chatItemIds"] == ["Y"]
    assert msg["payload"]["options"]["clear"] is True


def test_retry_translate_clears_only_requested_language(fake_session_cls):
    item = {
        "chatItemId": "Y",
        "status": {"translate": {"byLang": {"fr": {"state": "failed"}, "de": {"state": "done"}}}},
        "results": {"transcriptText": "a" * 400, "translations": {"FR": {"text": "x"}, "de": {"text": "y"}}},
    }
    engine, runs = _setup(fake_session_cls, items=[item])

    holds = runs.retry_translate(["Y"], "fr", clear=True)

    assert holds == {"t1:chat:Y:tr:fr": 4}
    updated = engine.store.get("t1")["chatItems"][0]
    assert updated["results"]["translations"] == {"de": {"text": "y"}}
    assert updated["status"]["translate"]["byLang"]["fr"]["state"] == "queued"
    assert updated["status"]["translate"]["byLang"]["de"]["state"] == "done"

    msg = engine.client.sent[-1]
    assert msg["type"] == "RETRY_TRANSLATE"
    assert msg["payload"]["targetLangs"] == ["fr"]


def test_retry_summarize(fake_session_cls):
    item = {"chatItemId": "Y", "results": {"transcriptText": "", "summary": "old"}}
    engine, runs = _setup(fake_session_cls, items=[item])

    holds = runs.retry_summarize(["Y"])

    assert holds == {"t1:chat:Y:sum": 2}
    assert engine.store.get("t1")["chatItems"][0]["results"]["summary"] == "old"
    assert engine.client.sent[-1]["type"] == "RETRY_SUMMARIZE"


def test_retry_requires_ids_and_langs(fake_session_cls):
    engine, runs = _setup(fake_session_cls)
    with pytest.raises(NothingToRetryError):
        runs.retry_transcribe([])
    with pytest.raises(NothingToRetryError):
        runs.retry_translate(["Y"], [])
    with pytest.raises(NothingToRetryError):
        runs.retry_summarize(None)
    assert engine.client.sent == []


def test_retry_send_failure_releases_holds(fake_session_cls):
    engine, runs = _setup(fake_session_cls, items=[{"chatItemId": "Y", "media": {"durationSeconds": 60}}])
    engine.client.fail_sends = True
    with pytest.raises(SendFailedError):
        runs.retry_transcribe(["Y"])
    assert engine.ledger.total == 0


def test_failed_retry_leaves_item_untouched(fake_session_cls):
    item = {
        "chatItemId": "C",
        "media": {"durationSeconds": 60},
        "status": {
            "transcribe": {"state": "done"},
            "translate": {"byLang": {"fr": {"state": "done"}}},
            "summarize": {"state": "done"},
        },
        "results": {"transcriptText": "hello world", "translations": {"fr": {"text": "bonjour"}}, "summary": "hi"},
    }
    engine, runs = _setup(fake_session_cls, items=[item])
    engine.store.live.append_stream("t1", "C", "transcribe", "hello")
    engine.client.fail_sends = True

    with pytest.raises(SendFailedError):
        runs.retry_transcribe(["C"], clear=True)
    with pytest.raises(SendFailedError):
        runs.retry_translate(["C"], "fr", clear=True)
    with pytest.raises(SendFailedError):
        runs.retry_summarize(["C"], clear=True)

    after = engine.store.get("t1")["chatItems"][0]
    assert after["status"] == item["status"]
    assert after["results"] == item["results"]
    assert engine.store.live.get_stream("t1", "C", "transcribe") == ["hello"]
    assert engine.ledger.total == 0


def test_save_segments_derives_srt_and_text(fake_session_cls):
    engine, runs = _setup(fake_session_cls, items=[{"chatItemId": "Y", "results": {}}])
    segments = [
        {"start": 0.0, "end": 1.5, "text": "Hello"},
        {"start": 1.5, "end": 3.0, "text": "world"},
    ]

    runs.save_segments("Y", segments)

    msg = engine.client.sent[-1]
    assert msg["type"] == "SAVE_SEGMENTS"
    assert msg["payload"]["transcriptSrt"] == segments_to_srt(segments)
    assert msg["payload"]["transcriptText"] == "Hello world"
    results = engine.store.get("t1")["chatItems"][0]["results"]
    assert results["transcriptText"] == "Hello world"


def test_save_translation_segments(fake_session_cls):
    engine, runs = _setup(fake_session_cls, items=[{
        "chatItemId": "Y", "results": {"translations": {"FR": {"text": "old"}}},
    }])

    runs.save_translation_segments("Y", "fr", [{"start": 0, "end": 1, "text": "Salut"}])

    msg = engine.client.sent[-1]
    assert msg["type"] == "SAVE_TRANSLATION_SEGMENTS"
    assert msg["payload"]["lang"] == "fr"
    assert msg["payload"]["text"] == "Salut"
    translations = engine.store.get("t1")["chatItems"][0]["results"]["translations"]
    assert translations == {"fr": {"segments": [{"start": 0, "end": 1, "text": "Salut"}],
                                   "srt": "1\n00:00:00,000 --> 00:00:01,000\nSalut\n",
                                   "text": "Salut"}}

    with pytest.raises(ApplicationError):
        runs.save_translation_segments("Y", "not a lang", [])
