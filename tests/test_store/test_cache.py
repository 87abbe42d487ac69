"""Tests for the local SQLite cache."""

import sqlite3

import pytest

from thread_sync.exceptions import CacheError
from thread_sync.store.cache import LocalCache


@pytest.fixture
def cache(tmp_path):
    return LocalCache(tmp_path / "cache")


def test_state_round_trip_is_scoped(cache):
    assert cache.load_state("user:u1") is None
    cache.save_state("user:u1", {"t1": {"id": "t1"}}, "t1", {"indexAt": "2026-01-01T00:00:00Z"})
    cache.save_state("user:u1", {"t2": {"id": "t2"}}, "t2", {"indexAt": None})

    data = cache.load_state("user:u1")
    assert data == {"threadsById": {"t2": {"id": "t2"}}, "activeId": "t2", "sync": {"indexAt": None}}
    assert cache.load_state("anon:u1") is None


def test_corrupt_state_is_discarded(cache):
    conn = sqlite3.connect(cache._db_path)
    with conn:
        conn.execute(
            "INSERT INTO thread_state (scope, data, saved_at) VALUES (?, ?, ?)",
            ("user:u1", "{not json", "now"),
        )
    conn.close()
    assert cache.load_state("user:u1") is None


def test_media_index(cache):
    cache.put_media_index("user:u1", "t1", "c1", "cf1", filename="a.mp3", mime="audio/mpeg")
    assert cache.get_media_index("user:u1", "t1", "c1") == {
        "clientFileId": "cf1",
        "filename": "a.mp3",
        "mime": "audio/mpeg",
    }
    assert cache.get_media_index("user:u1", "t1", "c2") is None


def test_local_media_copy_and_delete(cache, tmp_path):
    src = tmp_path / "clip.mp3"
    src.write_bytes(b"audio")

    dest = cache.put_local_media("user:u1", "t1", "cf1", src, {"name": "clip.mp3"})
    assert dest.read_bytes() == b"audio"
    assert dest != src

    hit = cache.get_local_media("user:u1", "t1", "cf1")
    assert hit["path"] == dest
    assert hit["meta"] == {"name": "clip.mp3"}

    assert cache.delete_local_media("user:u1", "t1", "cf1") is True
    assert not dest.exists()
    assert cache.get_local_media("user:u1", "t1", "cf1") is None
    assert cache.delete_local_media("user:u1", "t1", "cf1") is False


def test_missing_source_raises_cache_error(cache, tmp_path):
    with pytest.raises(CacheError, match="Failed to cache media"):
        cache.put_local_media("user:u1", "t1", "cf1", tmp_path / "nope.mp3")
