"""Tests for owner scope strings."""

from thread_sync.scope import make_scope, scope_candidates


def test_make_scope():
    assert make_scope("u1", False) == "user:u1"
    assert make_scope("u1", True) == "anon:u1"
    assert make_scope("", False) is None


def test_scope_candidates_primary_first_without_duplicates():
    assert scope_candidates("u1", False) == ["user:u1", "u1", "guest", "anon:u1"]
    assert scope_candidates("u1", True) == ["anon:u1", "u1", "guest", "user:u1"]
    assert scope_candidates(None, True) == ["guest"]
