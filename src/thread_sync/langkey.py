"""Language key normalization for per-language maps (byLang, translations)."""

from __future__ import annotations

import re
from typing import Any

_LANG_RE = re.compile(r"^[a-z]{2,3}(?:-[a-z0-9]{2,8})*$")


def normalize_lang_key(value: Any) -> str:
    """Canonical comparison form: trimmed, ``_`` -> ``-``, lowercase."""
    s = str(value if value is not None else "").strip()
    if not s:
        return ""
    return s.replace("_", "-").lower()


def safe_lang_key(value: Any, allow_auto: bool = False) -> str | None:
    """Return a canonical language key, or None if ``value`` is not one.

    Forgiving BCP47-ish check: a 2-3 letter base plus optional 2-8 char
    alphanumeric subtags (``en``, ``pt-br``, ``zh-hans``, ``es-419``).
    ``auto`` is rejected unless ``allow_auto`` is set.
    """
    norm = normalize_lang_key(value)
    if not norm:
        return None
    if norm == "auto":
        return "auto" if allow_auto else None
    if not _LANG_RE.match(norm):
        return None
    return norm


def get_lang_key_ci(mapping: Any, lang: Any) -> str | None:
    """Find the key actually stored in ``mapping`` that matches ``lang``."""
    if not isinstance(mapping, dict):
        return None
    want = normalize_lang_key(lang)
    if not want:
        return None
    if lang in mapping:
        return lang
    for key in mapping:
        if normalize_lang_key(key) == want:
            return key
    return None


def get_by_lang_ci(mapping: Any, lang: Any) -> Any:
    key = get_lang_key_ci(mapping, lang)
    return mapping[key] if key is not None else None


def delete_lang_key(mapping: Any, lang: Any) -> dict:
    """Remove the entry for ``lang``.

    Returns the same object when nothing matched, a new dict otherwise.
    """
    if not isinstance(mapping, dict):
        return {}
    key = get_lang_key_ci(mapping, lang)
    if key is None:
        return mapping
    out = dict(mapping)
    del out[key]
    return out
