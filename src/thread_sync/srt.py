"""SRT subtitle codec and transcript segment helpers.

A segment is a dict ``{"start": float, "end": float, "text": str}`` with times
in seconds. SRT timecodes have millisecond resolution.
"""

from __future__ import annotations

import re
from typing import Any, Iterable

_TIMECODE_RE = re.compile(r"^(\d+):(\d+):(\d+),(\d+)$")
_BLOCK_SPLIT_RE = re.compile(r"\n\s*\n")
_WS_RE = re.compile(r"\s+")


def normalize_whitespace(text: Any) -> str:
    return _WS_RE.sub(" ", str(text or "")).strip()


def seconds_to_timecode(seconds: Any) -> str:
    """``83.5`` -> ``"00:01:23,500"``."""
    try:
        total_ms = round(max(0.0, float(seconds or 0)) * 1000)
    except (TypeError, ValueError):
        total_ms = 0
    hh, rem = divmod(total_ms, 3_600_000)
    mm, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d},{ms:03d}"


def parse_timecode(tc: Any) -> float | None:
    """``"00:01:23,500"`` -> ``83.5``; None when malformed."""
    m = _TIMECODE_RE.match(str(tc or "").strip())
    if not m:
        return None
    hh, mm, ss, ms = (int(x) for x in m.groups())
    return ((hh * 3600 + mm * 60 + ss) * 1000 + ms) / 1000


def _sort_key(seg: dict) -> tuple[float, float]:
    return (float(seg.get("start") or 0), float(seg.get("end") or 0))


def segments_to_srt(segments: Iterable[dict] | None) -> str:
    """Serialize segments as numbered SRT blocks (trailing newline)."""
    blocks = []
    for i, seg in enumerate(segments or [], start=1):
        start = seconds_to_timecode(seg.get("start"))
        end = seconds_to_timecode(seg.get("end"))
        text = str(seg.get("text") or "").strip()
        blocks.append(f"{i}\n{start} --> {end}\n{text}")
    body = "\n\n".join(blocks).strip()
    return body + "\n" if body else ""


def srt_to_segments(srt: Any) -> list[dict]:
    """Parse SRT text into segments sorted by start, then end.

    Malformed blocks (fewer than three lines, bad timecodes) are skipped.
    """
    raw = str(srt or "").replace("\r\n", "\n").strip()
    if not raw:
        return []

    out = []
    for block in _BLOCK_SPLIT_RE.split(raw):
        lines = [line.strip() for line in block.split("\n")]
        if len(lines) < 3:
            continue
        parts = lines[1].split(" --> ")
        if len(parts) != 2:
            continue
        start = parse_timecode(parts[0])
        end = parse_timecode(parts[1])
        if start is None or end is None:
            continue
        out.append({
            "start": start,
            "end": max(start, end),
            "text": normalize_whitespace("\n".join(lines[2:])),
        })

    out.sort(key=_sort_key)
    return out


def segments_to_plain_text(segments: Iterable[dict] | None) -> str:
    texts = (normalize_whitespace(s.get("text")) for s in segments or [] if s)
    return " ".join(t for t in texts if t).strip()


def segment_key(seg: dict) -> str:
    start = float(seg.get("start") or 0)
    end = float(seg.get("end") or 0)
    return f"{start:.3f}|{end:.3f}|{normalize_whitespace(seg.get('text'))}"


def merge_segments(a: Iterable[dict] | None, b: Iterable[dict] | None) -> list[dict]:
    """Union of two segment lists, deduplicated by start/end/text, sorted."""
    seen = set()
    out = []
    for seg in [*(a or []), *(b or [])]:
        if not seg:
            continue
        key = segment_key(seg)
        if key in seen:
            continue
        seen.add(key)
        out.append(seg)
    out.sort(key=_sort_key)
    return out
