"""Identifier extraction from archive records.

Archive snapshots encode ids inconsistently: sometimes as ``*IdStr``
strings, sometimes as bare JSON numbers.  Everything here normalizes to a
plain decimal string.
"""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit

from .jsonvalue import JSONValue, walk

logger = logging.getLogger("vineharvest.ids")

_POST_ID_KEYS = ("postid", "postidstr")
_NUMERIC_RE = re.compile(r"^[0-9]+$")


def format_id(value: Any) -> str | None:
    """Normalize a string or numeric id to a decimal string, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return format(value, ".0f")
    return None


def _pick(record: Any, str_key: str, num_key: str) -> str | None:
    if not isinstance(record, dict):
        return None
    s = record.get(str_key)
    if isinstance(s, str) and s.strip():
        return s.strip()
    n = record.get(num_key)
    if isinstance(n, (int, float)) and not isinstance(n, bool):
        return format_id(n)
    return None


def user_id(record: Any) -> str | None:
    return _pick(record, "userIdStr", "userId")


def post_id(record: Any, fallback: str) -> str:
    """Best post id for *record*; falls back to the id the record was requested by."""
    return _pick(record, "postIdStr", "postId") or fallback


def post_ids_from_profile(profile: JSONValue) -> list[str]:
    """Post ids referenced by a profile, first-seen order, no duplicates.

    The ``posts`` list is preferred.  When it is absent or yields nothing,
    the whole record is scanned for ``postId``/``postIdStr`` keys.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(raw: Any) -> None:
        pid = format_id(raw)
        if pid and pid not in seen:
            seen.add(pid)
            out.append(pid)

    posts = profile.get("posts") if isinstance(profile, dict) else None
    if isinstance(posts, list):
        for item in posts:
            if isinstance(item, dict):
                pid = _pick(item, "postIdStr", "postId")
                if pid:
                    add(pid)
            else:
                add(item)

    if not out:
        for key, value in walk(profile):
            if key is not None and key.lower() in _POST_ID_KEYS and value is not None:
                add(value)
    return out


def user_ids_from_listing(listing: JSONValue) -> list[str]:
    """User ids from a listing document: ``["123", ...]`` or ``[{"userIdStr": ...}, ...]``."""
    seen: set[str] = set()
    out: list[str] = []
    if not isinstance(listing, list):
        return out
    for item in listing:
        uid = user_id(item) if isinstance(item, dict) else format_id(item)
        if uid and uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out


def user_id_from_line(line: str) -> str | None:
    """One ``profiles.txt`` entry: a bare numeric id or a ``vine.co/u/<id>`` URL.

    Blank lines and ``#`` comments yield None.  Vanity names and vanity URLs
    cannot be resolved against the archive and are skipped.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    if _NUMERIC_RE.match(line):
        return line
    if line.startswith(("http://", "https://")):
        parts = urlsplit(line)
        if "vine.co" not in (parts.hostname or ""):
            logger.info("Skipping non-vine URL: %s", line)
            return None
        segments = [s for s in parts.path.split("/") if s]
        if len(segments) >= 2 and segments[0] == "u" and _NUMERIC_RE.match(segments[1]):
            return segments[1]
    logger.info("Skipping unresolvable profile entry: %s", line)
    return None


def user_ids_from_lines(text: str) -> list[str]:
    """User ids from a line-per-entry profile list, first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for line in text.splitlines():
        uid = user_id_from_line(line)
        if uid and uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out
