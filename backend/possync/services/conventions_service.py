# Overview: Document conventions shared by every offline repository: ids and timestamps.

"""
Document Conventions

IDS: "<prefix>_<epoch-ms>_<9 base36 chars>". The prefix is the entity type, so
ids also sort by collection and by creation time within it.

UNIQUENESS: the suffixes issued in the current millisecond are remembered per
prefix and a colliding suffix is drawn again. Older ids cannot collide since
the timestamp differs. The store also rejects a create on an existing live id.

TIMESTAMPS: ISO-8601 UTC strings with millisecond precision. updated_at never
moves backwards, even when the device clock does.
"""

from __future__ import annotations

import secrets
import threading
import time

from possync.time_utils import iso_now, parse_iso_datetime

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
SUFFIX_LENGTH = 9

# prefix -> (millisecond, suffixes issued in it)
_issued: dict[str, tuple[int, set[str]]] = {}
_issued_lock = threading.Lock()


def _random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_id(prefix: str = "") -> str:
    """Generate a document id, unique for this prefix within the process lifetime."""
    with _issued_lock:
        while True:
            timestamp = int(time.time() * 1000)
            millisecond, seen = _issued.get(prefix, (None, None))
            if millisecond != timestamp:
                seen = set()
                _issued[prefix] = (timestamp, seen)
            suffix = _random_suffix()
            if suffix not in seen:
                seen.add(suffix)
                break
    return f"{prefix}_{timestamp}_{suffix}" if prefix else f"{timestamp}_{suffix}"


def add_timestamps(doc: dict, is_update: bool = False) -> dict:
    """
    Stamp created_at (creates only) and updated_at (always). Mutates and returns doc.

    On update, created_at is left untouched and updated_at is never set below
    its previous value.
    """
    now = iso_now()

    if not is_update:
        doc["created_at"] = now
    else:
        previous = doc.get("updated_at")
        if previous and _is_after(previous, now):
            now = previous

    doc["updated_at"] = now
    return doc


def _is_after(left: str, right: str) -> bool:
    try:
        left_dt = parse_iso_datetime(left)
        right_dt = parse_iso_datetime(right)
    except (TypeError, ValueError):
        return False
    if left_dt is None or right_dt is None:
        return False
    return left_dt > right_dt


def document_time(doc: dict):
    """updated_at, falling back to created_at; None when neither parses."""
    for key in ("updated_at", "created_at"):
        value = doc.get(key)
        if not value:
            continue
        try:
            parsed = parse_iso_datetime(value)
        except (TypeError, ValueError):
            continue
        if parsed is not None:
            return parsed
    return None
