"""Deterministic record IDs.

An ID is a sha256 of a semantic key plus a timestamp, base32-encoded,
lowercased and truncated, so retrying an operation with identical inputs
produces the same identity.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime

from .models import to_iso

DEFAULT_LENGTH = 8
RECORD_ID_LENGTH = 10


def generate(value: str, length: int = DEFAULT_LENGTH) -> str:
    if length <= 0:
        return ""
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    encoded = base64.b32encode(digest).decode("ascii")
    return encoded[:length].lower()


def generate_with_timestamp(value: str, timestamp: datetime, length: int = RECORD_ID_LENGTH) -> str:
    return generate(value + to_iso(timestamp), length)


def unique_prefix_lengths(ids: list[str]) -> dict[str, int]:
    """Shortest prefix length that identifies each (lowercased) ID."""
    unique = list(dict.fromkeys(i.lower() for i in ids if i))
    lengths: dict[str, int] = {}
    for ident in unique:
        others = [o for o in unique if o != ident]
        for length in range(1, len(ident) + 1):
            prefix = ident[:length]
            if not any(o.startswith(prefix) for o in others):
                lengths[ident] = length
                break
        else:
            lengths[ident] = len(ident)
    return lengths
