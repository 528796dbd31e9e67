"""Input validation shared by the CLI, the pool and the trackers.

Every validator raises ``ValidationError`` (a ``ValueError``) before any
state is touched.
"""

from __future__ import annotations

import re
from datetime import timedelta
from enum import StrEnum
from typing import TypeVar

from .errors import ValidationError

E = TypeVar("E", bound=StrEnum)

# ---------------------------------------------------------------------------
# String length limits
# ---------------------------------------------------------------------------

MAX_PURPOSE = 500
MAX_TOPIC = 500
MAX_PROMPT = 20000
MAX_FEEDBACK = 20000
MAX_TTL = timedelta(days=365)

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"(\d+)([smhd])")
_WORKSPACE_NAME_RE = re.compile(r"^ws-(\d+)$")
_REPO_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9\-]*$")

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_string_length(value: str, field: str, max_len: int) -> str:
    """Validate string is non-empty and within length limit."""
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")
    stripped = value.strip()
    if len(stripped) > max_len:
        raise ValidationError(f"{field} too long ({len(stripped)} chars, max {max_len})")
    return stripped


def validate_single_line(value: str, field: str, max_len: int) -> str:
    """Like validate_string_length, but also rejects CR/LF."""
    if value and ("\n" in value or "\r" in value):
        raise ValidationError(f"{field} must be a single line")
    return validate_string_length(value, field, max_len)


def validate_purpose(purpose: str) -> str:
    return validate_single_line(purpose, "purpose", MAX_PURPOSE)


def validate_choice(value: str | E, enum_cls: type[E], field: str) -> E:
    """Case-insensitively coerce ``value`` to a member of ``enum_cls``."""
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"invalid {field}: {value!r} (valid: {valid})") from None


def validate_ttl(ttl: timedelta | None) -> timedelta | None:
    if ttl is None:
        return None
    if ttl <= timedelta(0):
        raise ValidationError(f"ttl must be positive (got {ttl})")
    if ttl > MAX_TTL:
        raise ValidationError(f"ttl too large ({ttl}, max {MAX_TTL})")
    return ttl


def parse_duration(text: str) -> timedelta:
    """Parse ``90s``, ``30m``, ``1h30m`` or ``2d`` into a timedelta."""
    compact = text.strip().lower()
    if not compact:
        raise ValidationError("duration cannot be empty")
    pos = 0
    seconds = 0
    for match in _DURATION_RE.finditer(compact):
        if match.start() != pos:
            break
        seconds += int(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(compact):
        raise ValidationError(f"invalid duration: {text!r} (e.g. 90s, 30m, 1h30m, 2d)")
    return timedelta(seconds=seconds)


def workspace_number(name: str) -> int | None:
    """The numeric suffix of a ``ws-NNN`` name, or None for other names."""
    match = _WORKSPACE_NAME_RE.match(name)
    return int(match.group(1)) if match else None


def validate_repo_slug(slug: str) -> str:
    """Validate repo slug format (lowercase alphanumeric + hyphens)."""
    if not slug:
        raise ValidationError("repo slug cannot be empty")
    if not _REPO_SLUG_RE.match(slug):
        raise ValidationError(
            f"invalid repo slug: {slug!r}. "
            "Must be lowercase alphanumeric with hyphens, starting with alphanumeric."
        )
    return slug
