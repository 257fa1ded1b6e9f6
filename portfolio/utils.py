"""Shared utility functions used across Portfolio modules."""
from __future__ import annotations

import json
import re
import secrets
import time
from datetime import UTC, datetime
from typing import Any

_MISSING = object()
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO date or timestamp into an aware UTC datetime.

    Date-only values mean midnight UTC; naive timestamps are taken as UTC.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(_COMPACT_OFFSET_RE.sub(r"\1:\2", value.strip()))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime | None) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def generate_id() -> str:
    """Time-ordered id for initiatives created by hand (JIRA ones use the issue key)."""
    millis = int(time.time() * 1000)
    return _base36(millis) + secrets.token_hex(4)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"
