"""Shared helpers used across dealscout modules."""
from __future__ import annotations

import json
import re
import unicodedata
import uuid
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(value.replace("\xa0", " ").split())


def match_key(value: str | None) -> str:
    """Case-insensitive exact-match key: casefolded, whitespace collapsed.

    Accents and punctuation are kept, so this is *not* a fuzzy key.
    """
    normalized = unicodedata.normalize("NFC", collapse_whitespace(value))
    return normalized.casefold()


def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "_", normalized.casefold()).strip("_")


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, value)))
