"""Normalization helpers.

Centralizes defensive parsing of persistence rows, which arrive with
string-typed numbers and placeholder values.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def normalize_ids(ids: Iterable[Any]) -> list[str]:
    """Return the sorted, de-duplicated, non-empty string form of *ids*."""
    cleaned = {text for text in (safe_str(value) for value in ids) if text is not None}
    return sorted(cleaned)


def identifier_set_key(ids: Iterable[Any]) -> str:
    """Cache key for an identifier set: equal sets give equal keys."""
    return ",".join(normalize_ids(ids))
