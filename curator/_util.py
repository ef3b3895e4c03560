"""Shared utilities for the curator package.

Timestamp helpers and small value coercions used by the stores, trackers and
scripts.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any


# ---------------------------------------------------------------------------
# Timestamps -- all persisted times are UTC ISO-8601 with millisecond precision.
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime | None = None) -> datetime:
    """*dt* as an aware datetime; naive values are taken as UTC, None is now."""
    if dt is None:
        return utc_now()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def utc_iso(dt: datetime | None = None) -> str:
    return as_utc(dt).astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO timestamp written by `utc_iso` (or any ISO variant).

    Returns None for missing/unparseable values; naive values are taken as UTC.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def iso_sort_key(value: Any) -> float:
    """Epoch seconds for ordering; unparseable values sort first."""
    dt = parse_iso(value)
    return dt.timestamp() if dt is not None else 0.0


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


_SAFE_COMPONENT_RE = re.compile(r"^[A-Za-z0-9_.@-]+$")


def safe_path_component(value: str, *, what: str) -> str:
    """Validate that *value* can be used as a single file/dir name."""
    s = str(value or "").strip()
    if not s or s in {".", ".."} or not _SAFE_COMPONENT_RE.match(s):
        raise ValueError(f"invalid {what}: {value!r}")
    return s
