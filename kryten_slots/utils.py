"""Shared utility helpers for kryten-slots."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

_KEY_SAFE = re.compile(r"[A-Za-z0-9_\-]")


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def normalize_username(username: str) -> str:
    """Lowercase and strip a chat username for use as an account id."""
    return username.strip().lstrip("@").lower()


def _key_part(part: str) -> str:
    # JetStream KV keys only allow [-/_=.A-Za-z0-9]; '.' is our separator.
    return "".join(c if _KEY_SAFE.match(c) else f"={ord(c):x}" for c in part)


def kv_key(*parts: str) -> str:
    """Build a KV key like ``effect.alice.boost=1f9a1`` from raw parts."""
    return ".".join(_key_part(str(p)) for p in parts)


def week_start(dt: datetime | None = None, tz: str = "Europe/Berlin") -> str:
    """Return the date of the Monday 00:00 starting dt's week in tz, as YYYY-MM-DD."""
    if dt is None:
        dt = now_utc()
    local = dt.astimezone(ZoneInfo(tz))
    monday = local.date() - timedelta(days=local.weekday())
    return monday.isoformat()
