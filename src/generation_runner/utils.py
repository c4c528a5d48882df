"""Provide utility helpers for timestamps and durations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .constants import HISTORY_TIME_FORMAT


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def history_stamp(moment: Optional[datetime] = None) -> str:
    """Return the timestamp prefix used for history file names."""
    return (moment or _now()).strftime(HISTORY_TIME_FORMAT)


def format_duration(seconds: int) -> str:
    """Render seconds as `42s` or `3m7s`."""
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m{seconds % 60}s"
