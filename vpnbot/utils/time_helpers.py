# vpnbot/utils/time_helpers.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


def now_utc() -> datetime:
    """Текущее время (aware UTC)."""
    return datetime.now(UTC)


def expire_str(raw: Optional[str], fmt: str = "%d.%m.%Y %H:%M") -> str:
    """
    Дата окончания услуги из API ("2025-03-01 12:00:00") в человеческом виде.
    Нераспознанную строку отдаём как есть.
    """
    if not raw:
        return "—"
    try:
        return datetime.fromisoformat(raw.strip()).strftime(fmt)
    except ValueError:
        return raw
