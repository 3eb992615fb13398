"""
dealclub/features/usage/periods.py

Calendar-month quota periods.

A period is identified by "YYYY-MM" in the configured time zone and covers the
half-open UTC interval [start, end). Quotas reset at month boundaries simply
because counts are taken over a different interval.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dealclub.core.config import settings


@dataclass(frozen=True)
class Period:
    key: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def _zone(tz: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz or settings.TIMEZONE)


def period_key(now: datetime, tz: Optional[str] = None) -> str:
    """Return the "YYYY-MM" month containing `now` in the given zone."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(tz))
    return f"{local.year:04d}-{local.month:02d}"


def period_from_key(key: str, tz: Optional[str] = None) -> Period:
    try:
        year_text, month_text = key.split("-")
        year, month = int(year_text), int(month_text)
    except ValueError as exc:
        raise ValueError(f"Invalid period key: {key!r}") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid period key: {key!r}")

    zone = _zone(tz)
    start_local = datetime(year, month, 1, tzinfo=zone)
    if month == 12:
        end_local = datetime(year + 1, 1, 1, tzinfo=zone)
    else:
        end_local = datetime(year, month + 1, 1, tzinfo=zone)
    return Period(
        key=key,
        start=start_local.astimezone(timezone.utc),
        end=end_local.astimezone(timezone.utc),
    )


def period_for(now: datetime, tz: Optional[str] = None) -> Period:
    return period_from_key(period_key(now, tz), tz)
