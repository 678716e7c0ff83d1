from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

PERIOD_TYPES = ("monthly", "quarterly", "annual")


@dataclass(frozen=True)
class Period:
    key: str
    start: date
    end: date  # exclusive

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def _add_months(first: date, months: int) -> date:
    total = first.month - 1 + months
    return date(first.year + total // 12, total % 12 + 1, 1)


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def resolve_month(key: str) -> Period:
    text = (key or "").strip()
    try:
        start = datetime.strptime(text, "%Y-%m").date()
    except ValueError:
        raise ValueError(f"Invalid month key {key!r}, expected YYYY-MM") from None
    if len(text) != 7:
        raise ValueError(f"Invalid month key {key!r}, expected YYYY-MM")
    return Period(month_key(start), start, _add_months(start, 1))


def period_for(period_type: str, today: Optional[date] = None) -> Period:
    today = today or local_today()
    kind = (period_type or "").strip().lower()
    if kind == "monthly":
        start = today.replace(day=1)
        return Period(month_key(start), start, _add_months(start, 1))
    if kind == "quarterly":
        quarter = (today.month - 1) // 3 + 1
        start = date(today.year, (quarter - 1) * 3 + 1, 1)
        return Period(f"{today.year:04d}-Q{quarter}", start, _add_months(start, 3))
    if kind == "annual":
        start = date(today.year, 1, 1)
        return Period(f"{today.year:04d}", start, date(today.year + 1, 1, 1))
    raise ValueError(f"Invalid period type {period_type!r}")
