from __future__ import annotations

from calendar import monthrange
from datetime import date, timedelta

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
WEEKLY_DAYS = 7


def normalize_frequency(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Frequency must be daily, weekly, monthly, or yearly.")
    return normalized


def next_occurrence(start_date: date, frequency: str) -> date:
    normalized = normalize_frequency(frequency)
    if normalized == "daily":
        return start_date + timedelta(days=1)
    if normalized == "weekly":
        return start_date + timedelta(days=WEEKLY_DAYS)
    if normalized == "monthly":
        return _add_months(start_date, 1, start_date.day)
    return _add_months(start_date, 12, start_date.day)


def resolve_next_date(
    is_recurring: bool,
    frequency: str | None,
    start_date: date,
    end_date: date | None = None,
) -> date | None:
    """Next occurrence for a recurring transaction, or None once the series is over."""
    if not is_recurring or not frequency:
        return None
    upcoming = next_occurrence(start_date, frequency)
    if end_date is not None and upcoming > end_date:
        return None
    return upcoming


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
