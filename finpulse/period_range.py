from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from finpulse.errors import InvalidInput

WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"
GRANULARITIES = (WEEKLY, MONTHLY, YEARLY)

WEEK_DAYS = 7


@dataclass(frozen=True)
class PeriodWindow:
    start: datetime
    end: datetime
    granularity: str

    def contains(self, value: datetime) -> bool:
        return self.start <= as_utc(value) <= self.end


def normalize_granularity(value: str) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    if normalized not in GRANULARITIES:
        raise InvalidInput(
            f"Unsupported granularity: {value!r}. Use one of {', '.join(GRANULARITIES)}."
        )
    return normalized


def build_range(
    granularity: str, count: int, now: datetime | None = None
) -> PeriodWindow:
    normalized = normalize_granularity(granularity)
    _validate_count(count)
    today = as_utc(now or datetime.now(timezone.utc)).date()
    try:
        return _build_window(normalized, count, today)
    except (ValueError, OverflowError) as exc:
        raise InvalidInput(f"count {count} reaches outside the supported calendar.") from exc


def _build_window(normalized: str, count: int, today: date) -> PeriodWindow:
    if normalized == WEEKLY:
        start_day = today - timedelta(days=count * WEEK_DAYS - 1)
        return PeriodWindow(_day_start(start_day), _day_end(today), normalized)
    if normalized == YEARLY:
        start_day = date(today.year - count + 1, 1, 1)
        end_day = date(today.year, 12, 31)
        return PeriodWindow(_day_start(start_day), _day_end(end_day), normalized)

    current_month = today.replace(day=1)
    start_day = shift_month(current_month, -(count - 1))
    return PeriodWindow(_day_start(start_day), _day_end(month_end(current_month)), normalized)


def build_month_range(month: int, year: int) -> PeriodWindow:
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise InvalidInput("Month must be between 1 and 12.")
    if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9999:
        raise InvalidInput("Year must be between 1 and 9999.")
    first_day = date(year, month, 1)
    return PeriodWindow(_day_start(first_day), _day_end(month_end(first_day)), MONTHLY)


def period_label(value: datetime, granularity: str) -> str:
    normalized = normalize_granularity(granularity)
    moment = as_utc(value)
    if normalized == WEEKLY:
        iso_year, iso_week, _ = moment.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if normalized == YEARLY:
        return f"{moment.year:04d}"
    return f"{moment.year:04d}-{moment.month:02d}"


def display_label(label: str, granularity: str) -> str:
    normalized = normalize_granularity(granularity)
    if normalized == WEEKLY:
        return f"W{label.split('-W')[1]}" if "-W" in label else label
    if normalized == YEARLY:
        return label
    try:
        parsed = datetime.strptime(label, "%Y-%m")
    except ValueError:
        return label
    return calendar.month_abbr[parsed.month]


def iter_period_labels(window: PeriodWindow) -> Iterator[str]:
    cursor = window.start
    if window.granularity == WEEKLY:
        cursor = cursor - timedelta(days=cursor.weekday())
    last_label = period_label(window.end, window.granularity)
    while True:
        label = period_label(cursor, window.granularity)
        yield label
        if label >= last_label:
            return
        cursor = _advance(cursor, window.granularity)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    last_day = calendar.monthrange(value.year, value.month)[1]
    return value.replace(day=last_day)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _advance(value: datetime, granularity: str) -> datetime:
    if granularity == WEEKLY:
        return value + timedelta(days=WEEK_DAYS)
    if granularity == YEARLY:
        return value.replace(year=value.year + 1, month=1, day=1)
    return _day_start(shift_month(value.date(), 1))


def _validate_count(count: int) -> None:
    if isinstance(count, bool) or not isinstance(count, int):
        raise InvalidInput("count must be an integer.")
    if count <= 0:
        raise InvalidInput("count must be greater than zero.")


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _day_end(value: date) -> datetime:
    return datetime.combine(value, time.max, tzinfo=timezone.utc)
