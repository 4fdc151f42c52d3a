"""
Time rules for the attendance pipeline.
Handles UTC normalisation, occurred_at parsing and report range presets.
"""
from dataclasses import dataclass
from datetime import datetime, date, time, timedelta
from typing import Optional
import pytz
from ..config import settings


RANGE_PRESETS = ("last7", "last30", "thisWeek", "custom")


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def parse_occurred_at(value, now: Optional[datetime] = None) -> datetime:
    """
    Parse a client-supplied occurred_at.

    Missing or blank means "now". A value that is present but not a valid
    ISO-8601 timestamp is rejected rather than silently replaced.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return now or utcnow()
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError("occurred_at must be a valid ISO date string.")

    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError("occurred_at must be a valid ISO date string.")
    return ensure_utc(parsed)


def get_timezone(tz_name: Optional[str] = None):
    try:
        return pytz.timezone(tz_name or settings.tz_default)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(settings.tz_default)


def _local_midnight(tz, day: date) -> datetime:
    return tz.localize(datetime.combine(day, time.min))


def start_of_day(dt: datetime, tz) -> datetime:
    local = ensure_utc(dt).astimezone(tz)
    return _local_midnight(tz, local.date())


def end_of_day(dt: datetime, tz) -> datetime:
    local = ensure_utc(dt).astimezone(tz)
    return _local_midnight(tz, local.date() + timedelta(days=1)) - timedelta(microseconds=1)


def start_of_week(dt: datetime, tz) -> datetime:
    """Local midnight of the Sunday starting the week containing `dt`."""
    local = ensure_utc(dt).astimezone(tz)
    # Python weekday(): Monday=0 .. Sunday=6
    days_since_sunday = (local.weekday() + 1) % 7
    return _local_midnight(tz, local.date() - timedelta(days=days_since_sunday))


def _parse_date_input(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class ReportRange:
    preset: str
    start: datetime  # aware, UTC
    end: datetime  # aware, UTC, inclusive
    start_input: str
    end_input: str

    def contains(self, dt: Optional[datetime]) -> bool:
        if dt is None:
            return False
        dt = ensure_utc(dt)
        return self.start <= dt <= self.end


def resolve_range(
    preset: Optional[str],
    start: Optional[str] = None,
    end: Optional[str] = None,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> ReportRange:
    """
    Resolve a report range preset into an inclusive [start, end] window.

    Presets: last7 (today and the six days before), last30, thisWeek (Sunday
    to end of today) and custom (YYYY-MM-DD start/end). Unknown presets and
    invalid custom ranges (unparseable, or end before start) fall back to last7.
    """
    tz = get_timezone(tz_name)
    now = ensure_utc(now) if now else utcnow()
    safe = preset if preset in RANGE_PRESETS else "last7"

    def _build(name: str, s: datetime, e: datetime, s_in: Optional[str] = None, e_in: Optional[str] = None) -> ReportRange:
        return ReportRange(
            preset=name,
            start=s.astimezone(pytz.UTC),
            end=e.astimezone(pytz.UTC),
            start_input=s_in or s.astimezone(tz).date().isoformat(),
            end_input=e_in or e.astimezone(tz).date().isoformat(),
        )

    if safe == "thisWeek":
        return _build(safe, start_of_week(now, tz), end_of_day(now, tz))

    if safe == "last30":
        today = now.astimezone(tz).date()
        return _build(safe, _local_midnight(tz, today - timedelta(days=29)), end_of_day(now, tz))

    if safe == "custom":
        start_day = _parse_date_input(start)
        end_day = _parse_date_input(end)
        if start_day and end_day and end_day >= start_day:
            s = _local_midnight(tz, start_day)
            e = _local_midnight(tz, end_day + timedelta(days=1)) - timedelta(microseconds=1)
            return _build(safe, s, e, start_day.isoformat(), end_day.isoformat())

    today = now.astimezone(tz).date()
    return _build("last7", _local_midnight(tz, today - timedelta(days=6)), end_of_day(now, tz))


def this_week_range(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> ReportRange:
    return resolve_range("thisWeek", now=now, tz_name=tz_name)
