"""
Timezone and calendar-day helpers.

All timestamps are handled as timezone-aware UTC datetimes. SQLite hands back
naive values, which are treated as UTC.
"""

from datetime import date, datetime, timedelta, timezone

import pytz
from flask import current_app, has_app_context


def get_reference_timezone():
    """Get the configured reference timezone for calendar days"""
    timezone_name = "UTC"
    if has_app_context():
        timezone_name = current_app.config.get("REFERENCE_TIMEZONE", "UTC")
    try:
        return pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError:
        # Fallback to UTC if timezone is invalid
        return pytz.UTC


def utc_now():
    """Get current time in UTC"""
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Return an aware UTC datetime (naive values are assumed to be UTC)"""
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def from_epoch_ms(value):
    """Convert milliseconds since epoch to an aware UTC datetime"""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def parse_timestamp(value):
    """Parse an ISO-8601 string or epoch milliseconds into UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def day_key(d):
    """Format a date as YYYY-MM-DD"""
    return d.strftime("%Y-%m-%d")


def parse_day(value):
    """Parse a YYYY-MM-DD string into a date (raises ValueError)"""
    return datetime.strptime(value, "%Y-%m-%d").date()


def reference_today(now=None):
    """Today's calendar day in the reference timezone"""
    now = as_utc(now) if now else utc_now()
    return day_key(now.astimezone(get_reference_timezone()).date())


def utc_today(now=None):
    now = as_utc(now) if now else utc_now()
    return day_key(now.date())


def previous_day(day):
    """The calendar day before a YYYY-MM-DD string"""
    return day_key(parse_day(day) - timedelta(days=1))


def utc_midnight(now=None):
    """Start of the current UTC day"""
    now = as_utc(now) if now else utc_now()
    return datetime.combine(now.date(), datetime.min.time(), tzinfo=timezone.utc)


def reference_midnight(now=None):
    """Start of the current reference-timezone day, as a UTC datetime"""
    now = as_utc(now) if now else utc_now()
    tz = get_reference_timezone()
    local_day = now.astimezone(tz).date()
    start = tz.localize(datetime.combine(local_day, datetime.min.time()))
    return start.astimezone(timezone.utc)


def iso_week_key(now=None):
    """ISO-8601 week identifier, e.g. 2025-W09 (Thursday-anchored ISO year)"""
    now = as_utc(now) if now else utc_now()
    iso_year, iso_week, _ = date(now.year, now.month, now.day).isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def isoformat(dt):
    """Serialize a datetime for API responses"""
    dt = as_utc(dt)
    return dt.isoformat() if dt else None
