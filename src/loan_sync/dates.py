"""Date helpers. Upstream dates are plain YYYY-MM-DD strings."""

from datetime import UTC, date, datetime, timedelta

KST_OFFSET_MINUTES = 9 * 60


def normalize_date_string(value: str | None) -> str | None:
    """Reduce an ISO date or datetime string to its YYYY-MM-DD part."""
    if not value:
        return None
    value = value.strip()
    if len(value) >= 10 and value[4] == "-" and value[7] == "-":
        return value[:10]
    return value


def today_in_zone(offset_minutes: int = KST_OFFSET_MINUTES, now: datetime | None = None) -> date:
    """Today's date in a fixed UTC offset."""
    now = now or datetime.now(UTC)
    return (now + timedelta(minutes=offset_minutes)).date()


def days_until(
    date_string: str,
    offset_minutes: int = KST_OFFSET_MINUTES,
    now: datetime | None = None,
) -> int:
    """Whole days from today (in the given zone) until date_string."""
    target = date.fromisoformat(normalize_date_string(date_string) or date_string)
    return (target - today_in_zone(offset_minutes, now)).days


def is_within_days(
    date_string: str,
    days: int,
    offset_minutes: int = KST_OFFSET_MINUTES,
    now: datetime | None = None,
) -> bool:
    """
    True if date_string falls between today and today + days, inclusive.

    A blank or unparseable date is never within the window.
    """
    try:
        diff = days_until(date_string, offset_minutes, now)
    except ValueError:
        return False
    return 0 <= diff <= days
