# dates.py
import calendar
import datetime

UTC = datetime.timezone.utc


def utc_now():
    return datetime.datetime.now(UTC)


def iso(dt):
    """ISO-8601 string in UTC; stored timestamps sort lexically in time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value):
    """Parse an ISO-8601 string (``Z`` suffix accepted). Naive values are UTC."""
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_date_key(dt):
    return f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"


def to_utc_date_key(dt):
    return to_date_key(parse_timestamp(dt).astimezone(UTC))


def day_bounds_utc(dt):
    """Start of the UTC day containing ``dt`` and start of the next one."""
    dt = parse_timestamp(dt).astimezone(UTC)
    start = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + datetime.timedelta(days=1)


def month_matrix(year, month_idx):
    """
    Days of a month for a Monday-first calendar grid. ``month_idx`` is
    0-based. Leading slots before the 1st are ``None``.
    """
    month = month_idx + 1
    first_weekday, days = calendar.monthrange(year, month)
    grid = [None] * first_weekday
    grid.extend(datetime.date(year, month, d) for d in range(1, days + 1))
    return grid


def format_relative(dt, now=None):
    now = now or utc_now()
    diff = (now - parse_timestamp(dt)).total_seconds()

    if diff < 60:
        return "just now"
    if diff < 3600:
        return f"{int(diff // 60)}m"
    if diff < 86400:
        return f"{int(diff // 3600)}h"
    if diff < 86400 * 7:
        return f"{int(diff // 86400)}d"

    weeks = int(diff // (86400 * 7))
    remaining_days = int((diff % (86400 * 7)) // 86400)
    if remaining_days == 0:
        return f"{weeks}w"
    return f"{weeks}w {remaining_days}d"


def hours_since(dt, now=None):
    now = now or utc_now()
    return (now - parse_timestamp(dt)).total_seconds() / 3600
