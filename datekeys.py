"""
Calendar key helpers for index lookups.

Month keys look like "MM/YYYY", year keys like "YYYY". All functions are
pure; "now" is always passed in by the caller.
"""

import re
from datetime import date, datetime

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


_YMD_RE = re.compile(r'^(\d{4})-(\d{2})(?:-(\d{2}))?$')
_DMY_RE = re.compile(r'^(\d{2})/(\d{2})/(\d{4})$')
_MY_RE = re.compile(r'^(\d{2})/(\d{4})$')
_YEAR_RE = re.compile(r'^\d{4}$')

# fields missing from a partial date string: first day of the month, never today
PARSE_DEFAULT = datetime(2000, 1, 1)


def _as_date(d):
    if isinstance(d, datetime):
        return d.date()
    return d


def month_key(d):
    """Format a date as "MM/YYYY"."""
    return f'{d.month:02d}/{d.year:04d}'


def previous_month_key(from_date):
    """Month key of the calendar month before ``from_date``."""
    first = _as_date(from_date).replace(day=1)
    return month_key(first - relativedelta(months=1))


def previous_month_year_key(from_date):
    """Year key of the calendar month before ``from_date``."""
    first = _as_date(from_date).replace(day=1)
    return str((first - relativedelta(months=1)).year)


def parse_to_month_key(value):
    """
    Derive a month key from a loosely formatted date string.

    Accepted, in order: YYYY-MM-DD, YYYY-MM, DD/MM/YYYY, MM/YYYY, then
    anything python-dateutil can parse. Returns None otherwise.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()

    m = _YMD_RE.match(value)
    if m:
        return f'{m.group(2)}/{m.group(1)}'

    m = _DMY_RE.match(value)
    if m:
        return f'{m.group(2)}/{m.group(3)}'

    m = _MY_RE.match(value)
    if m:
        return f'{m.group(1)}/{m.group(2)}'

    try:
        return month_key(date_parser.parse(value, default=PARSE_DEFAULT))
    except (ValueError, OverflowError):
        return None


def year_key_from_date_string(value):
    """Year key of an adjustment date string, falling back to its month key."""
    if not value or not isinstance(value, str):
        return None
    try:
        return str(datetime.strptime(value.strip()[:10], '%Y-%m-%d').year)
    except ValueError:
        pass
    mk = parse_to_month_key(value)
    if mk:
        return mk.split('/')[1]
    return None


def is_valid_month_key(value):
    """Strict "MM/YYYY" check with a real month number."""
    if not isinstance(value, str):
        return False
    m = _MY_RE.match(value)
    return bool(m) and 1 <= int(m.group(1)) <= 12


def is_valid_year_key(value):
    return isinstance(value, str) and bool(_YEAR_RE.match(value))


def add_months(d, months):
    """
    Advance ``d`` by ``months`` calendar months.

    The day of month is kept and clamped to the last day of the target
    month: 2023-01-31 + 1 month is 2023-02-28.
    """
    return d + relativedelta(months=months or 0)


def key_to_date(key):
    """Turn "MM/YYYY" into "YYYY-MM-01" and "YYYY" into "YYYY-01-01"."""
    if not key or not isinstance(key, str):
        return None
    if is_valid_month_key(key):
        mm, yyyy = key.split('/')
        return f'{yyyy}-{mm}-01'
    if is_valid_year_key(key):
        return f'{key}-01-01'
    return None


def add_months_to_first_of_month(value, months):
    """First day of the month ``months`` after the month of ``value``."""
    if isinstance(value, str):
        try:
            value = datetime.strptime(value[:10], '%Y-%m-%d').date()
        except ValueError:
            return None
    base = _as_date(value).replace(day=1)
    return base + relativedelta(months=months)


def first_day_of_next_month(now):
    return _as_date(now).replace(day=1) + relativedelta(months=1)


def month_key_choices(now, start_year=2020):
    """Month keys from 01/<start_year> up to the month of ``now``, newest first."""
    keys = []
    for year in range(start_year, now.year + 1):
        last_month = now.month if year == now.year else 12
        for month in range(1, last_month + 1):
            keys.append(f'{month:02d}/{year}')
    keys.reverse()
    return keys
