"""
Field normalizers: raw strings in, typed values out.
Everything here is pure; invalid input yields None rather than an exception.
"""
import re
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

UrlParts = namedtuple("UrlParts", ["host", "path", "tld"])
EMPTY_URL_PARTS = UrlParts(None, None, None)

MONTHS = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}

APACHE_DATE = re.compile(
    r'^(?P<day>\d{2})/(?P<mon>\w{3})/(?P<year>\d{4}):(?P<hh>\d{2}):(?P<mm>\d{2}):(?P<ss>\d{2}) '
    r'(?P<sign>[+-])(?P<tzh>\d{2})(?P<tzm>\d{2})$'
)

# Naive timestamps are read as UTC, never as the host's local time
TIMESTAMP_FORMATS = [
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M:%S.%f',
    '%Y/%m/%d %H:%M:%S',
    '%m/%d/%Y %H:%M:%S',
    '%m/%d/%Y %H:%M',
    '%a %b %d %H:%M:%S %Y',  # Zscaler NSS default
    '%d/%b/%Y:%H:%M:%S',
    '%b %d %Y %H:%M:%S',
]

EPOCH = re.compile(r'^\d{10}(\d{3})?(\.\d+)?$')


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def to_int(value: Any) -> Optional[int]:
    """Parse an integer-valued field; '200', ' 200 ' and '200.0' all give 200."""
    if _blank(value):
        return None
    s = str(value).strip()
    try:
        return int(s)
    except ValueError:
        pass
    try:
        f = float(s)
    except ValueError:
        return None
    if f != f or f in (float("inf"), float("-inf")) or not f.is_integer():
        return None
    return int(f)


def to_big_int(value: Any) -> Optional[int]:
    """
    Parse an unbounded integer such as a byte counter.
    Thousands separators and spaces are ignored ('1,234 567' -> 1234567).
    Python ints never overflow, so values past 2**63 stay exact.
    """
    if _blank(value):
        return None
    s = re.sub(r'[, ]', '', str(value))
    if not re.fullmatch(r'[-+]?\d+', s):
        return None
    try:
        return int(s)
    except ValueError:
        # past the interpreter's int string-conversion limit
        return None


def to_status(value: Any) -> Optional[int]:
    """HTTP status code; anything outside 100..599 is treated as missing."""
    status = to_int(value)
    if status is None or not 100 <= status <= 599:
        return None
    return status


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_apache_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse '10/Oct/2000:13:55:36 -0700' into an aware UTC datetime.
    The numeric fields are wall-clock time at the stated offset, so the UTC
    instant is that wall-clock minus the offset.
    """
    if not value:
        return None
    m = APACHE_DATE.match(value.strip())
    if not m:
        return None
    month = MONTHS.get(m.group('mon'))
    if month is None:
        return None
    offset = int(m.group('tzh')) * 60 + int(m.group('tzm'))
    if m.group('sign') == '-':
        offset = -offset
    try:
        local = datetime(
            int(m.group('year')), month, int(m.group('day')),
            int(m.group('hh')), int(m.group('mm')), int(m.group('ss')),
            tzinfo=timezone(timedelta(minutes=offset)),
        )
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


def to_datetime(value: Any) -> Optional[datetime]:
    """Best-effort timestamp parse: ISO 8601, Apache, common proxy formats, epoch."""
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    s = str(value).strip()

    if EPOCH.match(s):
        seconds = float(s)
        if len(s.split('.')[0]) == 13:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if re.match(r'^\d{4}-\d{2}-\d{2}', s):
        iso = s[:-1] + '+00:00' if s.endswith('Z') else s
        try:
            return ensure_utc(datetime.fromisoformat(iso))
        except ValueError:
            pass

    apache = parse_apache_date(s)
    if apache is not None:
        return apache

    for fmt in TIMESTAMP_FORMATS:
        try:
            return ensure_utc(datetime.strptime(s, fmt))
        except ValueError:
            continue
    return None


def derive_url_parts(url: Optional[str]) -> UrlParts:
    """Split an absolute URL into host, path and top-level domain; anything else is all-null."""
    if not url:
        return EMPTY_URL_PARTS
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return EMPTY_URL_PARTS
    if not parts.scheme or not host:
        return EMPTY_URL_PARTS
    tld = host.rsplit('.', 1)[-1] or None
    return UrlParts(host, parts.path or '/', tld)


def truncate_to_hour(dt: Optional[datetime]) -> Optional[datetime]:
    dt = ensure_utc(dt)
    if dt is None:
        return None
    return dt.replace(minute=0, second=0, microsecond=0)


def truncate_to_day(dt: Optional[datetime]) -> Optional[datetime]:
    dt = ensure_utc(dt)
    if dt is None:
        return None
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def floor_to_bucket(dt: Optional[datetime], minutes: int) -> Optional[datetime]:
    """Floor to an N-minute window anchored at the top of the hour (N in 1..60)."""
    dt = ensure_utc(dt)
    if dt is None:
        return None
    if not 1 <= minutes <= 60:
        raise ValueError(f"bucket width must be 1..60 minutes, got {minutes}")
    return dt.replace(minute=dt.minute - dt.minute % minutes, second=0, microsecond=0)
