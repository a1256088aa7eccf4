import logging
import re
from typing import Iterable, Optional

from logtriage.ingestion.batching import EventBatcher, EventSink
from logtriage.schemas import EventRecord, ParseResult
from logtriage.utils.geoip import GeoIPLocator
from logtriage.utils.normalize import derive_url_parts, parse_apache_date, to_big_int, to_status

logger = logging.getLogger(__name__)

# 127.0.0.1 - frank [10/Oct/2000:13:55:36 -0700] "GET /apache_pb.gif HTTP/1.0" 200 2326 "http://www.example.com/start.html" "Mozilla/4.08 [en] (Win98; I ;Nav)"
COMBINED = re.compile(
    r'^(?P<ip>\S+) (?P<ident>\S+) (?P<authuser>\S+) \[(?P<date>[^\]]+)\] '
    r'"(?P<method>\S+)\s(?P<path>[^"]*?)\s(?P<proto>[^"]+)" (?P<status>\d{3}) (?P<size>\S+)'
    r'(?: "(?P<referrer>[^"]*)" "(?P<user_agent>[^"]*)")?'
)

def _dash_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or value == '' or value == '-':
        return None
    return value

def parse_apache_line(line: str, upload_id: str, geoip: Optional[GeoIPLocator] = None) -> Optional[EventRecord]:
    """
    Parse one combined-format line into an EventRecord.
    Returns None when the line does not match the combined pattern.
    """
    match = COMBINED.match(line)
    if not match:
        return None

    ip = match.group('ip')
    ts = parse_apache_date(match.group('date'))
    path = match.group('path')

    # Absolute-form request targets (proxies) carry a full URL
    is_absolute = path.startswith('http')
    parts = derive_url_parts(path if is_absolute else None)

    geo = geoip.locate(ip) if geoip is not None else None

    extras = {"proto": match.group('proto')}
    if ts is not None:
        extras["date"] = ts.date().isoformat()
    for key in ('ident', 'authuser'):
        value = _dash_to_none(match.group(key))
        if value:
            extras[key] = value

    return EventRecord(
        upload_id=upload_id,
        ts=ts,
        src_ip=ip,
        url=path if is_absolute else None,
        domain=parts.host,
        method=match.group('method'),
        status=to_status(match.group('status')),
        bytes_out=to_big_int(_dash_to_none(match.group('size'))),
        user_agent=_dash_to_none(match.group('user_agent')),
        referrer=_dash_to_none(match.group('referrer')),
        country=geo.country if geo else None,
        city=geo.city if geo else None,
        latitude=geo.latitude if geo else None,
        longitude=geo.longitude if geo else None,
        url_host=parts.host,
        url_path=parts.path or (path if path.startswith('/') else None),
        url_tld=parts.tld,
        extras=extras,
        raw_line=line,
    )

def parse_apache_stream(
    lines: Iterable[str],
    upload_id: str,
    sink: EventSink,
    geoip: Optional[GeoIPLocator] = None,
    batch_size: int = 500,
) -> ParseResult:
    """
    Parse Apache combined access logs line by line.
    Blank lines are ignored; every other line counts toward total, and lines
    that do not match the combined format are skipped without error.
    """
    batcher = EventBatcher(sink, batch_size)
    total = parsed = 0

    for raw in lines:
        line = raw.rstrip('\r\n')
        if not line.strip():
            continue
        total += 1

        event = parse_apache_line(line, upload_id, geoip)
        if event is None:
            logger.debug("Skipping non-combined line %d: %s", total, line[:100])
            continue

        batcher.add(event)
        parsed += 1

    batcher.flush()
    logger.info("Apache parse of upload %s: %d/%d lines parsed", upload_id, parsed, total)
    return ParseResult(total=total, parsed=parsed)
