"""
Tabular (CSV) proxy log parser, e.g. Zscaler NSS web log exports.

Runs as sample -> decide -> stream: the first rows are buffered and used to
pick a FieldExtractor (static alias table, or the inferred mapping when schema
inference is confident), and that extractor is then applied unchanged to every
row of the stream.
"""
import csv
import json
import logging
from dataclasses import dataclass, field
from itertools import chain, islice
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from logtriage.errors import UnsupportedFormat
from logtriage.ingestion.batching import EventBatcher, EventSink
from logtriage.ingestion.schema_inference import DEFAULT_ROLES, TIME_ROLE, infer_schema
from logtriage.schemas import EventRecord, ParseResult, SchemaMapping
from logtriage.utils.geoip import GeoIPLocator
from logtriage.utils.heuristics import is_missing, looks_like_host_with_path, looks_like_user_agent
from logtriage.utils.normalize import derive_url_parts, to_big_int, to_datetime, to_status

logger = logging.getLogger(__name__)

CANDIDATE_TIME_KEYS = ("time", "datetime", "timestamp")

STATIC_ALIASES: Dict[str, List[str]] = {
    "login": ["login", "user", "username"],
    "cip": ["cip", "src_ip", "source_ip", "clientip"],
    "host": ["host", "domain"],
    "url": ["url"],
    "method": ["method", "reqmethod", "http_method"],
    "status": ["status", "respcode", "status_code"],
    "bytes_out": ["bytes_out", "bytesout", "reqsize", "sentbytes"],
    "bytes_in": ["bytes_in", "bytesin", "respsize", "recvbytes"],
    "useragent": ["useragent", "ua"],
    "category": ["category", "categories"],
    "action": ["action", "decision"],
    "country": ["country"],
    "city": ["city"],
}

OVERFLOW_KEY = "__overflow__"

@dataclass(frozen=True)
class FieldExtractor:
    """Resolved role -> header lookup for one stream."""
    columns: Mapping[str, Optional[str]]
    time_columns: Tuple[str, ...] = ()
    source: str = "aliases"
    confidence: float = 0.0

    def get(self, row: Mapping[str, Optional[str]], role: str) -> Optional[str]:
        header = self.columns.get(role)
        if header is None:
            return None
        value = row.get(header)
        if value is None or is_missing(value):
            return None
        return value

    def timestamp(self, row: Mapping[str, Optional[str]]) -> Optional[str]:
        for header in self.time_columns:
            value = row.get(header)
            if value and not is_missing(value):
                return value
        return self.get(row, TIME_ROLE)

def _time_columns(headers: Sequence[str]) -> Tuple[str, ...]:
    by_name = {h.lower(): h for h in reversed(headers)}
    return tuple(by_name[k] for k in CANDIDATE_TIME_KEYS if k in by_name)

def alias_extractor(headers: Sequence[str]) -> FieldExtractor:
    """Default extractor: first static alias present in the header row (case-insensitive)."""
    by_name = {h.lower(): h for h in reversed(headers)}
    columns: Dict[str, Optional[str]] = {}
    for role, aliases in STATIC_ALIASES.items():
        columns[role] = next((by_name[a] for a in aliases if a in by_name), None)
    return FieldExtractor(columns=columns, time_columns=_time_columns(headers), source="aliases")

def choose_extractor(
    headers: Sequence[str],
    sample: Sequence[Mapping[str, Optional[str]]],
    threshold: float = 0.45,
) -> Tuple[FieldExtractor, SchemaMapping]:
    """Decide once, from the sample, how fields are read for the whole stream."""
    inference = infer_schema(headers, sample, roles=DEFAULT_ROLES + (TIME_ROLE,))
    if inference.confidence > threshold:
        extractor = FieldExtractor(
            columns=dict(inference.mapping),
            time_columns=_time_columns(headers),
            source="inferred",
            confidence=inference.confidence,
        )
    else:
        extractor = alias_extractor(headers)
    return extractor, inference

@dataclass
class AmbiguousFields:
    url: Optional[str] = None
    host: Optional[str] = None
    user_agent: Optional[str] = None
    notes: List[str] = field(default_factory=list)

def disambiguate_fields(url: Optional[str], host: Optional[str], user_agent: Optional[str]) -> AmbiguousFields:
    """
    Fix values exported into the wrong column.
    A user-agent string in url/host moves to user_agent; a host that carries
    a path is really a URL.
    """
    out = AmbiguousFields(url=url, host=host, user_agent=user_agent)

    for name in ("url", "host"):
        value = getattr(out, name)
        if value and looks_like_user_agent(value):
            if not out.user_agent:
                out.user_agent = value
            setattr(out, name, None)
            out.notes.append(f"{name}->user_agent")

    if out.host and looks_like_host_with_path(out.host):
        if not out.url:
            out.url = out.host
        out.host = out.host.split('/', 1)[0].split(':', 1)[0]
        out.notes.append("host->url")

    return out

def row_to_event(
    row: Mapping[str, Optional[str]],
    extractor: FieldExtractor,
    upload_id: str,
    geoip: Optional[GeoIPLocator] = None,
) -> EventRecord:
    """Normalize one decoded CSV row with the extractor chosen for its stream."""
    fixed = disambiguate_fields(
        extractor.get(row, "url"), extractor.get(row, "host"), extractor.get(row, "useragent")
    )

    parts = derive_url_parts(fixed.url)
    if parts.host is None and fixed.url and looks_like_host_with_path(fixed.url):
        parts = derive_url_parts("http://" + fixed.url)

    src_ip = extractor.get(row, "cip")
    country = extractor.get(row, "country")
    city = extractor.get(row, "city")
    latitude = longitude = None
    geo = geoip.locate(src_ip) if geoip is not None and src_ip else None
    if geo is not None:
        country = country or geo.country
        city = city or geo.city
        latitude, longitude = geo.latitude, geo.longitude

    method = extractor.get(row, "method")
    extras = {str(k): ("" if v is None else str(v)) for k, v in row.items()}

    return EventRecord(
        upload_id=upload_id,
        ts=to_datetime(extractor.timestamp(row)),
        src_ip=src_ip,
        user_name=extractor.get(row, "login"),
        url=fixed.url,
        domain=fixed.host or parts.host,
        method=method.upper() if method else None,
        status=to_status(extractor.get(row, "status")),
        category=extractor.get(row, "category"),
        action=extractor.get(row, "action"),
        bytes_in=to_big_int(extractor.get(row, "bytes_in")),
        bytes_out=to_big_int(extractor.get(row, "bytes_out")),
        user_agent=fixed.user_agent,
        country=country,
        city=city,
        latitude=latitude,
        longitude=longitude,
        url_host=parts.host,
        url_path=parts.path,
        url_tld=parts.tld,
        extras=extras,
        raw_line=json.dumps(extras, ensure_ascii=False),
    )

def _is_malformed(row: Mapping[str, Optional[str]]) -> bool:
    if OVERFLOW_KEY in row:
        return True
    return all(v is None or v == "" for v in row.values())

def _clean_rows(reader: csv.DictReader) -> Iterator[Dict[str, Optional[str]]]:
    for row in reader:
        yield {k: (v.strip() if isinstance(v, str) else v) for k, v in row.items()}

def read_csv_header(reader: csv.DictReader) -> List[str]:
    fieldnames = reader.fieldnames
    if not fieldnames:
        return []
    headers = [h.strip().lstrip('\ufeff') for h in fieldnames]
    reader.fieldnames = headers
    return headers

def parse_csv_stream(
    lines: Iterable[str],
    upload_id: str,
    sink: EventSink,
    geoip: Optional[GeoIPLocator] = None,
    batch_size: int = 500,
    sample_size: int = 30,
    confidence_threshold: float = 0.45,
) -> ParseResult:
    """
    Parse a CSV log export with a header row.

    Raises:
        UnsupportedFormat: the header row has fewer than two columns
        csv.Error: the stream is not decodable as CSV
    """
    reader = csv.DictReader(lines, restkey=OVERFLOW_KEY)
    headers = read_csv_header(reader)
    if not headers:
        logger.info("CSV upload %s has no header row", upload_id)
        return ParseResult(total=0, parsed=0)
    if len(headers) < 2:
        raise UnsupportedFormat(f"not a tabular source: header row has {len(headers)} column(s)")

    rows = _clean_rows(reader)
    sample = list(islice(rows, sample_size))
    extractor, inference = choose_extractor(
        headers, [r for r in sample if not _is_malformed(r)], confidence_threshold
    )
    logger.info(
        "CSV upload %s: %d columns, inference confidence %.2f, using %s mapping",
        upload_id, len(headers), inference.confidence, extractor.source,
    )

    batcher = EventBatcher(sink, batch_size)
    total = parsed = 0
    for row in chain(sample, rows):
        total += 1
        if _is_malformed(row):
            logger.debug("Skipping malformed CSV row %d", total)
            continue
        batcher.add(row_to_event(row, extractor, upload_id, geoip))
        parsed += 1

    batcher.flush()
    logger.info("CSV parse of upload %s: %d/%d rows parsed", upload_id, parsed, total)
    return ParseResult(total=total, parsed=parsed)
