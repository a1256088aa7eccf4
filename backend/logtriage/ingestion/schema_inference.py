"""
Schema inference for tabular log exports with unfamiliar headers.

Each (header, role) pair is scored from the header name and from a sample of
the column's values; roles are then assigned greedily in a fixed order so the
result is reproducible for identical input.
"""
import logging
import re
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from logtriage.schemas import SchemaMapping
from logtriage.utils.heuristics import (
    is_missing, looks_like_email, looks_like_host_with_path, looks_like_http_method, looks_like_user_agent
)
from logtriage.utils.normalize import to_datetime

logger = logging.getLogger(__name__)

NAME_WEIGHT = 0.4
VALUE_WEIGHT = 0.6
MIN_ASSIGN_SCORE = 0.15
MAX_VALUES_PER_COLUMN = 20

# Iteration order is the tie-break order for greedy assignment
DEFAULT_ROLES = (
    "login", "cip", "host", "url", "method", "status", "bytes_out", "bytes_in",
    "useragent", "category", "action", "country", "city",
)
TIME_ROLE = "time"

ROLE_ALIASES: Dict[str, List[str]] = {
    "login": ["login", "user", "username"],
    "cip": ["cip", "src_ip", "source_ip", "clientip", "ip", "srcip"],
    "host": ["host", "domain", "site"],
    "url": ["url", "request", "uri", "path"],
    "method": ["method", "reqmethod", "http_method", "verb"],
    "status": ["status", "respcode", "status_code", "http_status"],
    "bytes_out": ["bytes_out", "bytesout", "reqsize", "sentbytes", "bytes"],
    "bytes_in": ["bytes_in", "bytesin", "respsize", "recvbytes"],
    "useragent": ["useragent", "ua", "user_agent"],
    "category": ["category", "categories"],
    "action": ["action", "decision"],
    "country": ["country"],
    "city": ["city"],
    TIME_ROLE: ["time", "datetime", "timestamp", "date", "eventtime", "ts"],
}

NUMERIC = re.compile(r'^[-+]?\d[\d, ]*$')
HOSTNAME = re.compile(r'^(?:[A-Za-z0-9\-]+\.)+[A-Za-z]{2,}(?::\d+)?$')
IPV4_LOOSE = re.compile(r'^\d{1,3}(?:\.\d{1,3}){3}$')
STATUS_CODE = re.compile(r'^[1-5][0-9][0-9]$')
CATEGORY_TEXT = re.compile(r'^[a-zA-Z0-9_\- ]+$')
ACTION_WORDS = re.compile(r'allow|deny|blocked|allowed|accept|drop', re.IGNORECASE)
COUNTRY_CODE = re.compile(r'^[A-Z]{2}$')
CITY_TEXT = re.compile(r'^[A-Za-z\-\s]+$')


def _host_value(v: str) -> float:
    # bare hostnames only; full URLs belong to the url role
    return 1.0 if HOSTNAME.match(v) else 0.0


def _url_value(v: str) -> float:
    if v.lower().startswith(("http://", "https://")) or v.startswith("/"):
        return 1.0
    return 1.0 if looks_like_host_with_path(v) else 0.0


def _category_value(v: str) -> float:
    return 0.2 if len(v) < 50 and CATEGORY_TEXT.match(v) else 0.0


def _time_value(v: str) -> float:
    return 1.0 if len(v) >= 8 and to_datetime(v) is not None else 0.0


# Validators score one value in 0..1; partial credit marks weak evidence
ROLE_VALIDATORS: Dict[str, Callable[[str], float]] = {
    "login": lambda v: 1.0 if looks_like_email(v) else 0.0,
    "cip": lambda v: 1.0 if IPV4_LOOSE.match(v) else 0.0,
    "host": _host_value,
    "url": _url_value,
    "method": lambda v: 1.0 if looks_like_http_method(v) else 0.0,
    "status": lambda v: 1.0 if STATUS_CODE.match(v) else 0.0,
    "bytes_out": lambda v: 1.0 if NUMERIC.match(v) else 0.0,
    "bytes_in": lambda v: 1.0 if NUMERIC.match(v) else 0.0,
    "useragent": lambda v: 1.0 if looks_like_user_agent(v) else 0.0,
    "category": _category_value,
    "action": lambda v: 1.0 if ACTION_WORDS.search(v) else 0.0,
    "country": lambda v: 1.0 if COUNTRY_CODE.match(v) else 0.0,
    "city": lambda v: 0.3 if CITY_TEXT.match(v) else 0.0,
    TIME_ROLE: _time_value,
}

FALLBACK_NAME_HINTS = {
    "status": (re.compile(r'status|resp'), 0.8),
    "bytes_out": (re.compile(r'byte|size|len'), 0.8),
    "bytes_in": (re.compile(r'byte|size|len'), 0.8),
    "useragent": (re.compile(r'agent|useragent|ua'), 0.9),
    TIME_ROLE: (re.compile(r'time|date|ts'), 0.8),
}


def name_similarity(header: str, role: str) -> float:
    """How much a header's name alone suggests a role."""
    h = header.strip().lower()
    for alias in ROLE_ALIASES.get(role, []):
        if h == alias:
            return 1.0
        # whole word, so 'user' does not match inside 'useragent'
        if re.search(r'\b' + re.escape(alias) + r'\b', h):
            return 0.95
        if h.startswith(alias) or h.endswith(alias):
            return 0.85
        if alias in h:
            return 0.6
    hint = FALLBACK_NAME_HINTS.get(role)
    if hint and hint[0].search(h):
        return hint[1]
    return 0.0


def value_plausibility(values: Sequence[str], role: str) -> float:
    validator = ROLE_VALIDATORS.get(role)
    if validator is None:
        return 0.0
    sample = list(values)[:MAX_VALUES_PER_COLUMN]
    if not sample:
        return 0.0
    return sum(validator(v) for v in sample) / len(sample)


def _column_values(headers: Sequence[str], rows: Sequence[Mapping[str, Optional[str]]]) -> Dict[str, List[str]]:
    columns: Dict[str, List[str]] = {h: [] for h in headers}
    for row in rows:
        for h in headers:
            v = row.get(h)
            if v is None or is_missing(v):
                continue
            columns[h].append(str(v).strip())
    return columns


def infer_schema(
    headers: Sequence[str],
    sample_rows: Sequence[Mapping[str, Optional[str]]],
    roles: Optional[Sequence[str]] = None,
) -> SchemaMapping:
    """
    Map CSV headers to semantic roles.

    Args:
        headers: Column names in file order
        sample_rows: Decoded rows (header -> value), typically the first 30
        roles: Candidate roles in priority order (default: the 13 standard roles)

    Returns:
        SchemaMapping with role -> header (or None), the header x role score
        matrix and the mean score of the assignments made
    """
    candidate_roles = list(roles) if roles else list(DEFAULT_ROLES)
    columns = _column_values(headers, sample_rows)

    scores: Dict[str, Dict[str, float]] = {}
    for h in headers:
        scores[h] = {}
        for role in candidate_roles:
            score = NAME_WEIGHT * name_similarity(h, role) + VALUE_WEIGHT * value_plausibility(columns[h], role)
            scores[h][role] = round(min(1.0, score), 6)

    mapping: Dict[str, Optional[str]] = {}
    consumed = set()
    for role in candidate_roles:
        best_header, best_score = None, 0.0
        for h in headers:
            if h in consumed:
                continue
            if scores[h][role] > best_score:
                best_header, best_score = h, scores[h][role]
        if best_header is not None and best_score > MIN_ASSIGN_SCORE:
            mapping[role] = best_header
            consumed.add(best_header)
        else:
            mapping[role] = None

    chosen = [scores[h][role] for role, h in mapping.items() if h is not None]
    confidence = sum(chosen) / len(chosen) if chosen else 0.0

    logger.debug("Schema inference over %d headers: confidence=%.3f mapping=%s", len(headers), confidence, mapping)
    return SchemaMapping(mapping=mapping, confidence=round(confidence, 6), scores=scores)
