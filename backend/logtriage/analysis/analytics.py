from collections import Counter
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from logtriage.models import Event
from logtriage.schemas import EventFilter
from logtriage.storage.stores import EventStore

ALLOWED_BUCKET_MINUTES = {1, 5, 10, 15, 30, 60}
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

def _event_row(e: Event) -> Dict:
    return {
        "id": e.id,
        "ts": e.ts,
        "date": e.ts.date().isoformat() if e.ts else None,
        "src_ip": e.src_ip,
        "user_name": e.user_name,
        "url": e.url,
        "domain": e.domain,
        "method": e.method,
        "status": e.status,
        "category": e.category,
        "action": e.action,
        "bytes_out": e.bytes_out,
        "bytes_in": e.bytes_in,
        "user_agent": e.user_agent,
        "url_host": e.url_host,
        "url_path": e.url_path,
        "url_tld": e.url_tld,
    }

def _percentiles(values: List[int]) -> Dict[str, Optional[float]]:
    if not values:
        return {"bytes_out_p50": None, "bytes_out_p90": None, "bytes_out_p99": None}
    # display figures only; exact comparisons live in the detectors
    arr = np.array([float(v) for v in values])
    p50, p90, p99 = np.percentile(arr, [50, 90, 99])
    return {"bytes_out_p50": float(p50), "bytes_out_p90": float(p90), "bytes_out_p99": float(p99)}

def get_summary(db: Session, upload_id: str, bucket_minutes: int = 5) -> Dict:
    """Aggregate view of one upload: top talkers, status/method mix, bytes and a time series."""
    if bucket_minutes not in ALLOWED_BUCKET_MINUTES:
        bucket_minutes = 5

    events = EventStore(db).find_many(EventFilter(upload_id=upload_id))

    src_counter = Counter(e.src_ip for e in events if e.src_ip)
    domain_counter = Counter(e.domain for e in events if e.domain)
    status_counter = Counter(e.status for e in events)
    method_counter = Counter(e.method for e in events)

    bytes_out = [e.bytes_out for e in events if e.bytes_out is not None]
    bytes_in = [e.bytes_in for e in events if e.bytes_in is not None]

    timestamps = pd.Series([e.ts for e in events if e.ts is not None], dtype="datetime64[ns, UTC]")
    series = []
    if not timestamps.empty:
        counts = timestamps.dt.floor(f"{bucket_minutes}min").value_counts().sort_index()
        series = [{"bucket": bucket.to_pydatetime(), "count": int(c)} for bucket, c in counts.items()]

    return {
        "total": len(events),
        "bucket_minutes": bucket_minutes,
        "top_src_ip": [{"src_ip": ip, "count": c} for ip, c in src_counter.most_common(10)],
        "top_domains": [{"domain": d, "count": c} for d, c in domain_counter.most_common(10)],
        "status_counts": [{"status": s, "count": c} for s, c in status_counter.most_common()],
        "method_counts": [{"method": m, "count": c} for m, c in method_counter.most_common()],
        "bytes": {
            "bytes_out_sum": sum(bytes_out) if bytes_out else None,
            "bytes_in_sum": sum(bytes_in) if bytes_in else None,
            **_percentiles(bytes_out),
        },
        "series": series,
    }

def list_events(db: Session, f: EventFilter, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Dict:
    page = max(1, page)
    page_size = min(MAX_PAGE_SIZE, max(1, page_size))
    store = EventStore(db)
    total = store.count(f)
    items = store.find_many(f, page=page, page_size=page_size)
    return {"total": total, "page": page, "page_size": page_size, "items": [_event_row(e) for e in items]}

def get_timeline(db: Session, upload_id: str, limit: int = 200) -> Dict:
    items = EventStore(db).find_many(EventFilter(upload_id=upload_id), page=1, page_size=max(1, limit))
    return {"items": [_event_row(e) for e in items], "limit": limit}
