from pydantic import BaseModel, Field, model_validator
from typing import Dict, List, Optional
from datetime import datetime

from logtriage.models import UploadStatus
from logtriage.utils.normalize import ensure_utc, truncate_to_day, truncate_to_hour

# Canonical event shape every parser produces (matches database model)
class EventRecord(BaseModel):
    upload_id: str
    ts: Optional[datetime] = None
    src_ip: Optional[str] = None
    dst_ip: Optional[str] = None
    user_name: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    category: Optional[str] = None
    action: Optional[str] = None
    bytes_in: Optional[int] = None
    bytes_out: Optional[int] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    url_host: Optional[str] = None
    url_path: Optional[str] = None
    url_tld: Optional[str] = None
    hour_bucket: Optional[datetime] = None
    day_bucket: Optional[datetime] = None
    extras: Dict[str, str] = Field(default_factory=dict)
    raw_line: str

    @model_validator(mode="after")
    def derive_buckets(self):
        # buckets always follow ts; parsers never set them directly
        self.ts = ensure_utc(self.ts)
        self.hour_bucket = truncate_to_hour(self.ts)
        self.day_bucket = truncate_to_day(self.ts)
        return self

class SchemaMapping(BaseModel):
    mapping: Dict[str, Optional[str]]
    confidence: float
    scores: Dict[str, Dict[str, float]]

class ParseResult(BaseModel):
    total: int
    parsed: int

# API Request/Response Models
class UploadOut(BaseModel):
    id: str
    filename: str
    status: UploadStatus
    total_rows: int
    parsed_rows: int
    error_text: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class EventSummary(BaseModel):
    id: int
    ts: Optional[datetime] = None
    src_ip: Optional[str] = None
    user_name: Optional[str] = None
    domain: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    bytes_out: Optional[int] = None

    class Config:
        from_attributes = True

class AnomalyOut(BaseModel):
    id: int
    detector: str
    reason_text: str
    confidence: float
    created_at: Optional[datetime] = None
    event: Optional[EventSummary] = None

    class Config:
        from_attributes = True

class EventFilter(BaseModel):
    upload_id: Optional[str] = None
    actor: Optional[str] = None
    src_ip: Optional[str] = None
    domain: Optional[str] = None
    statuses: Optional[List[int]] = None
    methods: Optional[List[str]] = None
    time_from: Optional[datetime] = None
    time_to: Optional[datetime] = None
    search: Optional[str] = None

class SchemaInferRequest(BaseModel):
    headers: List[str]
    rows: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    roles: Optional[List[str]] = None
