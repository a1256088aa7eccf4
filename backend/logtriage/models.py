import datetime
import enum
import uuid

from sqlalchemy import (
    Column, DateTime, Enum, Float, ForeignKey, Integer, JSON, String, Text, TypeDecorator
)
from sqlalchemy.orm import relationship

from logtriage.database import Base


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back timezone-aware UTC datetimes."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=datetime.timezone.utc)


class BigIntText(TypeDecorator):
    """
    Unbounded integer persisted as decimal text.
    Byte counters from proxies can exceed 64 bits; no database integer or
    float column keeps them exact, so comparisons happen in Python.
    """
    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UploadStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PARSING = "PARSING"
    PARSED = "PARSED"
    FAILED = "FAILED"


class DetectorId(str, enum.Enum):
    RATE_SPIKE = "D1_rate_spike"
    RARE_DOMAIN = "D2_rare_domain"
    ERROR_RATIO = "D3_error_ratio"
    EGRESS_OUTLIER = "D4_egress_outlier"
    IMPOSSIBLE_TRAVEL = "D5_impossible_travel"


class Upload(Base):
    """One ingested log file and its parse lifecycle."""
    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(String(255), nullable=False)
    storage_uri = Column(String(1024), nullable=True)
    status = Column(Enum(UploadStatus), nullable=False, default=UploadStatus.RECEIVED, index=True)
    total_rows = Column(Integer, nullable=False, default=0)
    parsed_rows = Column(Integer, nullable=False, default=0)
    error_text = Column(Text, nullable=True)
    owner = Column(String(255), nullable=True, index=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Event(Base):
    """
    Unified normalized event.
    One row per parsed log line / CSV record, immutable once written.
    """
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(36), ForeignKey("uploads.id"), nullable=False, index=True)
    ts = Column(UTCDateTime, nullable=True, index=True)
    src_ip = Column(String(45), nullable=True, index=True)  # Supports IPv6
    dst_ip = Column(String(45), nullable=True)
    user_name = Column(String(255), nullable=True, index=True)
    url = Column(Text, nullable=True)
    domain = Column(String(255), nullable=True, index=True)
    method = Column(String(16), nullable=True)
    status = Column(Integer, nullable=True)
    category = Column(String(255), nullable=True)
    action = Column(String(64), nullable=True)
    bytes_in = Column(BigIntText, nullable=True)
    bytes_out = Column(BigIntText, nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    country = Column(String(64), nullable=True)
    city = Column(String(128), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    url_host = Column(String(255), nullable=True)
    url_path = Column(Text, nullable=True)
    url_tld = Column(String(64), nullable=True)
    hour_bucket = Column(UTCDateTime, nullable=True, index=True)
    day_bucket = Column(UTCDateTime, nullable=True, index=True)
    extras = Column(JSON, nullable=False, default=dict)
    raw_line = Column(Text, nullable=False)

    @property
    def actor(self):
        return self.user_name or self.src_ip or None


class Anomaly(Base):
    __tablename__ = "anomalies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(36), ForeignKey("uploads.id"), nullable=False, index=True)
    detector = Column(String(32), nullable=False, index=True)
    reason_text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    event = relationship("Event", lazy="joined")
