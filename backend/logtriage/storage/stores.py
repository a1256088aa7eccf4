"""
Session-backed stores for uploads, events and anomalies.

Stores stage work on the session but never commit: the orchestrator and the
detection engine own transaction boundaries.
"""
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from logtriage.models import Anomaly, Event, Upload, UploadStatus
from logtriage.schemas import EventFilter, EventRecord

_UNSET = object()


def _event_conditions(f: EventFilter) -> list:
    conditions = []
    if f.upload_id:
        conditions.append(Event.upload_id == f.upload_id)
    if f.actor:
        conditions.append(or_(
            Event.user_name == f.actor,
            and_(or_(Event.user_name.is_(None), Event.user_name == ""), Event.src_ip == f.actor),
        ))
    if f.src_ip:
        conditions.append(Event.src_ip == f.src_ip)
    if f.domain:
        conditions.append(Event.domain.ilike(f"%{f.domain}%"))
    if f.statuses:
        conditions.append(Event.status.in_(f.statuses))
    if f.methods:
        conditions.append(Event.method.in_(f.methods))
    if f.time_from:
        conditions.append(Event.ts >= f.time_from)
    if f.time_to:
        conditions.append(Event.ts <= f.time_to)
    if f.search:
        pattern = f"%{f.search}%"
        conditions.append(or_(
            Event.url.ilike(pattern),
            Event.domain.ilike(pattern),
            Event.user_agent.ilike(pattern),
        ))
    return conditions


class EventStore:
    def __init__(self, db: Session):
        self.db = db

    def create_batch(self, records: Sequence[EventRecord]) -> int:
        rows = [Event(**record.model_dump()) for record in records]
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def count(self, f: EventFilter) -> int:
        stmt = select(func.count(Event.id)).where(*_event_conditions(f))
        return self.db.execute(stmt).scalar_one()

    def find_many(
        self,
        f: EventFilter,
        order: str = "asc",
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> List[Event]:
        """Events matching the filter ordered by (ts, id); nulls in ts sort last."""
        ts_null_last = Event.ts.is_(None)
        if order == "desc":
            ordering = (ts_null_last, Event.ts.desc(), Event.id.desc())
        else:
            ordering = (ts_null_last, Event.ts.asc(), Event.id.asc())
        stmt = select(Event).where(*_event_conditions(f)).order_by(*ordering)
        if page_size is not None:
            stmt = stmt.offset((max(1, page) - 1) * page_size).limit(page_size)
        return list(self.db.execute(stmt).scalars())

    def delete_many(self, f: EventFilter) -> int:
        conditions = _event_conditions(f)
        if not conditions:
            raise ValueError("refusing to delete events without a filter")
        result = self.db.execute(delete(Event).where(*conditions))
        return result.rowcount


class UploadStore:
    def __init__(self, db: Session):
        self.db = db

    def create(self, filename: str, storage_uri: Optional[str], owner: Optional[str] = None) -> Upload:
        upload = Upload(filename=filename, storage_uri=storage_uri, owner=owner, status=UploadStatus.RECEIVED)
        self.db.add(upload)
        self.db.flush()
        return upload

    def get(self, upload_id: str) -> Optional[Upload]:
        return self.db.get(Upload, upload_id)

    def list(self, owner: Optional[str] = None) -> List[Upload]:
        stmt = select(Upload).order_by(Upload.created_at.desc())
        if owner is not None:
            stmt = stmt.where(Upload.owner == owner)
        return list(self.db.execute(stmt).scalars())

    def update_status(
        self,
        upload_id: str,
        status: UploadStatus,
        total: Optional[int] = None,
        parsed: Optional[int] = None,
        error_text=_UNSET,
    ) -> Optional[Upload]:
        upload = self.get(upload_id)
        if upload is None:
            return None
        upload.status = status
        if total is not None:
            upload.total_rows = total
        if parsed is not None:
            upload.parsed_rows = parsed
        if error_text is not _UNSET:
            upload.error_text = error_text
        self.db.flush()
        return upload

    def delete(self, upload_id: str) -> bool:
        """Remove an upload with all of its anomalies and events."""
        if self.get(upload_id) is None:
            return False
        self.db.execute(delete(Anomaly).where(Anomaly.upload_id == upload_id))
        self.db.execute(delete(Event).where(Event.upload_id == upload_id))
        self.db.execute(delete(Upload).where(Upload.id == upload_id))
        self.db.expunge_all()
        return True


class AnomalyStore:
    def __init__(self, db: Session):
        self.db = db

    def create_batch(self, anomalies: Iterable[Anomaly]) -> int:
        rows = list(anomalies)
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def delete_many(self, upload_id: str) -> int:
        result = self.db.execute(delete(Anomaly).where(Anomaly.upload_id == upload_id))
        return result.rowcount

    def find_many(self, upload_id: str, order: str = "desc") -> List[Anomaly]:
        created = Anomaly.created_at.desc() if order == "desc" else Anomaly.created_at.asc()
        tiebreak = Anomaly.id.desc() if order == "desc" else Anomaly.id.asc()
        stmt = select(Anomaly).where(Anomaly.upload_id == upload_id).order_by(created, tiebreak)
        return list(self.db.execute(stmt).unique().scalars())

    def count_by_detector(self, upload_id: str) -> dict:
        stmt = (
            select(Anomaly.detector, func.count(Anomaly.id))
            .where(Anomaly.upload_id == upload_id)
            .group_by(Anomaly.detector)
        )
        return {detector: count for detector, count in self.db.execute(stmt)}
