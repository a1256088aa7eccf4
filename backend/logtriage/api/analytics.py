from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from logtriage.analysis.analytics import get_summary, get_timeline, list_events
from logtriage.config import settings
from logtriage.database import get_db
from logtriage.ingestion.schema_inference import infer_schema
from logtriage.schemas import EventFilter, SchemaInferRequest, SchemaMapping
from logtriage.storage.stores import UploadStore

router = APIRouter(prefix="/api", tags=["analytics"])

def _require_upload(db: Session, upload_id: str):
    if UploadStore(db).get(upload_id) is None:
        raise HTTPException(status_code=404, detail="not_found")

def _csv_list(value: Optional[str]):
    if not value:
        return None
    items = [s.strip() for s in value.split(",") if s.strip()]
    return items or None

@router.get("/uploads/{upload_id}/summary")
def upload_summary(upload_id: str, bucket: int = settings.SUMMARY_BUCKET_MINUTES, db: Session = Depends(get_db)):
    """Get aggregate analytics for one upload"""
    _require_upload(db, upload_id)
    return get_summary(db, upload_id, bucket)

@router.get("/uploads/{upload_id}/events")
def upload_events(
    upload_id: str,
    page: int = 1,
    page_size: int = 25,
    src_ip: Optional[str] = None,
    actor: Optional[str] = None,
    domain: Optional[str] = None,
    status: Optional[str] = None,
    method: Optional[str] = None,
    time_from: Optional[datetime] = None,
    time_to: Optional[datetime] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    _require_upload(db, upload_id)
    statuses = _csv_list(status)
    f = EventFilter(
        upload_id=upload_id,
        src_ip=src_ip,
        actor=actor,
        domain=domain,
        statuses=[int(s) for s in statuses if s.isdigit()] if statuses else None,
        methods=_csv_list(method),
        time_from=time_from,
        time_to=time_to,
        search=search,
    )
    return list_events(db, f, page, page_size)

@router.get("/uploads/{upload_id}/timeline")
def upload_timeline(upload_id: str, limit: int = 200, db: Session = Depends(get_db)):
    _require_upload(db, upload_id)
    return get_timeline(db, upload_id, limit)

@router.post("/schema/infer", response_model=SchemaMapping)
def schema_infer(request: SchemaInferRequest):
    """Introspect how a set of CSV headers would be mapped, without parsing anything"""
    return infer_schema(request.headers, request.rows, request.roles)
