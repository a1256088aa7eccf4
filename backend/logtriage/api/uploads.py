import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from logtriage.config import settings
from logtriage.database import get_db
from logtriage.errors import LogTriageError, ParseInProgress, SourceUnavailable, UnsupportedFormat, UploadNotFound
from logtriage.ingestion.orchestrator import IngestionService
from logtriage.schemas import UploadOut
from logtriage.services import get_file_store, get_ingestion
from logtriage.storage.local import LocalFileStore
from logtriage.storage.stores import UploadStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/uploads", tags=["uploads"])

@router.post("", response_model=UploadOut)
async def create_upload(
    file: UploadFile = File(...),
    owner: Optional[str] = None,
    db: Session = Depends(get_db),
    file_store: LocalFileStore = Depends(get_file_store),
):
    """Store an uploaded log file and register it for parsing"""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="file missing or empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="file too large")

    path = file_store.save(file.filename, content)
    upload = UploadStore(db).create(file.filename or "upload", path, owner=owner)
    db.commit()
    logger.info("Stored upload %s (%s, %d bytes)", upload.id, upload.filename, len(content))
    return upload

@router.get("", response_model=List[UploadOut])
def list_uploads(owner: Optional[str] = None, db: Session = Depends(get_db)):
    return UploadStore(db).list(owner)

@router.get("/{upload_id}", response_model=UploadOut)
def get_upload(upload_id: str, db: Session = Depends(get_db)):
    upload = UploadStore(db).get(upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="not_found")
    return upload

@router.post("/{upload_id}/parse")
def parse_upload(
    upload_id: str,
    force: bool = False,
    db: Session = Depends(get_db),
    ingestion: IngestionService = Depends(get_ingestion),
):
    try:
        result = ingestion.parse_upload(db, upload_id, force=force)
    except UploadNotFound:
        raise HTTPException(status_code=404, detail="not_found")
    except ParseInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (SourceUnavailable, UnsupportedFormat) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LogTriageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "total": result.total, "parsed": result.parsed}

@router.delete("/{upload_id}")
def delete_upload(
    upload_id: str,
    db: Session = Depends(get_db),
    file_store: LocalFileStore = Depends(get_file_store),
    ingestion: IngestionService = Depends(get_ingestion),
):
    """Delete an upload together with its events, anomalies and stored file"""
    uploads = UploadStore(db)
    upload = uploads.get(upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="not_found")
    if upload_id in ingestion.registry:
        raise HTTPException(status_code=409, detail="upload is being parsed")

    locator = upload.storage_uri
    uploads.delete(upload_id)
    db.commit()
    if locator:
        file_store.delete(locator)
    return {"ok": True}
