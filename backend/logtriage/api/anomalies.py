from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from logtriage.analysis.anomaly import AnomalyDetectionEngine
from logtriage.database import get_db
from logtriage.errors import DetectionError, UploadNotFound
from logtriage.schemas import AnomalyOut
from logtriage.services import get_detection
from logtriage.storage.stores import AnomalyStore, UploadStore

router = APIRouter(prefix="/api/uploads", tags=["anomalies"])

@router.post("/{upload_id}/anomalies/detect")
def detect_anomalies(
    upload_id: str,
    db: Session = Depends(get_db),
    engine: AnomalyDetectionEngine = Depends(get_detection),
):
    """Recompute all anomalies for an upload"""
    try:
        counts = engine.run(db, upload_id)
    except UploadNotFound:
        raise HTTPException(status_code=404, detail="not_found")
    except DetectionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "counts": counts}

@router.get("/{upload_id}/anomalies", response_model=List[AnomalyOut])
def list_anomalies(upload_id: str, db: Session = Depends(get_db)):
    if UploadStore(db).get(upload_id) is None:
        raise HTTPException(status_code=404, detail="not_found")
    return AnomalyStore(db).find_many(upload_id, order="desc")
