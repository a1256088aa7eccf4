"""
Process-wide collaborators, built once at startup and handed to routes as
FastAPI dependencies so tests can override them.
"""
from logtriage.analysis.anomaly import AnomalyDetectionEngine
from logtriage.config import settings
from logtriage.ingestion.orchestrator import IngestionService
from logtriage.storage.local import LocalFileStore
from logtriage.utils.geoip import GeoIPCache, GeoIPLocator

geoip_cache = GeoIPCache()
geoip = GeoIPLocator(settings.GEOIP_DB_PATH, geoip_cache)
file_store = LocalFileStore(settings.UPLOAD_DIR)
ingestion = IngestionService(file_store, geoip, settings)
detection = AnomalyDetectionEngine(settings)

def get_file_store() -> LocalFileStore:
    return file_store

def get_ingestion() -> IngestionService:
    return ingestion

def get_detection() -> AnomalyDetectionEngine:
    return detection
