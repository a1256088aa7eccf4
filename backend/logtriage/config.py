from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """Application settings loaded from environment or .env file."""
    APP_NAME: str = "LogTriage"
    VERSION: str = "1.0.0"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database configuration
    DATABASE_URL: str = "sqlite:///./logtriage.db"

    # Storage
    UPLOAD_DIR: str = "./uploads"
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024  # 50MB

    # Enrichment (MaxMind City database; enrichment is skipped when unset)
    GEOIP_DB_PATH: Optional[str] = None

    # Ingestion
    PARSE_BATCH_SIZE: int = 500
    SCHEMA_SAMPLE_ROWS: int = 30
    SCHEMA_CONFIDENCE_THRESHOLD: float = 0.45

    # Detector tunables
    DETECTION_BUCKET_MINUTES: int = 5
    D1_Z_THRESHOLD: float = 3.0
    D2_RARE_FRACTION: float = 0.02
    D3_MIN_EVENTS: int = 5
    D3_ERROR_RATIO: float = 0.5
    D4_P95_MULTIPLIER: int = 5
    D5_TRAVEL_WINDOW_HOURS: float = 2.0

    # Analytics
    SUMMARY_BUCKET_MINUTES: int = 5

    class Config:
        env_file = ".env"

settings = Settings()
