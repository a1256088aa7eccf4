import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from logtriage.api import analytics, anomalies, uploads
from logtriage.config import settings
from logtriage.database import init_db
from logtriage.services import geoip

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not geoip.enabled:
        logger.warning("GEOIP_DB_PATH not set; geo fields will stay empty")
    logger.info("%s %s started", settings.APP_NAME, settings.VERSION)
    yield
    geoip.close()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Log normalization and statistical anomaly triage",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)
app.include_router(anomalies.router)
app.include_router(analytics.router)

@app.get("/health")
async def health():
    return {"status": "ok", "version": settings.VERSION, "geoip": geoip.enabled}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("logtriage.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
