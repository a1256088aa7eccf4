"""
Upload ingestion: picks a parser for the stored file, runs it, and tracks the
upload through RECEIVED -> PARSING -> PARSED | FAILED.
"""
import csv
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from logtriage.config import Settings, settings as default_settings
from logtriage.errors import (
    LogTriageError, ParseInProgress, PersistenceError, SourceUnavailable, UnsupportedFormat, UploadNotFound
)
from logtriage.ingestion.apache import parse_apache_stream
from logtriage.ingestion.classifier import SourceFormat, classify_source, first_non_empty_line
from logtriage.ingestion.csv_logs import parse_csv_stream
from logtriage.models import UploadStatus
from logtriage.schemas import EventFilter, ParseResult
from logtriage.storage.local import LocalFileStore
from logtriage.storage.stores import AnomalyStore, EventStore, UploadStore
from logtriage.utils.geoip import GeoIPLocator

logger = logging.getLogger(__name__)

class InflightRegistry:
    """Upload ids with a parse currently running in this process."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, upload_id: str) -> bool:
        with self._lock:
            if upload_id in self._ids:
                return False
            self._ids.add(upload_id)
            return True

    def release(self, upload_id: str):
        with self._lock:
            self._ids.discard(upload_id)

    def __contains__(self, upload_id: str) -> bool:
        return upload_id in self._ids

class IngestionService:
    """Parses stored uploads into normalized events, at most one parse per upload at a time."""

    def __init__(
        self,
        file_store: LocalFileStore,
        geoip: Optional[GeoIPLocator] = None,
        config: Optional[Settings] = None,
        registry: Optional[InflightRegistry] = None,
    ):
        self.file_store = file_store
        self.geoip = geoip
        self.config = config or default_settings
        self.registry = registry or InflightRegistry()

    @contextmanager
    def _exclusive(self, upload_id: str):
        if not self.registry.acquire(upload_id):
            raise ParseInProgress(upload_id)
        try:
            yield
        finally:
            self.registry.release(upload_id)

    def parse_upload(self, db: Session, upload_id: str, force: bool = False) -> ParseResult:
        """
        Parse one upload end to end.

        Args:
            db: Session; committed after every batch and on status changes
            upload_id: Upload to parse
            force: Re-parse even if the stored status says PARSING (recovery
                after a crashed process); an in-process parse is never interrupted

        Raises:
            UploadNotFound, ParseInProgress, SourceUnavailable, UnsupportedFormat,
            PersistenceError. Any failure after the upload is found, expected or
            not, is recorded on the upload as FAILED with the error text.
        """
        uploads = UploadStore(db)
        upload = uploads.get(upload_id)
        if upload is None:
            raise UploadNotFound(upload_id)

        with self._exclusive(upload_id):
            if upload.status == UploadStatus.PARSING and not force:
                raise ParseInProgress(upload_id)

            try:
                self._reset(db, upload_id)
                result = self._run(db, upload_id, upload.filename, upload.storage_uri)
            except LogTriageError as e:
                db.rollback()
                self._fail(db, upload_id, e)
                raise
            except SQLAlchemyError as e:
                db.rollback()
                self._fail(db, upload_id, e)
                raise PersistenceError(str(e)) from e
            except csv.Error as e:
                db.rollback()
                self._fail(db, upload_id, e)
                raise UnsupportedFormat(f"malformed CSV: {e}") from e
            except OSError as e:
                db.rollback()
                self._fail(db, upload_id, e)
                raise SourceUnavailable(str(e)) from e
            except Exception as e:
                db.rollback()
                self._fail(db, upload_id, e)
                raise

            uploads.update_status(upload_id, UploadStatus.PARSED, total=result.total, parsed=result.parsed)
            db.commit()
            logger.info("Upload %s parsed: %d/%d", upload_id, result.parsed, result.total)
            return result

    def _reset(self, db: Session, upload_id: str):
        # a retried parse replaces everything the previous attempt wrote
        AnomalyStore(db).delete_many(upload_id)
        EventStore(db).delete_many(EventFilter(upload_id=upload_id))
        UploadStore(db).update_status(upload_id, UploadStatus.PARSING, total=0, parsed=0, error_text=None)
        db.commit()

    def _fail(self, db: Session, upload_id: str, error: Exception):
        logger.error("Parse of upload %s failed: %s", upload_id, error)
        try:
            UploadStore(db).update_status(upload_id, UploadStatus.FAILED, error_text=str(error) or type(error).__name__)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Could not record failure for upload %s: %s", upload_id, e)

    def _sink(self, db: Session) -> Callable:
        events = EventStore(db)

        def write(batch):
            try:
                events.create_batch(batch)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"event batch flush failed: {e}") from e
        return write

    def _run(self, db: Session, upload_id: str, filename: str, locator: Optional[str]) -> ParseResult:
        if not locator:
            raise SourceUnavailable("no file stored for upload")

        with self.file_store.open_text(locator) as stream:
            sample = first_non_empty_line(stream)
        fmt = classify_source(filename, sample)
        logger.info("Upload %s (%s) classified as %s", upload_id, filename, fmt.value)

        if fmt is SourceFormat.TABULAR_CSV:
            return self._parse_csv(db, upload_id, locator)
        if fmt is SourceFormat.APACHE_COMBINED:
            return self._parse_apache(db, upload_id, locator)

        # unknown: try tabular first, then fall back to combined on a fresh stream
        try:
            return self._parse_csv(db, upload_id, locator)
        except (UnsupportedFormat, csv.Error) as e:
            logger.info("Upload %s is not tabular (%s); retrying as Apache combined", upload_id, e)
            db.rollback()
            EventStore(db).delete_many(EventFilter(upload_id=upload_id))
            db.commit()
            return self._parse_apache(db, upload_id, locator)

    def _parse_csv(self, db: Session, upload_id: str, locator: str) -> ParseResult:
        with self.file_store.open_text(locator) as stream:
            return parse_csv_stream(
                stream, upload_id, self._sink(db),
                geoip=self.geoip,
                batch_size=self.config.PARSE_BATCH_SIZE,
                sample_size=self.config.SCHEMA_SAMPLE_ROWS,
                confidence_threshold=self.config.SCHEMA_CONFIDENCE_THRESHOLD,
            )

    def _parse_apache(self, db: Session, upload_id: str, locator: str) -> ParseResult:
        with self.file_store.open_text(locator) as stream:
            return parse_apache_stream(
                stream, upload_id, self._sink(db),
                geoip=self.geoip,
                batch_size=self.config.PARSE_BATCH_SIZE,
            )
