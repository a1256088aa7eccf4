"""
Error taxonomy for ingestion and detection.

Per-record problems never raise; they only show up as the gap between an
upload's total and parsed counters. Everything here is per-upload or per-run.
"""


class LogTriageError(Exception):
    """Base class for all domain errors."""


class UploadNotFound(LogTriageError):
    def __init__(self, upload_id: str):
        super().__init__(f"upload not found: {upload_id}")
        self.upload_id = upload_id


class SourceUnavailable(LogTriageError):
    """The stored file behind an upload is missing or unreadable."""


class UnsupportedFormat(LogTriageError):
    """A parser was handed a stream it cannot interpret."""


class PersistenceError(LogTriageError):
    """A batch flush to the event store failed; the parse is aborted."""


class ParseInProgress(LogTriageError):
    def __init__(self, upload_id: str):
        super().__init__(f"upload {upload_id} is already being parsed")
        self.upload_id = upload_id


class DetectionError(LogTriageError):
    """A detector failed; no anomalies were written for the run."""
