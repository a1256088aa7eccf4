#!/usr/bin/env python3
"""
LogTriage command line interface
Ingest log files, inspect CSV schema inference and run anomaly detection
against the configured database.
"""
import argparse
import csv
import json
import logging
import os
import sys
from itertools import islice

from logtriage.analysis.analytics import get_summary
from logtriage.analysis.anomaly import run_anomaly_detection
from logtriage.config import settings
from logtriage.database import SessionLocal, init_db
from logtriage.errors import LogTriageError
from logtriage.ingestion.csv_logs import read_csv_header
from logtriage.ingestion.schema_inference import infer_schema
from logtriage.services import ingestion
from logtriage.storage.stores import UploadStore

def _print(data):
    print(json.dumps(data, indent=2, default=str))

def ingest(path, detect):
    """Register a local file as an upload, parse it and optionally detect."""
    if not os.path.isfile(path):
        print(f"File not found: {path}", file=sys.stderr)
        return 1

    init_db()
    db = SessionLocal()
    try:
        upload = UploadStore(db).create(os.path.basename(path), os.path.abspath(path), owner="cli")
        db.commit()
        upload_id = upload.id
        result = ingestion.parse_upload(db, upload_id)
        output = {"upload_id": upload_id, "total": result.total, "parsed": result.parsed}
        if detect:
            output["anomalies"] = run_anomaly_detection(db, upload_id)
        _print(output)
        return 0
    except LogTriageError as e:
        print(f"Ingestion failed: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

def infer(path, rows):
    with open(path, newline="", encoding="utf-8", errors="replace") as f:
        reader = csv.DictReader(f)
        headers = read_csv_header(reader)
        sample = list(islice(reader, rows))
    result = infer_schema(headers, sample)
    _print({"mapping": result.mapping, "confidence": result.confidence})
    return 0

def detect(upload_id):
    init_db()
    db = SessionLocal()
    try:
        _print(run_anomaly_detection(db, upload_id))
        return 0
    except LogTriageError as e:
        print(f"Detection failed: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

def summary(upload_id, bucket):
    init_db()
    db = SessionLocal()
    try:
        _print(get_summary(db, upload_id, bucket))
        return 0
    finally:
        db.close()

def main():
    parser = argparse.ArgumentParser(description="LogTriage CLI - log normalization and anomaly triage")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ingest_parser = subparsers.add_parser("ingest", help="Parse a log file into the database")
    ingest_parser.add_argument("file", help="Log file (.csv, .log, .txt or unknown)")
    ingest_parser.add_argument("--detect", action="store_true", help="Run anomaly detection afterwards")

    infer_parser = subparsers.add_parser("infer", help="Show the inferred column mapping of a CSV")
    infer_parser.add_argument("file", help="CSV file with a header row")
    infer_parser.add_argument("--rows", type=int, default=settings.SCHEMA_SAMPLE_ROWS, help="Sample size")

    detect_parser = subparsers.add_parser("detect", help="Re-run anomaly detection for an upload")
    detect_parser.add_argument("upload_id")

    summary_parser = subparsers.add_parser("summary", help="Print analytics for an upload")
    summary_parser.add_argument("upload_id")
    summary_parser.add_argument("--bucket", type=int, default=settings.SUMMARY_BUCKET_MINUTES)

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    if args.command == "ingest":
        return ingest(args.file, args.detect)
    elif args.command == "infer":
        return infer(args.file, args.rows)
    elif args.command == "detect":
        return detect(args.upload_id)
    elif args.command == "summary":
        return summary(args.upload_id, args.bucket)
    parser.print_help()
    return 2

if __name__ == "__main__":
    sys.exit(main())
