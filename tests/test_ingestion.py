import io
import os
import shutil
import tempfile
from datetime import datetime, timezone

import pytest

from logtriage.config import Settings
from logtriage.database import Base, init_db
from logtriage.errors import (
    ParseInProgress, PersistenceError, SourceUnavailable, UnsupportedFormat, UploadNotFound
)
from logtriage.ingestion.apache import parse_apache_line, parse_apache_stream
from logtriage.ingestion.batching import EventBatcher
from logtriage.ingestion.csv_logs import alias_extractor, disambiguate_fields, parse_csv_stream, row_to_event
from logtriage.ingestion.orchestrator import IngestionService
from logtriage.models import Event, UploadStatus
from logtriage.schemas import EventFilter, EventRecord
from logtriage.storage.local import LocalFileStore
from logtriage.storage.stores import EventStore, UploadStore
from logtriage.utils.geoip import GeoIPLocator

from fakes import FakeCityReader, apache_line, memory_engine, session_factory

UTC = timezone.utc

APACHE_LOG = [apache_line(f"10.0.0.{i}", i) for i in range(1, 9)] + [
    "this is not an access log line",
    '10.0.0.9 - - [bad date] "GET / HTTP/1.1" abc 0',
]

PROXY_CSV = "\n".join([
    "time,login,cip,url,status,reqsize",
    "2024-01-01 10:00:00,alice@corp.example,10.0.0.1,https://a.example.com/x,200,1024",
    "2024-01-01 10:05:00,bob@corp.example,10.0.0.2,https://b.example.org/y,404,99999999999999999999999",
    "1,2,3,4,5,6,7",
    ",,,,,",
]) + "\n"

def collect():
    batches = []
    return batches, batches.append

class TestApacheParser:
    """Apache combined access log parsing"""

    def test_stream_counts(self):
        batches, sink = collect()
        result = parse_apache_stream(APACHE_LOG, "u1", sink)

        assert result.total == 10
        assert result.parsed == 8
        assert sum(len(b) for b in batches) == 8

    def test_blank_lines_not_counted(self):
        _, sink = collect()
        result = parse_apache_stream(["", APACHE_LOG[0], "   ", APACHE_LOG[1]], "u1", sink)
        assert result.total == 2
        assert result.parsed == 2

    def test_line_fields(self):
        event = parse_apache_line(apache_line("1.2.3.4", 36), "u1")

        assert event.src_ip == "1.2.3.4"
        assert event.ts == datetime(2000, 10, 10, 20, 55, 36, tzinfo=UTC)
        assert event.method == "GET"
        assert event.status == 200
        assert event.bytes_out == 2326
        assert event.url_path == "/index.html"
        assert event.user_agent == "Mozilla/5.0 (X11; Linux x86_64)"
        assert event.referrer is None
        assert event.extras["proto"] == "HTTP/1.1"

    def test_buckets_follow_utc_timestamp(self):
        event = parse_apache_line(apache_line("1.2.3.4", 36), "u1")
        assert event.hour_bucket == datetime(2000, 10, 10, 20, 0, tzinfo=UTC)
        assert event.day_bucket == datetime(2000, 10, 10, tzinfo=UTC)
        assert event.day_bucket.date() == event.ts.date()

    def test_absolute_request_target(self):
        event = parse_apache_line(apache_line("1.2.3.4", 1, path="http://files.example.net/drop"), "u1")
        assert event.url == "http://files.example.net/drop"
        assert event.domain == "files.example.net"
        assert event.url_tld == "net"

    def test_dash_size_is_null(self):
        event = parse_apache_line(apache_line("1.2.3.4", 1, status=304, size="-"), "u1")
        assert event.status == 304
        assert event.bytes_out is None

    def test_geo_enrichment(self):
        reader = FakeCityReader({"1.2.3.4": ("DE", "Berlin", 52.52, 13.4)})
        geoip = GeoIPLocator(reader=reader)

        event = parse_apache_line(apache_line("1.2.3.4", 1), "u1", geoip)
        assert event.country == "DE"
        assert event.city == "Berlin"
        assert event.latitude == pytest.approx(52.52)

        other = parse_apache_line(apache_line("9.9.9.9", 1), "u1", geoip)
        assert other.country is None

class TestCsvParser:
    """Tabular proxy export parsing"""

    def test_stream_counts_and_fields(self):
        batches, sink = collect()
        result = parse_csv_stream(io.StringIO(PROXY_CSV), "u1", sink)

        assert result.total == 4
        assert result.parsed == 2
        events = [e for b in batches for e in b]
        alice, bob = events
        assert alice.user_name == "alice@corp.example"
        assert alice.src_ip == "10.0.0.1"
        assert alice.domain == "a.example.com"
        assert alice.url_path == "/x"
        assert alice.ts == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
        assert alice.extras["reqsize"] == "1024"
        assert bob.status == 404
        assert bob.bytes_out == 99999999999999999999999

    def test_alias_mapping_gives_same_fields(self):
        batches, sink = collect()
        parse_csv_stream(io.StringIO(PROXY_CSV), "u1", sink, confidence_threshold=1.0)
        alice = batches[0][0]
        assert alice.user_name == "alice@corp.example"
        assert alice.src_ip == "10.0.0.1"
        assert alice.bytes_out == 1024
        assert alice.ts == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)

    def test_empty_stream(self):
        batches, sink = collect()
        result = parse_csv_stream(io.StringIO(""), "u1", sink)
        assert (result.total, result.parsed) == (0, 0)
        assert batches == []

    def test_single_column_is_not_tabular(self):
        _, sink = collect()
        with pytest.raises(UnsupportedFormat):
            parse_csv_stream(io.StringIO("hello\nworld\n"), "u1", sink)

    def test_bom_in_header(self):
        batches, sink = collect()
        text = "\ufefflogin,cip\nalice@corp.example,10.0.0.1\n"
        parse_csv_stream(io.StringIO(text), "u1", sink)
        assert batches[0][0].user_name == "alice@corp.example"

    def test_disambiguation(self):
        fixed = disambiguate_fields(
            url="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36",
            host="portal.example.com/login",
            user_agent=None,
        )
        assert fixed.user_agent.startswith("Mozilla/5.0")
        assert fixed.url == "portal.example.com/login"
        assert fixed.host == "portal.example.com"
        assert fixed.notes == ["url->user_agent", "host->url"]

    def test_row_with_misplaced_fields(self):
        headers = ["user", "host", "url", "useragent"]
        row = {
            "user": "alice",
            "host": "portal.example.com/login",
            "url": "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
            "useragent": "",
        }
        event = row_to_event(row, alias_extractor(headers), "u1")

        assert event.user_agent == "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"
        assert event.url == "portal.example.com/login"
        assert event.domain == "portal.example.com"
        assert event.url_host == "portal.example.com"
        assert event.url_path == "/login"

    def test_existing_user_agent_kept(self):
        fixed = disambiguate_fields("Mozilla/5.0 (X11; Linux x86_64)", None, "curl/8.4.0-DEV")
        assert fixed.user_agent == "curl/8.4.0-DEV"
        assert fixed.url is None

class TestBatching:
    """Event batch flushing"""

    def _record(self, i):
        return EventRecord(upload_id="u1", raw_line=f"line {i}")

    def test_fixed_size_batches(self):
        batches, sink = collect()
        batcher = EventBatcher(sink, batch_size=2)
        for i in range(5):
            batcher.add(self._record(i))
        batcher.flush()

        assert [len(b) for b in batches] == [2, 2, 1]
        assert batcher.flushed == 5

    def test_sink_failure(self):
        def broken(batch):
            raise RuntimeError("disk full")

        batcher = EventBatcher(broken, batch_size=1)
        with pytest.raises(PersistenceError):
            batcher.add(self._record(0))

class BrokenSinkService(IngestionService):
    def _sink(self, db):
        def write(batch):
            raise PersistenceError("event batch flush failed: database is locked")
        return write

class CrashingService(IngestionService):
    def _run(self, db, upload_id, filename, locator):
        raise RuntimeError("parser crashed")

class TestIngestionService:
    """Upload parse lifecycle"""

    def setup_method(self):
        self.engine = memory_engine()
        init_db(self.engine)
        self.db = session_factory(self.engine)()
        self.root = tempfile.mkdtemp()
        self.files = LocalFileStore(self.root)
        self.config = Settings(PARSE_BATCH_SIZE=3)
        self.service = IngestionService(self.files, config=self.config)

    def teardown_method(self):
        self.db.close()
        Base.metadata.drop_all(bind=self.engine)
        shutil.rmtree(self.root, ignore_errors=True)

    def _upload(self, filename, text):
        path = self.files.save(filename, text.encode("utf-8"))
        upload = UploadStore(self.db).create(filename, path)
        self.db.commit()
        return upload.id

    def _events(self, upload_id):
        return EventStore(self.db).find_many(EventFilter(upload_id=upload_id))

    def test_apache_upload(self):
        upload_id = self._upload("access.log", "\n".join(APACHE_LOG) + "\n")
        result = self.service.parse_upload(self.db, upload_id)

        assert (result.total, result.parsed) == (10, 8)
        upload = UploadStore(self.db).get(upload_id)
        assert upload.status == UploadStatus.PARSED
        assert (upload.total_rows, upload.parsed_rows) == (10, 8)
        assert upload.error_text is None

        events = self._events(upload_id)
        assert len(events) == 8
        for e in events:
            assert e.day_bucket == e.ts.replace(hour=0, minute=0, second=0, microsecond=0)

    def test_csv_upload_keeps_big_byte_counts(self):
        upload_id = self._upload("proxy.csv", PROXY_CSV)
        self.service.parse_upload(self.db, upload_id)

        self.db.expire_all()
        values = sorted(e.bytes_out for e in self._events(upload_id))
        assert values == [1024, 99999999999999999999999]

    def test_reparse_replaces_events(self):
        upload_id = self._upload("access.log", "\n".join(APACHE_LOG))
        self.service.parse_upload(self.db, upload_id)
        self.service.parse_upload(self.db, upload_id)
        assert len(self._events(upload_id)) == 8

    def test_unknown_extension_tabular(self):
        upload_id = self._upload("export.dat", PROXY_CSV)
        result = self.service.parse_upload(self.db, upload_id)
        assert result.parsed == 2

    def test_unknown_extension_falls_back_to_apache(self):
        upload_id = self._upload("blob.dat", "hello\nworld\n")
        result = self.service.parse_upload(self.db, upload_id)

        assert (result.total, result.parsed) == (2, 0)
        assert UploadStore(self.db).get(upload_id).status == UploadStatus.PARSED

    def test_missing_upload(self):
        with pytest.raises(UploadNotFound):
            self.service.parse_upload(self.db, "does-not-exist")

    def test_missing_file_marks_failed(self):
        upload_id = self._upload("access.log", APACHE_LOG[0])
        os.remove(UploadStore(self.db).get(upload_id).storage_uri)

        with pytest.raises(SourceUnavailable):
            self.service.parse_upload(self.db, upload_id)

        upload = UploadStore(self.db).get(upload_id)
        assert upload.status == UploadStatus.FAILED
        assert "file not found" in upload.error_text

    def test_flush_failure_marks_failed(self):
        service = BrokenSinkService(self.files, config=self.config)
        upload_id = self._upload("access.log", "\n".join(APACHE_LOG))

        with pytest.raises(PersistenceError):
            service.parse_upload(self.db, upload_id)

        upload = UploadStore(self.db).get(upload_id)
        assert upload.status == UploadStatus.FAILED
        assert "database is locked" in upload.error_text
        assert upload_id not in service.registry

    def test_concurrent_parse_rejected(self):
        upload_id = self._upload("access.log", APACHE_LOG[0])
        assert self.service.registry.acquire(upload_id)
        try:
            with pytest.raises(ParseInProgress):
                self.service.parse_upload(self.db, upload_id)
        finally:
            self.service.registry.release(upload_id)

        assert UploadStore(self.db).get(upload_id).status == UploadStatus.RECEIVED

    def test_stale_parsing_status_needs_force(self):
        upload_id = self._upload("access.log", APACHE_LOG[0])
        UploadStore(self.db).update_status(upload_id, UploadStatus.PARSING)
        self.db.commit()

        with pytest.raises(ParseInProgress):
            self.service.parse_upload(self.db, upload_id)

        result = self.service.parse_upload(self.db, upload_id, force=True)
        assert result.parsed == 1
        assert UploadStore(self.db).get(upload_id).status == UploadStatus.PARSED

    def test_geoip_results_are_cached(self):
        reader = FakeCityReader({"10.0.0.1": ("US", "Boston", 42.36, -71.06)})
        service = IngestionService(self.files, geoip=GeoIPLocator(reader=reader), config=self.config)
        lines = [apache_line("10.0.0.1", s) for s in range(4)] + [apache_line("10.0.0.2", 5)]
        upload_id = self._upload("access.log", "\n".join(lines))

        service.parse_upload(self.db, upload_id)

        assert reader.lookups == ["10.0.0.1", "10.0.0.2"]
        countries = [e.country for e in self._events(upload_id)]
        assert countries == ["US", "US", "US", "US", None]

    def test_delete_leaves_other_uploads(self):
        keep = self._upload("a.log", "\n".join(APACHE_LOG))
        drop = self._upload("b.log", "\n".join(APACHE_LOG))
        self.service.parse_upload(self.db, keep)
        self.service.parse_upload(self.db, drop)

        assert UploadStore(self.db).delete(drop)
        self.db.commit()

        assert UploadStore(self.db).get(drop) is None
        assert len(self._events(drop)) == 0
        assert len(self._events(keep)) == 8
        assert self.db.query(Event).count() == 8

    def test_unexpected_error_marks_failed(self):
        upload_id = self._upload("access.log", "\n".join(APACHE_LOG))

        with pytest.raises(RuntimeError):
            CrashingService(self.files, config=self.config).parse_upload(self.db, upload_id)

        upload = UploadStore(self.db).get(upload_id)
        assert upload.status == UploadStatus.FAILED
        assert upload.error_text == "parser crashed"

        result = self.service.parse_upload(self.db, upload_id)
        assert result.parsed == 8

    def test_oversized_byte_counter(self):
        text = "\n".join([
            "time,login,cip,url,status,reqsize",
            "2024-01-01 10:00:00,alice@corp.example,10.0.0.1,https://a.example.com/x,200," + "9" * 5000,
        ]) + "\n"
        upload_id = self._upload("proxy.csv", text)

        result = self.service.parse_upload(self.db, upload_id)

        assert (result.total, result.parsed) == (1, 1)
        assert UploadStore(self.db).get(upload_id).status == UploadStatus.PARSED

    def test_out_of_range_status_is_dropped(self):
        text = "\n".join([
            "time,login,cip,url,status,reqsize",
            "2024-01-01 10:00:00,alice@corp.example,10.0.0.1,https://a.example.com/x,200,1024",
            "2024-01-01 10:05:00,bob@corp.example,10.0.0.2,https://b.example.org/y,99999999999999999999,2048",
        ]) + "\n"
        upload_id = self._upload("proxy.csv", text)

        result = self.service.parse_upload(self.db, upload_id)

        assert (result.total, result.parsed) == (2, 2)
        assert UploadStore(self.db).get(upload_id).status == UploadStatus.PARSED
        by_user = {e.user_name: e.status for e in self._events(upload_id)}
        assert by_user == {"alice@corp.example": 200, "bob@corp.example": None}
