import os
import shutil
import tempfile

from fastapi.testclient import TestClient

from logtriage.analysis.anomaly import AnomalyDetectionEngine
from logtriage.config import Settings
from logtriage.database import Base, get_db, init_db
from logtriage.ingestion.orchestrator import IngestionService
from logtriage.main import app
from logtriage.models import Event
from logtriage.services import get_detection, get_file_store, get_ingestion
from logtriage.storage.local import LocalFileStore

from fakes import apache_line, memory_engine, session_factory

engine = memory_engine()
TestingSessionLocal = session_factory(engine)

# Override get_db dependency
def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db

client = TestClient(app)

# Test data: eight combined lines and two that are not
TEST_LOGS = [apache_line(f"10.0.0.{i}", i, status=200 if i < 7 else 404) for i in range(1, 9)] + [
    "garbage",
    "more garbage",
]

PROXY_CSV = "\n".join([
    "time,login,cip,url,status,reqsize",
    "2024-01-01 10:00:00,alice@corp.example,10.0.0.1,https://a.example.com/x,200,1024",
    "2024-01-01 10:05:00,bob@corp.example,10.0.0.2,https://b.example.org/y,403,2048",
])

class TestLogTriageSystem:
    """End-to-end suite over the HTTP API"""

    def setup_method(self):
        """Setup test database and upload directory"""
        init_db(engine)
        self.db = TestingSessionLocal()
        self.root = tempfile.mkdtemp()
        self.files = LocalFileStore(self.root)
        self.config = Settings(PARSE_BATCH_SIZE=4)
        self.ingestion = IngestionService(self.files, config=self.config)

        app.dependency_overrides[get_file_store] = lambda: self.files
        app.dependency_overrides[get_ingestion] = lambda: self.ingestion
        app.dependency_overrides[get_detection] = lambda: AnomalyDetectionEngine(self.config)

    def teardown_method(self):
        """Cleanup test database"""
        self.db.close()
        Base.metadata.drop_all(bind=engine)
        shutil.rmtree(self.root, ignore_errors=True)
        for dependency in (get_file_store, get_ingestion, get_detection):
            app.dependency_overrides.pop(dependency, None)

    def _upload(self, filename="access.log", content="\n".join(TEST_LOGS)):
        files = {"file": (filename, content, "text/plain")}
        response = client.post("/api/uploads", files=files)
        assert response.status_code == 200
        return response.json()["id"]

    def _parsed_upload(self, **kwargs):
        upload_id = self._upload(**kwargs)
        response = client.post(f"/api/uploads/{upload_id}/parse")
        assert response.status_code == 200
        return upload_id

    def test_health(self):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_upload(self):
        """Test storing an upload"""
        upload_id = self._upload()

        response = client.get(f"/api/uploads/{upload_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["filename"] == "access.log"
        assert body["status"] == "RECEIVED"
        assert body["total_rows"] == 0

        listing = client.get("/api/uploads").json()
        assert [u["id"] for u in listing] == [upload_id]

    def test_empty_upload_rejected(self):
        files = {"file": ("empty.log", b"", "text/plain")}
        response = client.post("/api/uploads", files=files)
        assert response.status_code == 400

    def test_parse(self):
        """Test log ingestion and parsing"""
        upload_id = self._upload()

        response = client.post(f"/api/uploads/{upload_id}/parse")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "total": 10, "parsed": 8}

        body = client.get(f"/api/uploads/{upload_id}").json()
        assert body["status"] == "PARSED"
        assert (body["total_rows"], body["parsed_rows"]) == (10, 8)
        assert self.db.query(Event).filter(Event.upload_id == upload_id).count() == 8

    def test_parse_unknown_upload(self):
        response = client.post("/api/uploads/nope/parse")
        assert response.status_code == 404

    def test_parse_in_progress(self):
        upload_id = self._upload()
        self.ingestion.registry.acquire(upload_id)
        try:
            response = client.post(f"/api/uploads/{upload_id}/parse")
            assert response.status_code == 409

            response = client.delete(f"/api/uploads/{upload_id}")
            assert response.status_code == 409
        finally:
            self.ingestion.registry.release(upload_id)

    def test_parse_missing_file(self):
        upload_id = self._upload()
        shutil.rmtree(self.root)

        response = client.post(f"/api/uploads/{upload_id}/parse")
        assert response.status_code == 422

        body = client.get(f"/api/uploads/{upload_id}").json()
        assert body["status"] == "FAILED"
        assert body["error_text"]

    def test_csv_upload(self):
        upload_id = self._parsed_upload(filename="proxy.csv", content=PROXY_CSV)

        response = client.get(f"/api/uploads/{upload_id}/events", params={"actor": "bob@corp.example"})
        assert response.status_code == 200
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["domain"] == "b.example.org"
        assert items[0]["status"] == 403
        assert items[0]["bytes_out"] == 2048

    def test_anomaly_detection(self):
        """Test detection endpoints"""
        upload_id = self._parsed_upload()

        response = client.post(f"/api/uploads/{upload_id}/anomalies/detect")
        assert response.status_code == 200
        counts = response.json()["counts"]
        assert set(counts) == {
            "D1_rate_spike", "D2_rare_domain", "D3_error_ratio", "D4_egress_outlier", "D5_impossible_travel"
        }

        response = client.get(f"/api/uploads/{upload_id}/anomalies")
        assert response.status_code == 200
        assert len(response.json()) == sum(counts.values())

    def test_detect_unknown_upload(self):
        response = client.post("/api/uploads/nope/anomalies/detect")
        assert response.status_code == 404

    def test_summary(self):
        upload_id = self._parsed_upload()

        response = client.get(f"/api/uploads/{upload_id}/summary")
        assert response.status_code == 200
        summary = response.json()
        assert summary["total"] == 8
        assert summary["bucket_minutes"] == 5
        assert {"status": 200, "count": 6} in summary["status_counts"]
        assert {"status": 404, "count": 2} in summary["status_counts"]
        assert summary["method_counts"] == [{"method": "GET", "count": 8}]
        assert summary["bytes"]["bytes_out_sum"] == 8 * 2326
        assert [point["count"] for point in summary["series"]] == [8]

    def test_summary_unsupported_bucket(self):
        upload_id = self._parsed_upload()
        summary = client.get(f"/api/uploads/{upload_id}/summary", params={"bucket": 7}).json()
        assert summary["bucket_minutes"] == 5

    def test_events_paging_and_filters(self):
        upload_id = self._parsed_upload()

        page = client.get(f"/api/uploads/{upload_id}/events", params={"page": 2, "page_size": 3}).json()
        assert page["total"] == 8
        assert len(page["items"]) == 3
        assert [e["src_ip"] for e in page["items"]] == ["10.0.0.4", "10.0.0.5", "10.0.0.6"]

        errors = client.get(f"/api/uploads/{upload_id}/events", params={"status": "404"}).json()
        assert errors["total"] == 2

        one = client.get(f"/api/uploads/{upload_id}/events", params={"src_ip": "10.0.0.3"}).json()
        assert one["total"] == 1
        assert one["items"][0]["url_path"] == "/index.html"

    def test_timeline(self):
        upload_id = self._parsed_upload()
        timeline = client.get(f"/api/uploads/{upload_id}/timeline", params={"limit": 5}).json()
        assert len(timeline["items"]) == 5
        assert timeline["items"][0]["src_ip"] == "10.0.0.1"

    def test_schema_infer(self):
        payload = {
            "headers": ["usr", "clientip", "respcode"],
            "rows": [{"usr": "alice@corp.example", "clientip": "10.0.0.1", "respcode": "200"}],
        }
        response = client.post("/api/schema/infer", json=payload)
        assert response.status_code == 200
        body = response.json()
        assert body["mapping"]["cip"] == "clientip"
        assert body["mapping"]["status"] == "respcode"
        assert body["confidence"] > 0.45

    def test_delete_upload(self):
        upload_id = self._parsed_upload()
        other_id = self._parsed_upload()
        client.post(f"/api/uploads/{upload_id}/anomalies/detect")
        stored = [os.path.join(self.root, name) for name in os.listdir(self.root)]

        response = client.delete(f"/api/uploads/{upload_id}")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        assert client.get(f"/api/uploads/{upload_id}").status_code == 404
        assert client.get(f"/api/uploads/{other_id}").status_code == 200
        assert self.db.query(Event).filter(Event.upload_id == other_id).count() == 8
        assert self.db.query(Event).filter(Event.upload_id == upload_id).count() == 0
        assert sum(os.path.exists(p) for p in stored) == 1

    def test_delete_unknown_upload(self):
        response = client.delete("/api/uploads/nope")
        assert response.status_code == 404
