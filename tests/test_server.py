import json
import threading

import pytest

from bizdir.core.exceptions import NetworkError, NetworkErrorKind, StorageUnavailable
from bizdir.core.progress import ProgressTracker
from bizdir.jobs import ingest, server
from bizdir.storage.sqlite_store import SQLiteAdapter


class DummyExecutor:
    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append(args)
        fn(*args)


class BrokenAdapter:
    name = "sqlite"

    def count(self, *args, **kwargs):
        raise StorageUnavailable("sqlite", "database is locked")

    def query(self, *args, **kwargs):
        raise StorageUnavailable("sqlite", "database is locked")


def fake_fetch(query):
    if query == "broken":
        raise NetworkError(NetworkErrorKind.SERVER_DOWN, "503 from upstream")
    return [{"place_id": f"{query}-1", "name": f"{query} office", "rating": 4.2, "user_ratings_total": 3}]


@pytest.fixture
def adapter(tmp_path, sample_businesses):
    store = SQLiteAdapter(str(tmp_path / "businesses.db"))
    for business in sample_businesses:
        store.upsert(business)
    return store


@pytest.fixture
def client(monkeypatch, adapter):
    monkeypatch.setenv("INGEST_DELAY_SECONDS", "0")
    monkeypatch.setenv("GOOGLE_API_KEY", "key")
    executor = DummyExecutor()
    monkeypatch.setattr(server, "_adapter", adapter)
    monkeypatch.setattr(server, "_executor", executor)
    monkeypatch.setattr(server, "_tracker", ProgressTracker())
    monkeypatch.setattr(server, "_batch_lock", threading.Lock())
    monkeypatch.setattr(server, "google_places_fetcher", lambda settings: fake_fetch)
    test_client = server.app.test_client()
    test_client.executor = executor
    return test_client


def test_health_endpoint(client):
    response = client.get("/health")
    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["businessCount"] == 8


def test_health_reports_disconnected_store(client, monkeypatch):
    monkeypatch.setattr(server, "_adapter", BrokenAdapter())
    response = client.get("/health")
    assert response.status_code == 500
    assert response.get_json()["database"] == "disconnected"


def test_list_businesses_pagination(client):
    response = client.get("/businesses?page=2&limit=3")
    body = response.get_json()
    assert response.status_code == 200
    assert body["total"] == 7
    assert body["page"] == 2
    assert body["totalPages"] == 3
    assert body["limit"] == 3
    assert [item["id"] for item in body["businesses"]] == ["b", "g", "h"]


def test_list_businesses_filters_and_all(client):
    body = client.get("/businesses?category=Overseas%20Education%20Dubai").get_json()
    assert [item["id"] for item in body["businesses"]] == ["h"]

    body = client.get("/businesses?all=true&limit=2").get_json()
    assert body["limit"] == body["total"] == 7
    assert body["totalPages"] == 1


@pytest.mark.parametrize("query", ["page=abc", "limit=0", "page=-1"])
def test_list_businesses_rejects_bad_paging(client, query):
    response = client.get(f"/businesses?{query}")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid request"


def test_list_businesses_reports_store_failure(client, monkeypatch):
    monkeypatch.setattr(server, "_adapter", BrokenAdapter())
    response = client.get("/businesses")
    assert response.status_code == 500
    assert response.get_json()["error"] == "Database query failed"


def test_get_business_by_id(client):
    assert client.get("/businesses/c").get_json()["name"] == "Gamma Travel"
    assert client.get("/businesses/missing").status_code == 404


def test_save_business_upserts(client, adapter):
    payload = {"place_id": "new-1", "name": "New Visa Centre", "google_rating": 4.9, "reviews_count": 8}

    first = client.post("/businesses", json=payload)
    second = client.post("/businesses", json={**payload, "name": "New Visa Centre LLC"})

    assert first.status_code == 200
    assert first.get_json() == {"success": True, "businessId": "new-1", "result": "created"}
    assert second.get_json()["result"] == "updated"
    assert adapter.get("new-1").name == "New Visa Centre LLC"
    assert adapter.get("new-1").review_count == 8


@pytest.mark.parametrize("payload", [{"name": "No id"}, {"id": "x"}, ["not", "an", "object"]])
def test_save_business_validates_payload(client, payload):
    response = client.post("/businesses", json=payload)
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid business"


def test_stats_and_refresh(client, adapter, business_factory):
    first = client.get("/stats").get_json()
    assert first["totalBusinesses"] == 7
    assert set(first) == {"totalBusinesses", "totalReviews", "avgRating", "locations", "scamReports", "lastUpdated"}

    adapter.upsert(business_factory("late"))
    assert client.get("/stats").get_json()["totalBusinesses"] == 7
    assert client.post("/stats/refresh").get_json()["totalBusinesses"] == 8


def test_method_not_allowed_is_json(client):
    response = client.delete("/businesses")
    assert response.status_code == 405
    assert response.get_json() == {"error": "Method not allowed"}


def test_ingest_streams_progress_lines(client, adapter):
    response = client.post("/ingest", json={"categories": ["visa one", "broken", "visa two"], "batchNumber": 3})
    text = response.get_data(as_text=True)

    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert '[1/3] Searching: "visa one"...' in text
    assert '[2/3] "broken": Error - 503 from upstream' in text
    assert "Categories succeeded: 2, failed: 1" in text
    assert adapter.get("visa one-1") is not None
    assert len(client.executor.submitted) == 1

    status = client.get("/ingest/status").get_json()["progress"]
    assert status["status"] == "completed"
    assert status["batchNumber"] == 3


def test_ingest_validates_payload(client):
    assert client.post("/ingest", json={"categories": "visa"}).status_code == 400
    assert client.post("/ingest", json={"batchNumber": "first"}).status_code == 400


def test_ingest_without_api_key(client, monkeypatch):
    monkeypatch.setattr(server, "google_places_fetcher", ingest.google_places_fetcher)
    monkeypatch.setenv("GOOGLE_API_KEY", "")
    response = client.post("/ingest", json={"categories": ["visa one"]})
    assert response.status_code == 500
    assert response.get_json()["error"] == "Ingestion unavailable"


def test_ingest_fatal_error_ends_stream(client, monkeypatch):
    def exploding_run(self, categories, batch_number=1):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(server.IngestionOrchestrator, "run", exploding_run)
    text = client.post("/ingest", json={"categories": ["visa one"]}).get_data(as_text=True)
    assert "FATAL ERROR: worker crashed" in text
    assert server._batch_lock.locked() is False
    assert client.post("/ingest", json={"categories": ["visa three"]}).status_code == 200


def test_ingest_rejects_overlapping_batch(client, monkeypatch):
    overlapping = []

    def run_and_post_again(self, categories, batch_number=1):
        response = client.post("/ingest", json={"categories": ["visa two"], "batchNumber": 2})
        overlapping.append((response.status_code, response.get_json()))

    monkeypatch.setattr(server.IngestionOrchestrator, "run", run_and_post_again)
    first = client.post("/ingest", json={"categories": ["visa one"], "batchNumber": 1})
    first.get_data()

    assert first.status_code == 200
    assert overlapping == [
        (409, {"error": "Ingestion in progress", "message": "wait for the running batch to finish"})
    ]
    assert len(client.executor.submitted) == 1
    assert server._batch_lock.locked() is False


def test_ingest_while_lock_held_leaves_tracker_alone(client):
    server._tracker.start_batch(7, total_businesses=3)
    server._batch_lock.acquire()
    try:
        response = client.post("/ingest", json={"categories": ["visa one"]})
    finally:
        server._batch_lock.release()

    assert response.status_code == 409
    assert client.executor.submitted == []
    assert server._tracker.current.batch_number == 7


def test_consecutive_batches_each_run(client):
    for batch_number in (1, 2):
        response = client.post("/ingest", json={"categories": ["visa one"], "batchNumber": batch_number})
        assert response.status_code == 200
        assert "Categories succeeded: 1, failed: 0" in response.get_data(as_text=True)

    assert len(client.executor.submitted) == 2
    assert server._tracker.current.batch_number == 2


def test_ingest_status_before_any_batch(client):
    assert client.get("/ingest/status").get_json() == {"progress": None}


def test_progress_stream_ends_after_completed_batch(client):
    server._tracker.start_batch(5, total_businesses=1)
    server._tracker.complete_batch()

    response = client.get("/ingest/progress")
    body = response.get_data(as_text=True)

    assert response.mimetype == "text/event-stream"
    events = [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]
    assert events[-1]["status"] == "completed"
    assert events[-1]["batchNumber"] == 5
