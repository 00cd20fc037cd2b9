"""
Route tests for the Flask gateway using the Flask test client.
Supabase auth, storage and the products table are replaced by fakes.
"""

import io
import json
from unittest.mock import MagicMock

import pytest

import flask_app
from conftest import FakeProductStore, FakeStorage, build_zip, xr_export
from xr_ingest.rate_limit import RateLimiter

USER_ID = "user-1"
AUTH = {"Authorization": "Bearer test-token"}


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backends(monkeypatch, clock):
    storage = FakeStorage()
    products = FakeProductStore()
    build_storage = MagicMock(return_value=storage)

    monkeypatch.setattr(flask_app, "upload_rate_limiter", RateLimiter(clock=clock))
    monkeypatch.setattr(flask_app, "get_supabase_client", MagicMock(return_value=MagicMock()))
    monkeypatch.setattr(flask_app, "get_user_id", lambda client, token: USER_ID if token == "test-token" else None)
    monkeypatch.setattr(flask_app, "build_storage", build_storage)
    monkeypatch.setattr(flask_app, "build_product_store", lambda token: products)
    return storage, products, build_storage


@pytest.fixture
def client(backends):
    flask_app.app.config["TESTING"] = True
    with flask_app.app.test_client() as client:
        yield client


def sse_events(response):
    body = response.get_data(as_text=True)
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


def multipart(data=None, filename="chair.zip", product_id="prod-1", admin_id=USER_ID):
    form = {"product_id": product_id, "admin_id": admin_id}
    if data is not None:
        form["file"] = (io.BytesIO(data), filename)
    return form


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}


class TestDirectUpload:
    def test_successful_upload_streams_progress(self, client, backends):
        storage, products, _ = backends
        response = client.post(
            "/api/upload",
            data=multipart(build_zip(xr_export())),
            content_type="multipart/form-data",
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.mimetype == "text/event-stream"
        assert response.headers["Cache-Control"] == "no-cache, no-transform"
        assert response.headers["X-Accel-Buffering"] == "no"
        assert response.headers["X-RateLimit-Limit"] == str(flask_app.UPLOAD_RATE_LIMIT.max_requests)

        events = sse_events(response)
        assert events[0]["phase"] == "upload-complete"
        assert events[-1]["type"] == "complete"
        assert events[-1]["imageCount"] == 6
        assert len(storage.objects) == 6
        assert products.updates[0][0] == "prod-1"

    def test_missing_token_is_rejected_before_stream(self, client, backends):
        _, _, build_storage = backends
        response = client.post("/api/upload", data=multipart(b"PK"), content_type="multipart/form-data")

        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}
        build_storage.assert_not_called()

    def test_invalid_token_is_rejected(self, client):
        response = client.post(
            "/api/upload",
            data=multipart(b"PK"),
            content_type="multipart/form-data",
            headers={"Authorization": "Bearer stale"},
        )
        assert response.status_code == 401

    def test_session_token_is_accepted(self, client):
        with client.session_transaction() as session:
            session["supabase_access_token"] = "test-token"
        response = client.post("/api/upload", data=multipart(build_zip(xr_export())), content_type="multipart/form-data")
        assert sse_events(response)[-1]["type"] == "complete"

    def test_missing_file(self, client, backends):
        _, _, build_storage = backends
        response = client.post("/api/upload", data=multipart(), content_type="multipart/form-data", headers=AUTH)

        events = sse_events(response)
        assert events == [{"type": "error", "message": "No file uploaded", "kind": "InvalidRequest"}]
        build_storage.assert_not_called()

    def test_missing_product_id(self, client):
        response = client.post(
            "/api/upload",
            data=multipart(build_zip(xr_export()), product_id=""),
            content_type="multipart/form-data",
            headers=AUTH,
        )
        events = sse_events(response)
        assert len(events) == 1
        assert events[0]["message"] == "Missing required parameters: product_id"

    def test_admin_must_match_authenticated_user(self, client):
        response = client.post(
            "/api/upload",
            data=multipart(build_zip(xr_export()), admin_id="someone-else"),
            content_type="multipart/form-data",
            headers=AUTH,
        )
        events = sse_events(response)
        assert events[0]["type"] == "error"
        assert "does not match" in events[0]["message"]

    def test_non_multipart_body(self, client):
        response = client.post("/api/upload", json={"product_id": "p"}, headers=AUTH)
        events = sse_events(response)
        assert events[0]["message"] == "Content-Type must be multipart/form-data"

    def test_invalid_archive_ends_with_error_event(self, client, backends):
        storage, products, _ = backends
        response = client.post(
            "/api/upload",
            data=multipart(b"not an archive at all", filename="chair.zip"),
            content_type="multipart/form-data",
            headers=AUTH,
        )
        events = sse_events(response)
        assert events[-1]["type"] == "error"
        assert events[-1]["kind"] == "CorruptOrSpoofed"
        assert [e["type"] for e in events].count("error") == 1
        assert storage.objects == {}
        assert products.updates == []

    def test_unconfigured_storage(self, client, monkeypatch):
        monkeypatch.setattr(flask_app, "build_storage", MagicMock(side_effect=RuntimeError("Supabase is not configured")))
        response = client.post(
            "/api/upload",
            data=multipart(build_zip(xr_export())),
            content_type="multipart/form-data",
            headers=AUTH,
        )
        events = sse_events(response)
        assert events == [
            {"type": "error", "message": "Storage is not configured on the server", "kind": "RuntimeError"}
        ]


class TestRateLimitGate:
    def test_eleventh_request_is_rejected(self, client, backends, clock):
        _, _, build_storage = backends
        key = "upload:127.0.0.1"
        for _ in range(flask_app.UPLOAD_RATE_LIMIT.max_requests):
            flask_app.upload_rate_limiter.check(key, flask_app.UPLOAD_RATE_LIMIT)

        response = client.post("/api/upload", data=multipart(b"PK"), content_type="multipart/form-data", headers=AUTH)

        assert response.status_code == 429
        body = response.get_json()
        assert body["remaining"] == 0
        assert body["limit"] == flask_app.UPLOAD_RATE_LIMIT.max_requests
        assert body["retryAfter"] == int(flask_app.UPLOAD_RATE_LIMIT.window_seconds)
        assert response.headers["Retry-After"] == str(body["retryAfter"])
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == body["reset"]
        build_storage.assert_not_called()

    def test_gate_runs_before_authentication(self, client):
        for _ in range(flask_app.UPLOAD_RATE_LIMIT.max_requests):
            flask_app.upload_rate_limiter.check("upload:127.0.0.1", flask_app.UPLOAD_RATE_LIMIT)
        response = client.post("/api/upload", data=multipart(b"PK"), content_type="multipart/form-data")
        assert response.status_code == 429

    def test_forwarded_client_has_its_own_budget(self, client):
        for _ in range(flask_app.UPLOAD_RATE_LIMIT.max_requests):
            flask_app.upload_rate_limiter.check("upload:127.0.0.1", flask_app.UPLOAD_RATE_LIMIT)
        response = client.post(
            "/api/upload",
            data=multipart(b"PK"),
            content_type="multipart/form-data",
            headers={"X-Forwarded-For": "203.0.113.9"},
        )
        assert response.status_code == 401

    def test_window_reset_allows_again(self, client, clock):
        for _ in range(flask_app.UPLOAD_RATE_LIMIT.max_requests + 1):
            flask_app.upload_rate_limiter.check("upload:127.0.0.1", flask_app.UPLOAD_RATE_LIMIT)
        clock.now += flask_app.UPLOAD_RATE_LIMIT.window_seconds + 1
        response = client.post("/api/upload", data=multipart(b"PK"), content_type="multipart/form-data")
        assert response.status_code == 401


class TestProcessUploaded:
    def test_processes_archive_from_storage(self, client, backends):
        storage, products, _ = backends
        storage.objects[f"temp/{USER_ID}/chair.zip"] = build_zip(xr_export())

        response = client.post(
            "/api/upload/process",
            json={"zipPath": f"temp/{USER_ID}/chair.zip", "product_id": "prod-1", "admin_id": USER_ID},
            headers=AUTH,
        )

        events = sse_events(response)
        assert events[0]["phase"] == "downloading"
        assert events[-1]["type"] == "complete"
        assert storage.removed == [f"temp/{USER_ID}/chair.zip"]
        assert products.updates[0][0] == "prod-1"

    @pytest.mark.parametrize(
        "zip_path",
        [
            f"temp/{USER_ID}/../other/chair.zip",
            "temp/other-user/chair.zip",
            f"/temp/{USER_ID}/chair.zip",
            f"uploads/{USER_ID}/chair.zip",
        ],
    )
    def test_rejects_paths_outside_user_temp_folder(self, client, backends, zip_path):
        _, _, build_storage = backends
        response = client.post(
            "/api/upload/process",
            json={"zipPath": zip_path, "product_id": "prod-1", "admin_id": USER_ID},
            headers=AUTH,
        )
        assert sse_events(response) == [{"type": "error", "message": "Invalid archive path", "kind": "InvalidRequest"}]
        build_storage.assert_not_called()

    def test_missing_parameters(self, client):
        response = client.post("/api/upload/process", json={"product_id": "prod-1"}, headers=AUTH)
        events = sse_events(response)
        assert events[0]["message"] == "Missing required parameters: zipPath, admin_id"

    def test_missing_archive_in_storage(self, client):
        response = client.post(
            "/api/upload/process",
            json={"zipPath": f"temp/{USER_ID}/gone.zip", "product_id": "prod-1", "admin_id": USER_ID},
            headers=AUTH,
        )
        events = sse_events(response)
        assert events[-1]["type"] == "error"
        assert events[-1]["kind"] == "StorageDownloadFailed"
