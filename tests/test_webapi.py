import asyncio
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from doc_pipeline import __version__, webapi
from doc_pipeline.conversion import LocalPath, ProcessingStage
from doc_pipeline.conversion.errors import QueueBackendError, StatusBackendError


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(webapi, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def client(settings, store, converters):
    app = webapi.create_app(settings=settings, store=store, converters=converters, start_workers=False)
    with TestClient(app) as c:
        yield c


def _run_worker_once(client: TestClient) -> bool:
    return client.portal.call(client.app.state.service.run_once)


def test_health(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    assert resp.text == "Service is Healthy"


def test_admin_info(client):
    resp = client.get("/admin/info")
    assert resp.status_code == 200
    assert resp.json() == {"name": "doc-pipeline", "version": __version__, "backend": "memory"}


def test_local_ingest_then_worker_completes(client):
    resp = client.post("/v1/ingest/local", json={"path": "/tmp/doc.pdf", "conversion_method": "Simple"})
    assert resp.status_code == 202
    body = resp.json()
    task_id = body["request_id"]
    assert body["status"] == "Waiting"
    assert body["completed"] is False and body["success"] is False
    assert body["request_check_leaf"] == f"/v1/status/{task_id}"
    assert body["request_check_url"] == f"http://testserver/v1/status/{task_id}"
    assert resp.headers["Location"] == body["request_check_leaf"]

    assert _run_worker_once(client) is True

    status = client.get(body["request_check_leaf"]).json()
    assert status["status"] == "Completed"
    assert status["markdown"] == "# Hello"
    assert status["success"] is True and status["completed"] is True
    assert status["error"] is None


def test_unreachable_s3_ingest_errors(client):
    resp = client.post("/v1/ingest/s3", json={"s3_uri": "https://missing.nowhere.invalid/doc.pdf"})
    assert resp.status_code == 202
    task_id = resp.json()["request_id"]

    _run_worker_once(client)

    status = client.get(f"/v1/status/{task_id}").json()
    assert status["status"] == "Errored"
    assert status["error"]
    assert status["markdown"] is None
    assert status["completed"] is True and status["success"] is False


def test_malformed_s3_uri_is_rejected(client):
    resp = client.post("/v1/ingest/s3", json={"s3_uri": "s3://bucket/key.pdf"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_location"


def test_unknown_conversion_method_is_rejected(client):
    resp = client.post(
        "/v1/ingest/s3",
        json={"s3_uri": "https://b.sfo3.digitaloceanspaces.com/k.pdf", "conversion_method": "tesseract"},
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "invalid_conversion_method"


def test_upload_is_queued(client, settings):
    resp = client.post(
        "/v1/ingest/upload",
        files={"file": ("report.pdf", b"%PDF-1.4\n", "application/pdf")},
        data={"conversion_method": "Marker"},
    )
    assert resp.status_code == 202
    task_id = resp.json()["request_id"]

    stored = client.portal.call(client.app.state.service.get_status, task_id)
    assert stored.conversion_method.value == "Marker"
    assert isinstance(stored.file_location, LocalPath)
    assert stored.file_location.path.read_bytes() == b"%PDF-1.4\n"
    assert stored.file_location.path.is_relative_to(settings.uploads_dir)


def test_upload_with_generic_type_and_pdf_name_is_accepted(client):
    resp = client.post(
        "/v1/ingest/upload", files={"file": ("scan.pdf", b"%PDF", "application/octet-stream")}
    )
    assert resp.status_code == 202


def test_non_pdf_upload_is_rejected(client):
    resp = client.post("/v1/ingest/upload", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert resp.status_code == 415
    assert resp.json()["detail"]["code"] == "unsupported_media_type"


def test_oversized_upload_is_rejected(client):
    resp = client.post(
        "/v1/ingest/upload", files={"file": ("big.pdf", b"x" * (1024 * 1024 + 1), "application/pdf")}
    )
    assert resp.status_code == 413


def test_local_ingest_disabled_by_setting(settings, store, converters):
    app = webapi.create_app(
        settings=replace(settings, allow_local_ingest=False), store=store, converters=converters, start_workers=False
    )
    with TestClient(app) as c:
        resp = c.post("/v1/ingest/local", json={"path": "/tmp/doc.pdf"})
    assert resp.status_code == 403


def test_unknown_task_is_not_found(client):
    resp = client.get("/v1/status/12345")
    assert resp.status_code == 404
    assert resp.json()["detail"] == {"code": "not_found", "message": "task not found"}


def test_out_of_range_task_id_is_not_found(client):
    assert client.get(f"/v1/status/{2**64}").status_code == 404
    assert client.get("/v1/status/-1").status_code == 404


def test_non_numeric_task_id_is_validation_error(client):
    assert client.get("/v1/status/abc").status_code == 422


def test_queue_failure_during_ingest_is_service_unavailable(client, store):
    store.task_queue.enqueue = AsyncMock(side_effect=QueueBackendError("down"))
    resp = client.post("/v1/ingest/local", json={"path": "/tmp/doc.pdf"})
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "ingest_failed"


def test_status_store_failure_is_service_unavailable(client, store):
    store.status_store.get_doc_status = AsyncMock(side_effect=StatusBackendError("down"))
    assert client.get("/v1/status/1").status_code == 503


def test_in_process_workers_run_with_the_app(settings, store, converters):
    app = webapi.create_app(
        settings=replace(settings, workers=1, poll_interval_sec=0.01), store=store, converters=converters
    )
    with TestClient(app) as c:
        task_id = c.post("/v1/ingest/local", json={"path": "/tmp/doc.pdf"}).json()["request_id"]
        status = {}
        for _ in range(200):
            status = c.get(f"/v1/status/{task_id}").json()
            if status["completed"]:
                break
            c.portal.call(asyncio.sleep, 0.01)
    assert status["status"] == ProcessingStage.COMPLETED.value
    assert status["markdown"] == "# Hello"


def test_response_projection_uses_domain_without_trailing_slash(tmp_path):
    from doc_pipeline.conversion import DocStatus

    doc = DocStatus.new(7, LocalPath(Path("/tmp/doc.pdf")))
    resp = webapi.to_response(doc, "https://docs.example.com/")
    assert resp.request_check_url == "https://docs.example.com/v1/status/7"
    assert resp.status == "Waiting"
