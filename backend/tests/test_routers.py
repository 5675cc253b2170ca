"""Tests for the HTTP endpoints."""
import asyncio
import base64
import json
import time

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeStorage, RecordingNotifier, make_request
from relay.chat import messages
from relay.chat.handler import ChatHandler
from relay.chat.router import router as chat_router
from relay.chat.staging import StagingArea
from relay.config import AppSettings
from relay.health.monitor import HealthMonitor
from relay.health.router import router as health_router
from relay.storage.local import LocalStorage
from relay.storage.router import router as files_router
from relay.uploads.queue import UploadQueue
from relay.uploads.router import router as uploads_router


def _app(**state) -> FastAPI:
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(uploads_router)
    app.include_router(files_router)
    app.include_router(chat_router)
    for name, value in state.items():
        setattr(app.state, name, value)
    return app


@pytest.fixture
def finished_queue(tmp_path):
    """A queue that has completed one upload for alice."""
    path = tmp_path / "a.png"
    path.write_bytes(b"a")
    queue = UploadQueue(FakeStorage(), RecordingNotifier())

    async def _run():
        result = await queue.submit(make_request(path))
        await queue.join()
        return result

    result = asyncio.run(_run())
    return queue, result.item_id


class TestUploadEndpoints:
    def test_queue_status(self, finished_queue):
        queue, _ = finished_queue
        client = TestClient(_app(upload_queue=queue))
        resp = client.get("/uploads/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["queue_length"] == 0
        assert data["active_uploads"] == 0
        assert data["max_concurrent"] == 3
        assert data["stats"] == {"total": 1, "completed": 1, "failed": 0, "in_progress": 0}

    def test_user_status(self, finished_queue):
        queue, _ = finished_queue
        client = TestClient(_app(upload_queue=queue))
        assert client.get("/uploads/status/alice").json()["completed"] == 1
        assert client.get("/uploads/status/bob").json()["total"] == 0

    def test_item_detail(self, finished_queue):
        queue, item_id = finished_queue
        client = TestClient(_app(upload_queue=queue))
        data = client.get(f"/uploads/items/{item_id}").json()
        assert data["status"] == "completed"
        assert data["link"] == "https://drive.example/a.png"
        assert data["progress"] == 100

    def test_unknown_item_404(self, finished_queue):
        queue, _ = finished_queue
        client = TestClient(_app(upload_queue=queue))
        assert client.get("/uploads/items/nope").status_code == 404

    def test_queue_not_running_503(self):
        client = TestClient(_app())
        assert client.get("/uploads/status").status_code == 503


class TestHealthEndpoints:
    def test_health_without_monitor(self):
        client = TestClient(_app())
        assert client.get("/health").json() == {"status": "ok", "health": "unknown"}
        assert client.get("/health/report").status_code == 503

    def test_health_with_monitor(self):
        monitor = HealthMonitor(None)
        client = TestClient(_app(health_monitor=monitor))
        assert client.get("/health").json()["status"] == "ok"
        summary = client.get("/health/summary").json()
        assert summary["last_check"] == "Never"
        report = client.get("/health/report").json()
        assert "python_version" in report


class TestFileEndpoint:
    def test_serves_local_upload(self, tmp_path):
        source = tmp_path / "photo.png"
        source.write_bytes(b"png-bytes")
        storage = LocalStorage(str(tmp_path / "store"), public_base_url="http://testserver")
        link = asyncio.run(storage.upload(str(source), "image/png", "photo.png"))

        client = TestClient(_app(storage=storage))
        resp = client.get(link.replace("http://testserver", ""))
        assert resp.status_code == 200
        assert resp.content == b"png-bytes"

    def test_unknown_file_404(self, tmp_path):
        client = TestClient(_app(storage=LocalStorage(str(tmp_path / "store"))))
        assert client.get("/files/missing/file.png").status_code == 404

    def test_disabled_without_local_storage(self):
        client = TestClient(_app(storage=FakeStorage()))
        assert client.get("/files/any/file.png").status_code == 404


class ReplyBridge:
    """Records reply callbacks POSTed by the relay."""

    def __init__(self):
        self.posts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.posts.append((str(request.url), json.loads(request.content)))
        return httpx.Response(204)


def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


@pytest.fixture
def chat_app(tmp_path):
    settings = AppSettings()
    staging = StagingArea(tmp_path / "temp")
    handler = ChatHandler(settings, staging)
    queue = UploadQueue(FakeStorage(), handler)
    handler.bind(queue)
    bridge = ReplyBridge()
    app = _app(
        chat_handler=handler,
        upload_queue=queue,
        reply_client=httpx.AsyncClient(transport=httpx.MockTransport(bridge)),
    )
    return app, settings, bridge, staging


class TestMessageIngestion:
    def test_command_reply_returned_inline(self, chat_app):
        app, _, bridge, _ = chat_app
        with TestClient(app) as client:
            resp = client.post("/messages", json={"sender": "alice@c.us", "body": ".ping"})
        assert resp.status_code == 200
        assert resp.json() == {"replies": ["pong"]}
        assert bridge.posts == []

    def test_media_is_uploaded_and_outcome_called_back(self, chat_app):
        app, _, bridge, staging = chat_app
        payload = {
            "sender": "alice@c.us",
            "message_id": "m-1",
            "media": {
                "data": base64.b64encode(b"%PDF-1.4 report").decode(),
                "mimetype": "application/pdf",
                "filename": "report.pdf",
            },
            "reply_url": "http://bridge.test/reply",
        }
        with TestClient(app) as client:
            resp = client.post("/messages", json=payload)
            assert resp.status_code == 200
            assert resp.json()["replies"] == [
                messages.QUEUED.format(position=1, filename="report.pdf")
            ]
            _wait_for(lambda: len(bridge.posts) == 1)
            _wait_for(lambda: not list(staging.temp_dir.iterdir()))
            status = client.get("/uploads/status").json()

        url, body = bridge.posts[0]
        assert url == "http://bridge.test/reply"
        assert body["to"] == "alice@c.us"
        assert body["in_reply_to"] == "m-1"
        assert "https://drive.example/report.pdf" in body["text"]
        assert status["stats"]["completed"] == 1

    def test_invalid_base64_rejected(self, chat_app):
        app, _, _, _ = chat_app
        payload = {
            "sender": "alice@c.us",
            "media": {"data": "not base64!", "mimetype": "application/pdf"},
        }
        with TestClient(app) as client:
            assert client.post("/messages", json=payload).status_code == 422

    def test_ingest_token_required_when_configured(self, chat_app):
        app, settings, _, _ = chat_app
        settings.secrets.ingest_token = "s3cret"
        body = {"sender": "alice@c.us", "body": ".ping"}
        with TestClient(app) as client:
            assert client.post("/messages", json=body).status_code == 401
            wrong = client.post("/messages", json=body, headers={"X-Relay-Token": "nope"})
            assert wrong.status_code == 401
            ok = client.post("/messages", json=body, headers={"X-Relay-Token": "s3cret"})
            assert ok.json() == {"replies": ["pong"]}

    def test_handler_not_running_503(self):
        client = TestClient(_app())
        assert client.post("/messages", json={"sender": "alice@c.us"}).status_code == 503
