"""
HTTP API tests with FastAPI's TestClient and faked models and tools.

Run with:
$ pytest -q
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import (
    FakeBackend,
    FakeDispatcher,
    build,
    descriptor,
)
from toolbridge.api.app import create_app
from toolbridge.models.manager import ModelManager
from toolbridge.tools import ToolRegistry

PLAN = {"selected_tools": ["extract_all_from_pdf"], "reasoning": "pdf"}


def _factory(d, key):
    replies = ["nope"] if key and not key.startswith("good") else []
    return FakeBackend(d, key, replies=replies, structured=PLAN)


@pytest.fixture
def client(registry: ToolRegistry) -> TestClient:
    """App wired to fakes; startup probing is skipped."""

    manager = ModelManager(
        [descriptor("alpha"), descriptor("beta")], backend_factory=_factory, default_model="alpha"
    )
    asyncio.run(manager.initialize())
    orch = build(registry, FakeDispatcher(registry), manager)
    return TestClient(create_app(orch, initialize=False))


def _pdf(size: int = 10) -> dict:
    return {"id": "f1", "name": "a.pdf", "type": "application/pdf", "size": size, "path": "a.pdf"}


def test_health(client: TestClient) -> None:
    """Liveness and detailed status."""

    assert client.get("/health").json() == {"status": "ok"}
    detailed = client.get("/health/detailed").json()
    assert detailed["current_model"] == "alpha"
    assert detailed["model_healthy"] is True


def test_chat_round_trip(client: TestClient) -> None:
    """A turn returns the camelCase response and lands in the history."""

    resp = client.post(
        "/chat/message", json={"message": "read it", "conversationId": "c1", "files": [_pdf()]}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["conversationId"] == "c1"
    assert body["toolsUsed"] == ["extract_all_from_pdf"]
    assert body["confidence"] == 1.0
    assert body["toolResults"][0]["toolId"] == "extract_all_from_pdf"
    assert body["toolResults"][0]["success"] is True

    history = client.get("/chat/history/c1").json()
    assert history["conversationId"] == "c1"
    assert history["history"][0]["userMessage"] == "read it"
    assert client.get("/chat/conversations").json()[0]["conversationId"] == "c1"


def test_chat_generates_conversation_id(client: TestClient) -> None:
    """Omitting the id starts a new conversation."""

    body = client.post("/chat/message", json={"message": "hello"}).json()

    assert body["conversationId"]


def test_chat_validation_errors(client: TestClient) -> None:
    """Oversized files are a 400; a missing message fails schema validation."""

    too_big = client.post(
        "/chat/message", json={"message": "read", "files": [_pdf(size=200 * 1024 * 1024)]}
    )
    assert too_big.status_code == 400
    assert "exceeds" in too_big.json()["detail"]

    assert client.post("/chat/message", json={"files": []}).status_code == 422


def test_chat_rejects_paths_outside_uploads(client: TestClient) -> None:
    """A file record may not point the tools at arbitrary server files."""

    for path in ("/etc/passwd", "../secrets.txt"):
        outside = {"id": "f9", "name": "p.txt", "type": "text/plain", "size": 10, "path": path}
        resp = client.post("/chat/message", json={"message": "read", "files": [outside]})

        assert resp.status_code == 400
        assert "outside the upload directory" in resp.json()["detail"]


def test_history_not_found_and_delete(client: TestClient) -> None:
    """Unknown conversations are 404; deleting forgets them."""

    assert client.get("/chat/history/nope").status_code == 404

    client.post("/chat/message", json={"message": "hi", "conversationId": "c2"})
    assert client.delete("/chat/history/c2").json() == {"success": True, "conversationId": "c2"}
    assert client.get("/chat/history/c2").status_code == 404
    assert client.delete("/chat/history/c2").status_code == 404


def test_models_endpoints(client: TestClient) -> None:
    """Listing, current model and switching."""

    ids = [m["id"] for m in client.get("/models/available").json()]
    assert ids == ["alpha", "beta"]
    assert client.get("/models/current").json()["id"] == "alpha"

    switched = client.post("/models/switch", json={"modelId": "beta"})
    assert switched.status_code == 200
    assert client.get("/models/current").json()["id"] == "beta"

    assert client.post("/models/switch", json={"modelId": "gamma"}).status_code == 404


def test_api_key_endpoint(client: TestClient) -> None:
    """Keys are validated by a health check; short keys fail schema validation."""

    bad = client.post("/models/api-key", json={"modelId": "alpha", "apiKey": "wrong-key-123"})
    assert bad.status_code == 401

    good = client.post("/models/api-key", json={"modelId": "alpha", "apiKey": "good-key-123"})
    assert good.status_code == 200

    missing = client.post("/models/api-key", json={"modelId": "zeta", "apiKey": "good-key-123"})
    assert missing.status_code == 404

    short = client.post("/models/api-key", json={"modelId": "alpha", "apiKey": "x"})
    assert short.status_code == 422


def test_tools_endpoint(client: TestClient) -> None:
    """The catalogue is listed with availability flags."""

    tools = {t["id"]: t for t in client.get("/tools").json()}

    assert tools["extract_all_from_pdf"]["available"] is True
    assert tools["image_analyzer"]["source"] == "container"
