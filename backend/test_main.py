"""
HTTP API tests. The lifespan is not run; the orchestrator and stores are
replaced with in-process fakes.
"""

import json

import pytest
from fastapi.testclient import TestClient

import main
import rate_limiter
from conftest import COMPLETE_SETTINGS


@pytest.fixture
def client(monkeypatch, make_orchestrator, store):
    monkeypatch.setattr(main, "orchestrator", make_orchestrator())
    monkeypatch.setattr(main, "thread_store", store)
    monkeypatch.setattr(rate_limiter, "rate_limiter", None)
    return TestClient(main.app)


def parse_sse(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.split("\n\n") if line.startswith("data: ")]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.parametrize("payload", [{}, {"prompt": ""}, {"prompt": "   "}])
def test_missing_prompt_is_rejected(client, payload):
    response = client.post("/v1/chat/stream", json=payload)
    assert response.status_code == 400


def test_invalid_image_is_rejected(client):
    response = client.post(
        "/v1/chat/stream",
        json={"prompt": "Like this", "image_data": {"base64": "not base64!!", "content_type": "image/png"}},
    )
    assert response.status_code == 422


def test_unknown_settings_field_is_rejected(client):
    response = client.post("/v1/chat/stream", json={"prompt": "Quiz", "settings": {"colour": "blue"}})
    assert response.status_code == 422


def test_unavailable_without_orchestrator(client, monkeypatch):
    monkeypatch.setattr(main, "orchestrator", None)
    response = client.post("/v1/chat/stream", json={"prompt": "Quiz"})
    assert response.status_code == 503


def test_stream_returns_sse_events(client, store):
    response = client.post(
        "/v1/chat/stream",
        json={
            "prompt": "Explain derivatives",
            "user_id": "teacher-1",
            "settings": {"contentType": "worksheet", "gradeLevel": 8, "length": "standard", "tone": "academic"},
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = parse_sse(response.text)
    assert events[0]["type"] == "threadId"
    assert events[-1]["type"] == "final_content"
    assert events[-1]["metadata"]["gradeLevel"] == "8"

    thread_id = events[0]["threadId"]
    assert store.threads[thread_id]["user_id"] == "teacher-1"


def test_thread_messages(client):
    response = client.post("/v1/chat/stream", json={"prompt": "Explain derivatives", "settings": COMPLETE_SETTINGS})
    thread_id = parse_sse(response.text)[0]["threadId"]

    messages = client.get(f"/v1/threads/{thread_id}/messages").json()["messages"]
    assert messages[0]["content"] == "Explain derivatives"
    assert messages[-1]["content"].startswith("[Final Formatted Content]")


def test_temporary_thread_messages_are_empty(client):
    response = client.get("/v1/threads/temp-1234/messages")
    assert response.status_code == 200
    assert response.json() == {"thread_id": "temp-1234", "messages": []}


def test_quota_without_limiter(client):
    assert client.get("/v1/quota", params={"user_id": "teacher-1"}).json()["remaining"] == -1


def test_rate_limited_request_gets_429(client, monkeypatch):
    class ExhaustedLimiter:
        config = rate_limiter.RateLimitConfig(limit=1)

        async def check_rate_limit(self, user_id):
            return False, 0, 42

    monkeypatch.setattr(rate_limiter, "rate_limiter", ExhaustedLimiter())
    response = client.post("/v1/chat/stream", json={"prompt": "Quiz"})

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"