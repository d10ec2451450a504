import json

import httpx
import pytest

from termchat.errors import ProviderError, UpstreamUnavailable
from termchat.streaming.sse import DONE_FRAME


def _history(client, conv_id):
    resp = client.get(f"/api/v1/conversations/{conv_id}/history")
    assert resp.status_code == 200
    return resp.json()["messages"]


# ---- Chat ----


@pytest.mark.parametrize(
    "body, error",
    [
        ({"message": "", "conversationId": "chat-1"}, "Invalid request"),
        ({"message": "   ", "conversationId": "chat-1"}, "Invalid request"),
        ({"conversationId": "chat-1"}, "Invalid request"),
        ({"message": 42, "conversationId": "chat-1"}, "Invalid request"),
        ({"message": "hi", "conversationId": "session-1"}, "Invalid conversation ID"),
        ({"message": "hi"}, "Invalid conversation ID"),
        ({"message": "hi", "conversationId": "chat-1", "model": "gpt-99"}, "Invalid model"),
    ],
)
def test_chat_rejects_bad_requests_without_persisting(client, providers, body, error):
    resp = client.post("/api/v1/chat", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == error
    assert "message" in resp.json()
    assert _history(client, "chat-1") == []
    assert providers["local"].calls == []


def test_chat_non_streaming(client, providers):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "Hello", "conversationId": "chat-ns", "stream": False},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["response"] == "Hi from the fake"
    assert data["conversationId"] == "chat-ns"
    assert data["model"] == "MiniMax-M2"
    assert data["provider"] == "local"
    assert data["usage"] == {"total_tokens": 7}

    messages = _history(client, "chat-ns")
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Hello"),
        ("assistant", "Hi from the fake"),
    ]


def test_chat_streaming_relays_and_persists(client):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "Hello", "conversationId": "chat-st", "model": "qwen2.5:1.5b"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"

    frames = [f for f in resp.text.split("\n\n") if f]
    assert len(frames) == 3
    assert json.loads(frames[0][len("data: "):])["choices"][0]["delta"]["content"] == "Hello"
    assert resp.text.endswith(DONE_FRAME)

    messages = _history(client, "chat-st")
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Hello"),
        ("assistant", "Hello world"),
    ]


def test_chat_streaming_upstream_error_frame(client, providers):
    providers["local"].chunks = [b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n']
    providers["local"].stream_error = httpx.ReadError("connection reset")

    resp = client.post("/api/v1/chat", json={"message": "Hi", "conversationId": "chat-se"})

    assert resp.status_code == 200
    assert resp.text.endswith('data: {"error": "Stream error occurred"}\n\n')
    assert [m["role"] for m in _history(client, "chat-se")] == ["user"]


def test_chat_non_streaming_model_answers_as_json(client, providers):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "Hello", "conversationId": "chat-mt", "model": "gpt-4o-mini", "stream": True},
    )

    assert resp.status_code == 200
    assert resp.json()["response"] == "Scraped answer"
    assert resp.json()["provider"] == "minitool"
    assert providers["minitool"].calls[0]["stream"] is False


@pytest.mark.parametrize("error", [UpstreamUnavailable("down"), ProviderError("bad status")])
def test_chat_upstream_failure_keeps_user_message(client, providers, error):
    providers["local"].error = error

    resp = client.post(
        "/api/v1/chat",
        json={"message": "Hello", "conversationId": "chat-fail", "stream": False},
    )

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Internal server error"
    assert body["message"] == "Failed to process chat request"
    assert body["conversationId"] == "chat-fail"
    assert [m["role"] for m in _history(client, "chat-fail")] == ["user"]


def test_chat_history_and_temperature_forwarded(client, providers):
    client.post(
        "/api/v1/chat",
        json={
            "message": "And now?",
            "conversationId": "chat-h",
            "history": [{"role": "user", "content": "Before"}, {"role": "assistant", "content": "Ok"}],
            "temperature": 0.2,
            "stream": False,
        },
    )

    call = providers["local"].calls[0]
    assert call["temperature"] == 0.2
    assert [m["content"] for m in call["messages"][1:]] == ["Before", "Ok", "And now?"]


def test_chat_models_lists_local_models(client):
    data = client.get("/api/v1/chat/models").json()
    assert data["default"] == "MiniMax-M2"
    assert {m["provider"] for m in data["models"]} == {"local"}
    assert len(data["models"]) == 5


# ---- Models ----


def test_list_models(client):
    data = client.get("/api/v1/models").json()
    assert data["success"] is True
    assert data["total"] == 11
    assert data["categories"] == {"coding": 1, "general": 4, "openai": 6}

    minitool = client.get("/api/v1/models", params={"provider": "minitool"}).json()
    assert minitool["total"] == 6
    coding = client.get("/api/v1/models", params={"category": "coding"}).json()
    assert [m["id"] for m in coding["models"]] == ["deepseek-coder-v2"]


def test_grouped_models(client):
    providers = client.get("/api/v1/models/providers").json()["providers"]
    assert set(providers) == {"local", "minitool"}
    categories = client.get("/api/v1/models/categories").json()["categories"]
    assert len(categories["openai"]) == 6


def test_get_model(client):
    model = client.get("/api/v1/models/gpt-4o-mini").json()["model"]
    assert model["provider"] == "minitool"
    assert model["streaming"] is False

    resp = client.get("/api/v1/models/gpt-99")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Model not found"


def test_chat_with_model_persists_with_metadata(client):
    resp = client.post(
        "/api/v1/models/gpt-4o-mini/chat",
        json={"message": "Hi", "conversationId": "chat-m"},
    )

    assert resp.status_code == 200
    assert resp.json()["response"] == "Scraped answer"
    messages = _history(client, "chat-m")
    assert messages[1]["metadata"] == {"model": "gpt-4o-mini", "provider": "minitool"}


def test_chat_with_unknown_model(client):
    resp = client.post(
        "/api/v1/models/gpt-99/chat",
        json={"message": "Hi", "conversationId": "chat-m"},
    )
    assert resp.status_code == 404


def test_model_probe_does_not_persist(client, providers):
    resp = client.post("/api/v1/models/llama3.1:8b/test")

    assert resp.status_code == 200
    assert resp.json()["response"] == "Hi from the fake"
    assert providers["local"].calls[0]["messages"][-1]["content"].startswith("Hello!")
    assert client.get("/api/v1/conversations").json()["total"] == 0


def test_model_probe_upstream_error(client, providers):
    providers["minitool"].error = UpstreamUnavailable("down")
    resp = client.post("/api/v1/models/gpt-4o-mini/test", json={"message": "ping"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "External API error"


# ---- Conversations ----


def test_conversation_endpoints(client):
    for conv_id in ("chat-c1", "chat-c2"):
        client.post(
            "/api/v1/chat",
            json={"message": f"hello {conv_id}", "conversationId": conv_id, "stream": False},
        )

    listing = client.get("/api/v1/conversations").json()
    assert listing["total"] == 2
    assert listing["conversations"][0]["id"] == "chat-c2"
    assert listing["conversations"][0]["messageCount"] == 2

    conv = client.get("/api/v1/conversations/chat-c1").json()["conversation"]
    assert conv["metadata"]["totalMessages"] == 2

    limited = client.get("/api/v1/conversations/chat-c1/history", params={"limit": 1}).json()
    assert limited["count"] == 1
    assert limited["messages"][0]["role"] == "assistant"

    deleted = client.delete("/api/v1/conversations/chat-c1").json()
    assert deleted["deleted"] is True
    assert client.delete("/api/v1/conversations/chat-c1").json()["deleted"] is False


def test_get_conversation_creates_empty(client):
    conv = client.get("/api/v1/conversations/chat-fresh").json()["conversation"]
    assert conv["id"] == "chat-fresh"
    assert conv["messages"] == []


def test_conversation_bad_id(client):
    resp = client.get("/api/v1/conversations/session-9")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid conversation ID"


def test_insights_and_cleanup(client):
    client.post("/api/v1/chat", json={"message": "hi", "conversationId": "chat-i", "stream": False})

    insights = client.get("/api/v1/conversations/analytics/insights").json()["insights"]
    assert insights["totalConversations"] == 1
    assert insights["totalMessages"] == 2

    cleaned = client.post("/api/v1/conversations/cleanup", params={"retentionDays": 30}).json()
    assert cleaned["deletedCount"] == 0
    assert "30 days" in cleaned["message"]


# ---- Health, root, errors ----


def test_health(client):
    data = client.get("/api/v1/health").json()
    assert data["status"] == "healthy"
    assert data["environment"] == "development"
    assert data["uptime"] >= 0

    detailed = client.get("/api/v1/health/detailed").json()
    assert detailed["application"]["version"] == "1.0.0"
    assert detailed["statistics"] == {"totalConversations": 0, "activeConversations": 0}


def test_root_and_unknown_route(client):
    assert client.get("/").json()["endpoints"]["chat"] == "/api/v1/chat"

    resp = client.get("/api/v1/nowhere")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Not found", "message": "Route GET /api/v1/nowhere not found"}


def test_chat_rate_limit(make_client):
    client = make_client(chat_rate_limit=2)
    body = {"message": "hi", "conversationId": "chat-rl", "stream": False}

    assert client.post("/api/v1/chat", json=body).status_code == 200
    assert client.post("/api/v1/chat", json=body).status_code == 200
    resp = client.post("/api/v1/chat", json=body)

    assert resp.status_code == 429
    assert resp.json()["error"] == "Too many requests"
    assert resp.headers["retry-after"] == "60"
    assert client.get("/api/v1/health").status_code == 200


def test_general_rate_limit(make_client):
    client = make_client(rate_limit=3)
    for _ in range(3):
        assert client.get("/api/v1/health").status_code == 200
    assert client.get("/api/v1/health").status_code == 429
    assert client.get("/").status_code == 200
