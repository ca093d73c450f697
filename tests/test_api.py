"""Tests for the FastAPI API endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from taskbot_kernel.api.app import create_app
from taskbot_kernel.config import Settings
from taskbot_kernel.nlu.client import OpenAIChatClient
from taskbot_kernel.store.database import Database

from conftest import FakeNLU


def _settings():
    return Settings(
        classifier="rules",
        entity_extractor="rules",
        database_path=":memory:",
        openai_api_key=None,
    )


def _make_client(nlu):
    app = create_app(database=Database(":memory:"), settings=_settings(), nlu=nlu)
    return TestClient(app)


def _sse_types(body):
    frames = [f for f in body.split("\n\n") if f.startswith("data: ")]
    return [json.loads(f[len("data: "):]) for f in frames]


@pytest.fixture
def nlu():
    return FakeNLU()


@pytest.fixture
def client(nlu):
    return _make_client(nlu)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestGeneralAgent:
    def test_create_task(self, client, nlu):
        nlu.generations.append({
            "text": "Created 'Buy milk'!",
            "calls": [("create_task", {"title": "Buy milk"})],
        })
        response = client.post("/api/agent/general", json={
            "message": "Add a task to buy milk",
            "userId": "u1",
            "context": {"sessionId": "s1", "timezone": "UTC"},
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["agent"] == "task"
        assert body["data"]["response"] == "Created 'Buy milk'!"
        assert body["data"]["actions"][0]["type"] == "task"
        assert body["data"]["actions"][0]["data"]["user_id"] == "u1"

    def test_delete_these_round_trip(self, client, nlu):
        nlu.generations.append({
            "text": "Created two tasks.",
            "calls": [
                ("create_task", {"title": "Buy milk"}),
                ("create_task", {"title": "Call mom"}),
            ],
        })
        client.post("/api/agent/general", json={"message": "Add tasks: buy milk, call mom"})

        response = client.post("/api/agent/general", json={"message": "delete these"})
        body = response.json()
        assert body["data"]["response"] == "Deleted 2 tasks."
        assert [a["type"] for a in body["data"]["actions"]] == ["task_deleted", "task_deleted"]
        assert client.get("/api/tasks").json()["total"] == 0

    def test_message_required(self, client):
        response = client.post("/api/agent/general", json={"message": "  "})
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Message is required"}

    def test_missing_credentials(self):
        client = _make_client(OpenAIChatClient(api_key=None))
        response = client.post("/api/agent/general", json={"message": "Add a task"})
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert "TASKBOT_OPENAI_API_KEY" in body["error"]
        assert "data" not in body


class TestStreamingAgent:
    def test_event_order(self, client, nlu):
        nlu.generations.append({"text": "A kanban board is a visual workflow tool."})
        response = client.post("/api/agent/stream", json={"message": "What is a kanban board?"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_types(response.text)
        types = [e["type"] for e in events]
        assert types[:2] == ["connected", "start"]
        assert types[-2:] == ["complete", "done"]
        assert types.count("done") == 1
        assert events[-2]["result"]["response"] == "A kanban board is a visual workflow tool."

    def test_missing_credentials_before_stream(self):
        client = _make_client(OpenAIChatClient(api_key=None))
        response = client.post("/api/agent/stream", json={"message": "hello"})
        assert response.status_code == 500
        assert response.json()["success"] is False


class TestDirectAgents:
    def test_task_agent(self, client, nlu):
        nlu.generations.append({
            "text": "Here are your tasks.",
            "calls": [("list_tasks", {})],
        })
        response = client.post("/api/agent/task", json={"message": "what is on my plate?"})
        assert response.status_code == 200
        assert response.json()["data"]["agent"] == "task"

    def test_research_agent(self, client, nlu):
        nlu.researches.append({
            "text": "Report.",
            "citations": [{"title": "a source", "url": "https://example.com"}],
        })
        response = client.post("/api/agent/research", json={"message": "research CRMs"})
        data = response.json()["data"]
        assert data["agent"] == "research"
        assert data["actions"][0]["data"]["citations"][0]["url"] == "https://example.com"


class TestTaskAndEventEndpoints:
    def test_tasks(self, client):
        tasks = client.app.state.tasks
        created = tasks.create("u1", "Buy milk")
        tasks.create("u2", "Not mine")

        listed = client.get("/api/tasks", params={"userId": "u1"}).json()
        assert listed["total"] == 1

        assert client.get(f"/api/tasks/{created['id']}").json()["data"]["title"] == "Buy milk"
        assert client.delete(f"/api/tasks/{created['id']}").status_code == 200
        assert client.get(f"/api/tasks/{created['id']}").status_code == 404

    def test_events(self, client):
        events = client.app.state.events
        created = events.create("u1", "Standup", "2026-10-20T09:00:00", "2026-10-20T09:15:00")

        listed = client.get("/api/events", params={"userId": "u1"}).json()
        assert [e["title"] for e in listed["data"]] == ["Standup"]

        assert client.get(f"/api/events/{created['id']}").status_code == 200
        assert client.delete(f"/api/events/{created['id']}").status_code == 200
        assert client.delete(f"/api/events/{created['id']}").status_code == 404


class TestConversationHistory:
    def test_store_list_and_clear(self, client):
        posted = client.post("/api/conversation/history", json={
            "userId": "u1", "conversationId": "c1", "role": "user", "content": "hello",
        })
        assert posted.json()["success"] is True

        listed = client.get("/api/conversation/history", params={"userId": "u1"}).json()
        assert [m["content"] for m in listed["data"]] == ["hello"]

        cleared = client.delete("/api/conversation/history", params={"userId": "u1"}).json()
        assert cleared["deletedCount"] == 1

    def test_user_id_required(self, client):
        assert client.get("/api/conversation/history").status_code == 422

    def test_general_agent_persists_turns(self, client, nlu):
        nlu.generations.append({"text": "Sure."})
        client.post("/api/agent/general", json={"message": "What is GTD?", "userId": "u7"})
        listed = client.get("/api/conversation/history", params={"userId": "u7"}).json()
        assert [m["role"] for m in listed["data"]] == ["user", "assistant"]
