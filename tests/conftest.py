"""Shared fixtures: in-memory stores and a scripted NLU service."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from taskbot_kernel.models.orchestrator import HandlerResult
from taskbot_kernel.nlu.client import Generation, NLUError, Research
from taskbot_kernel.store.database import Database
from taskbot_kernel.store.history import ConversationHistoryStore
from taskbot_kernel.store.repository import EventRepository, TaskRepository


class FakeNLU:
    """
    Scripted stand-in for the NLU service.

    `classifications` are returned by classify() in order. Each entry of
    `generations` is either an exception to raise or a dict
    {"text": str, "calls": [(tool_name, args), ...]}; the calls are run
    against the tools handed to generate(), like the real tool loop.
    `researches` script research() the same way with dicts
    {"text": str, "citations": [...], "search_count": int}.
    """

    def __init__(self, classifications=None, generations=None, researches=None):
        self.classifications = list(classifications or [])
        self.generations = list(generations or [])
        self.researches = list(researches or [])
        self.classify_prompts = []
        self.generate_messages = []
        self.research_messages = []

    async def classify(self, prompt, schema, system=None):
        self.classify_prompts.append(prompt)
        if not self.classifications:
            raise NLUError("No scripted classification")
        result = self.classifications.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def generate(self, messages, tools=None):
        self.generate_messages.append(messages)
        script = self.generations.pop(0) if self.generations else {"text": "OK"}
        if isinstance(script, Exception):
            raise script
        by_name = {t.name: t for t in tools or []}
        tool_results = []
        for name, args in script.get("calls", []):
            result = await by_name[name].run(args)
            tool_results.append({"tool": name, "args": args, "payload": {"result": result}})
        return Generation(text=script.get("text", ""), tool_results=tool_results)

    async def research(self, messages):
        self.research_messages.append(messages)
        script = self.researches.pop(0) if self.researches else {"text": "OK"}
        if isinstance(script, Exception):
            raise script
        return Research(**script)


class StubHandler:
    """Handler returning a fixed result, raising, or sleeping past a timeout."""

    def __init__(self, name, response="", actions=None, error=None, delay=0.0, on_call=None):
        self.name = name
        self.response = response
        self.actions = actions or []
        self.error = error
        self.delay = delay
        self.on_call = on_call
        self.requests = []

    async def handle(self, request):
        self.requests.append(request)
        if self.on_call is not None:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return HandlerResult(response=self.response, actions=self.actions, agent=self.name)


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def tasks(db):
    return TaskRepository(db)


@pytest.fixture
def events(db):
    return EventRepository(db)


@pytest.fixture
def history(db):
    return ConversationHistoryStore(db)


@pytest.fixture
def seed_task(db):
    """Insert a task with a fixed id."""
    def _seed(task_id, title, user_id="default-user", priority="medium", status="pending"):
        now = datetime.now(timezone.utc).isoformat()
        db.execute(
            "INSERT INTO tasks (id, title, status, priority, tags, user_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (task_id, title, status, priority, json.dumps([]), user_id, now, now),
        )
        return {"id": task_id, "title": title, "priority": priority, "status": status}
    return _seed
