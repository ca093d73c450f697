"""
Task and Event tools exposed to the generator, bound to one user.

Every tool returns {success, task|tasks|event|events, message|error}; deletions
return deleted_task|deleted_event with the removed id and title. Storage
errors are reported in the result so the generator can explain them.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError

from taskbot_kernel.nlu.client import Tool
from taskbot_kernel.store.repository import EventRepository, TaskRepository

logger = logging.getLogger(__name__)

_TASK_STATUS = ["pending", "in_progress", "completed", "cancelled"]
_TASK_PRIORITY = ["low", "medium", "high", "urgent"]
_EVENT_TYPE = ["meeting", "appointment", "deadline", "reminder", "other"]
_EVENT_STATUS = ["scheduled", "in_progress", "completed", "cancelled"]


def _guarded(verb: str, fn: Callable[..., Awaitable[dict]]) -> Callable[..., Awaitable[dict]]:
    async def run(**kwargs) -> dict:
        try:
            return await fn(**kwargs)
        except (sqlite3.Error, ValidationError, ValueError) as e:
            logger.warning("Failed to %s: %s", verb, e)
            return {"success": False, "error": f"Failed to {verb}: {e}"}
    return run


def _schema(properties: dict, required: List[str]) -> dict:
    return {"type": "object", "properties": properties, "required": required}


def task_tools(repo: TaskRepository, user_id: str) -> List[Tool]:
    async def create_task(title, description=None, priority="medium", due_date=None, tags=None):
        task = await asyncio.to_thread(
            repo.create, user_id, title, description, priority, due_date, tags,
        )
        return {"success": True, "task": task, "message": f'Task "{title}" created successfully'}

    async def get_task(task_id):
        task = await asyncio.to_thread(repo.get, task_id, user_id)
        if task is None:
            return {"success": False, "error": "Task not found"}
        return {"success": True, "task": task}

    async def update_task(task_id, **changes):
        task = await asyncio.to_thread(partial(repo.update, task_id, user_id, **changes))
        if task is None:
            return {"success": False, "error": "Task not found"}
        return {"success": True, "task": task, "message": "Task updated successfully"}

    async def delete_task(task_id):
        removed = await asyncio.to_thread(repo.delete, task_id, user_id)
        if removed is None:
            return {"success": False, "error": "Task not found"}
        return {
            "success": True,
            "deleted_task": {"id": task_id, "title": removed["title"]},
            "message": "Task deleted successfully",
        }

    async def list_tasks(status=None, priority=None, search=None, limit=10, offset=0):
        page = await asyncio.to_thread(
            repo.list, user_id, status, priority, search, limit, offset,
        )
        return {
            "success": True,
            "tasks": page["tasks"],
            "total": page["total"],
            "message": f"Found {page['total']} task(s)",
        }

    async def search_tasks(query, limit=5):
        tasks = await asyncio.to_thread(repo.search, user_id, query, limit)
        return {"success": True, "tasks": tasks, "message": f"Found {len(tasks)} matching task(s)"}

    fields = {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "status": {"type": "string", "enum": _TASK_STATUS},
        "priority": {"type": "string", "enum": _TASK_PRIORITY},
        "due_date": {"type": "string", "description": "ISO-8601 date or datetime"},
        "tags": {"type": "array", "items": {"type": "string"}},
    }
    task_id = {"task_id": {"type": "string"}}
    return [
        Tool("create_task", "Create a new task",
             _schema({k: v for k, v in fields.items() if k != "status"}, ["title"]),
             _guarded("create task", create_task)),
        Tool("get_task", "Get a task by ID",
             _schema(task_id, ["task_id"]), _guarded("get task", get_task)),
        Tool("update_task", "Update fields of an existing task",
             _schema({**task_id, **fields}, ["task_id"]), _guarded("update task", update_task)),
        Tool("delete_task", "Delete a task by ID",
             _schema(task_id, ["task_id"]), _guarded("delete task", delete_task)),
        Tool("list_tasks", "List tasks with optional filters",
             _schema({
                 "status": fields["status"],
                 "priority": fields["priority"],
                 "search": {"type": "string"},
                 "limit": {"type": "integer", "default": 10},
                 "offset": {"type": "integer", "default": 0},
             }, []),
             _guarded("list tasks", list_tasks)),
        Tool("search_tasks", "Search tasks by words in title or description",
             _schema({"query": {"type": "string"}, "limit": {"type": "integer", "default": 5}},
                     ["query"]),
             _guarded("search tasks", search_tasks)),
    ]


def event_tools(
    repo: EventRepository,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[Tool]:
    """Event tools; `now` is the caller's clock, defaulting to the server's UTC time."""
    async def create_event(title, start_date, end_date, description=None, location=None,
                           type="other", attendees=None):
        event = await asyncio.to_thread(
            repo.create, user_id, title, start_date, end_date, description, location,
            type, attendees,
        )
        return {"success": True, "event": event, "message": f'Event "{title}" created successfully'}

    async def get_event(event_id):
        event = await asyncio.to_thread(repo.get, event_id, user_id)
        if event is None:
            return {"success": False, "error": "Event not found"}
        return {"success": True, "event": event}

    async def update_event(event_id, **changes):
        event = await asyncio.to_thread(partial(repo.update, event_id, user_id, **changes))
        if event is None:
            return {"success": False, "error": "Event not found"}
        return {"success": True, "event": event, "message": "Event updated successfully"}

    async def delete_event(event_id):
        removed = await asyncio.to_thread(repo.delete, event_id, user_id)
        if removed is None:
            return {"success": False, "error": "Event not found"}
        return {
            "success": True,
            "deleted_event": {"id": event_id, "title": removed["title"]},
            "message": "Event deleted successfully",
        }

    async def list_events(type=None, status=None, start_from=None, start_to=None,
                          limit=10, offset=0):
        page = await asyncio.to_thread(
            repo.list, user_id, type, status, start_from, start_to, limit, offset,
        )
        return {
            "success": True,
            "events": page["events"],
            "total": page["total"],
            "message": f"Found {page['total']} event(s)",
        }

    async def get_upcoming_events(limit=5):
        clock = now or datetime.now(timezone.utc)
        # Start dates are stored as the caller's wall-clock time
        cutoff = clock.replace(tzinfo=None).isoformat(timespec="seconds")
        events = await asyncio.to_thread(repo.upcoming, user_id, cutoff, limit)
        return {"success": True, "events": events, "message": f"{len(events)} upcoming event(s)"}

    fields = {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "start_date": {"type": "string", "description": "ISO-8601 datetime"},
        "end_date": {"type": "string", "description": "ISO-8601 datetime"},
        "location": {"type": "string"},
        "type": {"type": "string", "enum": _EVENT_TYPE},
        "status": {"type": "string", "enum": _EVENT_STATUS},
        "attendees": {"type": "array", "items": {"type": "string"}},
    }
    event_id = {"event_id": {"type": "string"}}
    return [
        Tool("create_event", "Create a calendar event",
             _schema({k: v for k, v in fields.items() if k != "status"},
                     ["title", "start_date", "end_date"]),
             _guarded("create event", create_event)),
        Tool("get_event", "Get an event by ID",
             _schema(event_id, ["event_id"]), _guarded("get event", get_event)),
        Tool("update_event", "Update fields of an existing event",
             _schema({**event_id, **fields}, ["event_id"]), _guarded("update event", update_event)),
        Tool("delete_event", "Delete an event by ID",
             _schema(event_id, ["event_id"]), _guarded("delete event", delete_event)),
        Tool("list_events", "List events with optional filters",
             _schema({
                 "type": fields["type"],
                 "status": fields["status"],
                 "start_from": {"type": "string"},
                 "start_to": {"type": "string"},
                 "limit": {"type": "integer", "default": 10},
                 "offset": {"type": "integer", "default": 0},
             }, []),
             _guarded("list events", list_events)),
        Tool("get_upcoming_events", "Upcoming scheduled events",
             _schema({"limit": {"type": "integer", "default": 5}}, []),
             _guarded("get upcoming events", get_upcoming_events)),
    ]
