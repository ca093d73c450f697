"""Task and Event repositories over the relational store."""

import json
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from taskbot_kernel.models.records import Event, EventStatus, Task, TaskStatus
from taskbot_kernel.store.database import Database

_TASK_UPDATABLE = ("title", "description", "status", "priority", "due_date", "tags")
_EVENT_UPDATABLE = (
    "title", "description", "start_date", "end_date", "location", "type", "status", "attendees",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _task_from_row(row: dict) -> dict:
    row = dict(row)
    row["tags"] = json.loads(row.get("tags") or "[]")
    return Task.model_validate(row).model_dump(mode="json")


def _event_from_row(row: dict) -> dict:
    row = dict(row)
    row["attendees"] = json.loads(row.get("attendees") or "[]")
    return Event.model_validate(row).model_dump(mode="json")


class TaskRepository:

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        priority: str = "medium",
        due_date: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> dict:
        now = _now()
        task = Task(
            id=str(uuid4()),
            title=title,
            description=description,
            priority=priority,
            due_date=due_date,
            tags=tags or [],
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        self.db.execute(
            "INSERT INTO tasks (id, title, description, status, priority, due_date, tags, "
            "user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (task.id, task.title, task.description, task.status.value, task.priority.value,
             task.due_date, json.dumps(task.tags), user_id, now, now),
        )
        return task.model_dump(mode="json")

    def get(self, task_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        sql, params = "SELECT * FROM tasks WHERE id = ?", [task_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        rows = self.db.query(sql, params)
        return _task_from_row(rows[0]) if rows else None

    def update(self, task_id: str, user_id: Optional[str] = None, **changes) -> Optional[dict]:
        fields = {k: v for k, v in changes.items() if k in _TASK_UPDATABLE and v is not None}
        if not fields:
            raise ValueError("No fields to update")
        current = self.get(task_id, user_id)
        if current is None:
            return None
        merged = Task.model_validate({**current, **fields, "updated_at": _now()})
        self.db.execute(
            "UPDATE tasks SET title = ?, description = ?, status = ?, priority = ?, "
            "due_date = ?, tags = ?, updated_at = ? WHERE id = ?",
            (merged.title, merged.description, merged.status.value, merged.priority.value,
             merged.due_date, json.dumps(merged.tags), merged.updated_at.isoformat(), task_id),
        )
        return merged.model_dump(mode="json")

    def complete(self, task_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        return self.update(task_id, user_id, status=TaskStatus.COMPLETED.value)

    def delete(self, task_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        """Delete a task and return the removed record."""
        def _delete(db: Database) -> Optional[dict]:
            existing = self.get(task_id, user_id)
            if existing is not None:
                db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return existing
        return self.db.with_transaction(_delete)

    def list(
        self,
        user_id: str,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> dict:
        conditions, params = ["user_id = ?"], [user_id]
        if status:
            conditions.append("status = ?")
            params.append(status)
        if priority:
            conditions.append("priority = ?")
            params.append(priority)
        if search:
            conditions.append("(title LIKE ? OR description LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = " AND ".join(conditions)
        rows = self.db.query(
            f"SELECT * FROM tasks WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        total = self.db.query(f"SELECT COUNT(*) AS n FROM tasks WHERE {where}", params)[0]["n"]
        return {"tasks": [_task_from_row(r) for r in rows], "total": total}

    def search(self, user_id: str, text: str, limit: int = 5) -> List[dict]:
        """Every query word must appear in title or description."""
        words = [w for w in text.split() if w]
        if not words:
            return []
        conditions = ["user_id = ?"]
        params: list = [user_id]
        for word in words:
            conditions.append("(title LIKE ? OR COALESCE(description, '') LIKE ?)")
            params.extend([f"%{word}%", f"%{word}%"])
        rows = self.db.query(
            f"SELECT * FROM tasks WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC LIMIT ?",
            params + [limit],
        )
        return [_task_from_row(r) for r in rows]


class EventRepository:

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: str,
        title: str,
        start_date: str,
        end_date: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
        type: str = "other",
        attendees: Optional[List[str]] = None,
    ) -> dict:
        now = _now()
        event = Event(
            id=str(uuid4()),
            title=title,
            description=description,
            start_date=start_date,
            end_date=end_date,
            location=location,
            type=type,
            attendees=attendees or [],
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        self.db.execute(
            "INSERT INTO events (id, title, description, start_date, end_date, location, type, "
            "status, attendees, user_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (event.id, event.title, event.description, event.start_date, event.end_date,
             event.location, event.type.value, event.status.value, json.dumps(event.attendees),
             user_id, now, now),
        )
        return event.model_dump(mode="json")

    def get(self, event_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        sql, params = "SELECT * FROM events WHERE id = ?", [event_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        rows = self.db.query(sql, params)
        return _event_from_row(rows[0]) if rows else None

    def update(self, event_id: str, user_id: Optional[str] = None, **changes) -> Optional[dict]:
        fields = {k: v for k, v in changes.items() if k in _EVENT_UPDATABLE and v is not None}
        if not fields:
            raise ValueError("No fields to update")
        current = self.get(event_id, user_id)
        if current is None:
            return None
        merged = Event.model_validate({**current, **fields, "updated_at": _now()})
        self.db.execute(
            "UPDATE events SET title = ?, description = ?, start_date = ?, end_date = ?, "
            "location = ?, type = ?, status = ?, attendees = ?, updated_at = ? WHERE id = ?",
            (merged.title, merged.description, merged.start_date, merged.end_date,
             merged.location, merged.type.value, merged.status.value,
             json.dumps(merged.attendees), merged.updated_at.isoformat(), event_id),
        )
        return merged.model_dump(mode="json")

    def delete(self, event_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        def _delete(db: Database) -> Optional[dict]:
            existing = self.get(event_id, user_id)
            if existing is not None:
                db.execute("DELETE FROM events WHERE id = ?", (event_id,))
            return existing
        return self.db.with_transaction(_delete)

    def list(
        self,
        user_id: str,
        type: Optional[str] = None,
        status: Optional[str] = None,
        start_from: Optional[str] = None,
        start_to: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> dict:
        conditions, params = ["user_id = ?"], [user_id]
        if type:
            conditions.append("type = ?")
            params.append(type)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if start_from:
            conditions.append("start_date >= ?")
            params.append(start_from)
        if start_to:
            conditions.append("start_date <= ?")
            params.append(start_to)
        where = " AND ".join(conditions)
        rows = self.db.query(
            f"SELECT * FROM events WHERE {where} ORDER BY start_date ASC LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        total = self.db.query(f"SELECT COUNT(*) AS n FROM events WHERE {where}", params)[0]["n"]
        return {"events": [_event_from_row(r) for r in rows], "total": total}

    def upcoming(self, user_id: str, now: str, limit: int = 5) -> List[dict]:
        rows = self.db.query(
            "SELECT * FROM events WHERE user_id = ? AND start_date >= ? AND status = ? "
            "ORDER BY start_date ASC LIMIT ?",
            (user_id, now, EventStatus.SCHEDULED.value, limit),
        )
        return [_event_from_row(r) for r in rows]
