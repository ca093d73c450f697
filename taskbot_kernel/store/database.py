"""
Database — the relational store behind tasks, events and conversation history.

Behavioral Contract:
- query(text, params) -> rows (list of dicts), committed immediately outside a transaction
- with_transaction(fn) runs fn(db) atomically; rollback on any exception
- Individual statements are serialized; callers never hold the lock across an await

Prototype: SQLite. Handlers reach it from async code via asyncio.to_thread.
"""

import sqlite3
import threading
from typing import Any, Callable, List, Sequence, TypeVar

T = TypeVar("T")


class Database:

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the tables if they don't exist."""
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'in_progress', 'completed', 'cancelled')),
                    priority TEXT NOT NULL DEFAULT 'medium'
                        CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
                    due_date TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id);

                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    location TEXT,
                    type TEXT NOT NULL DEFAULT 'other'
                        CHECK (type IN ('meeting', 'appointment', 'deadline', 'reminder', 'other')),
                    status TEXT NOT NULL DEFAULT 'scheduled'
                        CHECK (status IN ('scheduled', 'in_progress', 'completed', 'cancelled')),
                    attendees TEXT NOT NULL DEFAULT '[]',
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id);

                CREATE TABLE IF NOT EXISTS conversation_history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    conversation_id TEXT,
                    session_id TEXT,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                    content TEXT NOT NULL,
                    actions TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_history_user
                    ON conversation_history(user_id, conversation_id, session_id);
            """)
            self._conn.commit()

    def query(self, text: str, params: Sequence[Any] = ()) -> List[dict]:
        with self._lock:
            cursor = self._conn.execute(text, tuple(params))
            rows = [dict(row) for row in cursor.fetchall()]
            if self._tx_depth == 0:
                self._conn.commit()
            return rows

    def execute(self, text: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count."""
        with self._lock:
            cursor = self._conn.execute(text, tuple(params))
            if self._tx_depth == 0:
                self._conn.commit()
            return cursor.rowcount

    def with_transaction(self, fn: Callable[["Database"], T]) -> T:
        with self._lock:
            self._tx_depth += 1
            try:
                result = fn(self)
            except Exception:
                if self._tx_depth == 1:
                    self._conn.rollback()
                raise
            else:
                if self._tx_depth == 1:
                    self._conn.commit()
                return result
            finally:
                self._tx_depth -= 1

    def close(self) -> None:
        self._conn.close()
