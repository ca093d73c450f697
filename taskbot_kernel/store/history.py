"""
Conversation History Store — append-only log of turns per user/conversation/session.

Behavioral Contract:
- append() never rewrites an existing turn
- load_recent() returns the last N turns oldest-first
- Read failures degrade to an empty history; they never fail the request
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from taskbot_kernel.models.conversation import ConversationTurn
from taskbot_kernel.store.database import Database

logger = logging.getLogger(__name__)


def _scope(user_id: str, conversation_id: Optional[str], session_id: Optional[str]):
    conditions, params = ["user_id = ?"], [user_id]
    if conversation_id:
        conditions.append("conversation_id = ?")
        params.append(conversation_id)
    if session_id:
        conditions.append("session_id = ?")
        params.append(session_id)
    return " AND ".join(conditions), params


class ConversationHistoryStore:

    def __init__(self, db: Database):
        self.db = db

    async def load_recent(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[ConversationTurn]:
        try:
            rows = await asyncio.to_thread(
                self._load, user_id, conversation_id, session_id, limit,
            )
        except sqlite3.Error as e:
            logger.warning("Could not load conversation history for %s: %s", user_id, e)
            return []
        return [self._turn(row) for row in reversed(rows)]

    async def append(
        self,
        user_id: str,
        turn: ConversationTurn,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ConversationTurn:
        created_at = turn.created_at or datetime.now(timezone.utc)
        stored = turn.model_copy(update={"created_at": created_at})
        await asyncio.to_thread(
            self.db.execute,
            "INSERT INTO conversation_history (id, user_id, conversation_id, session_id, "
            "role, content, actions, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(uuid4()), user_id, conversation_id, session_id, stored.role.value,
                stored.content,
                json.dumps([a.model_dump(mode="json") for a in stored.actions]),
                created_at.isoformat(),
            ),
        )
        return stored

    async def messages(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        """Stored turns oldest-first, with ids and timestamps, for display."""
        rows = await asyncio.to_thread(self._load, user_id, conversation_id, session_id, limit)
        messages = []
        for row in reversed(rows):
            turn = self._turn(row)
            messages.append({
                "id": row["id"],
                "role": turn.role.value,
                "content": turn.content,
                "timestamp": row["created_at"],
                "actions": [a.model_dump(mode="json") for a in turn.actions],
            })
        return messages

    async def clear(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> int:
        where, params = _scope(user_id, conversation_id, session_id)
        removed = await asyncio.to_thread(
            self.db.execute, f"DELETE FROM conversation_history WHERE {where}", params,
        )
        logger.info("Cleared %d history turns for %s", removed, user_id)
        return removed

    def _load(self, user_id, conversation_id, session_id, limit) -> List[dict]:
        where, params = _scope(user_id, conversation_id, session_id)
        return self.db.query(
            f"SELECT id, role, content, actions, created_at FROM conversation_history "
            f"WHERE {where} ORDER BY seq DESC LIMIT ?",
            params + [limit],
        )

    @staticmethod
    def _turn(row: dict) -> ConversationTurn:
        try:
            actions = json.loads(row.get("actions") or "[]")
        except json.JSONDecodeError:
            logger.debug("Stored actions are not valid JSON; dropping them")
            actions = []
        return ConversationTurn(
            role=row["role"],
            content=row["content"],
            actions=[a for a in actions if isinstance(a, dict) and "type" in a],
            created_at=row.get("created_at"),
        )
