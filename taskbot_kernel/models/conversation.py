"""Conversation Model — turns, actions and the entity references recovered from them."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EntityKind(str, Enum):
    TASK = "task"
    EVENT = "event"


class Action(BaseModel):
    """A normalized record of a side effect or result produced by a handler."""

    type: str                               # task, event, research, task_deleted, event_deleted
    data: dict = {}

    @property
    def entity_id(self) -> Optional[str]:
        value = self.data.get("id")
        return str(value) if value not in (None, "") else None


class ConversationTurn(BaseModel):
    """One stored message. Immutable once written; the log is append-only."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    actions: List[Action] = []
    created_at: Optional[datetime] = None


class EntityReference(BaseModel):
    """A recovered pointer to a task or event mentioned in an earlier assistant turn."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: EntityKind
    title: str = ""
    snapshot_fields: Dict[str, str] = Field(default_factory=dict)


class RequestContext(BaseModel):
    """Request-scoped conversation context sent by the caller."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    current_datetime: Optional[str] = Field(default=None, alias="currentDateTime")
    timezone: str = "UTC"


class AgentRequest(BaseModel):
    """Inbound chat message, shared by the synchronous and streaming endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    user_id: str = Field(default="default-user", alias="userId")
    context: RequestContext = Field(default_factory=RequestContext)


class AgentResponse(BaseModel):
    """Final result of one orchestration run."""

    response: str
    actions: List[Action] = []
    agent: str
