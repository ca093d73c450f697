"""Task and Event records as stored by the persistence collaborator."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class EventType(str, Enum):
    MEETING = "meeting"
    APPOINTMENT = "appointment"
    DEADLINE = "deadline"
    REMINDER = "reminder"
    OTHER = "other"


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Task(BaseModel):
    id: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[str] = None          # ISO-8601
    tags: List[str] = []
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Event(BaseModel):
    id: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    start_date: str                         # ISO-8601
    end_date: str                           # ISO-8601
    location: Optional[str] = None
    type: EventType = EventType.OTHER
    status: EventStatus = EventStatus.SCHEDULED
    attendees: List[str] = []
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
