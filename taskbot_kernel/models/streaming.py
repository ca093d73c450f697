"""Streaming Model — lifecycle events pushed to the caller."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class StreamEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    STEP = "step"
    COMPLETE = "complete"
    ERROR = "error"
    DONE = "done"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class StepEvent(BaseModel):
    """One progress notification. `number` increases monotonically within a request."""

    number: int
    agent: str
    action: str
    status: StepStatus
    timestamp: datetime
