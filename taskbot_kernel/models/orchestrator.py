"""Orchestrator Model — run configuration, states and handler results."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from taskbot_kernel.models.conversation import Action


class OrchestratorConfig(BaseModel):
    history_window: int = 10                # Turns loaded and indexed per request
    batch_window: int = 5                   # Turns the batch resolver reads
    handler_timeout_seconds: float = Field(default=30.0, gt=0)
    clarification_threshold: float = Field(ge=0.0, le=1.0, default=0.5)
    persist_turns: bool = True


class OrchestrationState(str, Enum):
    RECEIVED = "received"
    CLASSIFIED = "classified"
    BATCH_RESOLVING = "batch_resolving"
    HANDLER_RUNNING = "handler_running"
    AGGREGATING = "aggregating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class HandlerResult(BaseModel):
    """The single output contract every handler returns."""

    response: str = ""
    actions: List[Action] = []
    agent: str
    timed_out: bool = False
