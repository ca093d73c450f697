"""Routing Model — the classifier's decision and resolved batch operations."""

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    """Closed set of routing targets. The Handler Registry must cover every member."""

    TASK = "task"
    EVENT = "event"
    RESEARCH = "research"
    ANSWER = "answer"
    BOTH = "both"                           # task AND event in the same turn


class BatchOperationType(str, Enum):
    DELETE = "delete"
    COMPLETE = "complete"
    UPDATE = "update"


class RoutingDecision(BaseModel):
    """Created once per inbound message; never mutated."""

    model_config = ConfigDict(frozen=True)

    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    parameters: dict = {}
    reasoning: str = ""
    needs_clarification: bool = False


class BatchOperation(BaseModel):
    """A resolved set of target entity IDs plus the operation to apply to all of them."""

    model_config = ConfigDict(frozen=True)

    operation: BatchOperationType
    target_ids: List[str] = []
    target_titles: List[str] = []

    @property
    def is_empty(self) -> bool:
        return not self.target_ids
