"""Taskbot Kernel data models."""

from taskbot_kernel.models.conversation import (
    Action,
    AgentRequest,
    AgentResponse,
    ConversationTurn,
    EntityKind,
    EntityReference,
    RequestContext,
    Role,
)
from taskbot_kernel.models.orchestrator import (
    HandlerResult,
    OrchestrationState,
    OrchestratorConfig,
)
from taskbot_kernel.models.records import (
    Event,
    EventStatus,
    EventType,
    Task,
    TaskPriority,
    TaskStatus,
)
from taskbot_kernel.models.routing import (
    BatchOperation,
    BatchOperationType,
    Intent,
    RoutingDecision,
)
from taskbot_kernel.models.streaming import StepEvent, StepStatus, StreamEventType

__all__ = [
    "Action",
    "AgentRequest",
    "AgentResponse",
    "BatchOperation",
    "BatchOperationType",
    "ConversationTurn",
    "EntityKind",
    "EntityReference",
    "Event",
    "EventStatus",
    "EventType",
    "HandlerResult",
    "Intent",
    "OrchestrationState",
    "OrchestratorConfig",
    "RequestContext",
    "Role",
    "RoutingDecision",
    "StepEvent",
    "StepStatus",
    "StreamEventType",
    "Task",
    "TaskPriority",
    "TaskStatus",
]
