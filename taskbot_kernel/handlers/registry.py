"""
Handler Registry — maps every Intent and batch operation to a handler.

Behavioral Contract:
- Construction fails if any Intent lacks a handler
- `both` is served by the task AND event handlers together
- Every BatchOperationType has a handler
- The task handler doubles as the fallback for failed dispatches
"""

from typing import Dict, List, Optional

from taskbot_kernel.handlers.agents import AnswerHandler, EventHandler, ResearchHandler, TaskHandler
from taskbot_kernel.handlers.base import Handler
from taskbot_kernel.handlers.batch import BatchTaskHandler
from taskbot_kernel.models.routing import BatchOperationType, Intent
from taskbot_kernel.nlu.client import NLUService
from taskbot_kernel.store.repository import EventRepository, TaskRepository


class RegistryError(Exception):
    """Raised when the registry does not cover the closed intent set."""
    pass


class HandlerRegistry:

    def __init__(
        self,
        handlers: Dict[Intent, Handler],
        batch_handlers: Optional[Dict[BatchOperationType, Handler]] = None,
    ):
        self._handlers = dict(handlers)
        self._batch = dict(batch_handlers or {})
        self._validate()

    def _validate(self) -> None:
        missing = [
            i.value for i in Intent
            if i != Intent.BOTH and i not in self._handlers
        ]
        if missing:
            raise RegistryError(f"No handler registered for intent(s): {', '.join(missing)}")
        missing_ops = [op.value for op in BatchOperationType if op not in self._batch]
        if missing_ops:
            raise RegistryError(
                f"No handler registered for batch operation(s): {', '.join(missing_ops)}"
            )

    def for_intent(self, intent: Intent) -> List[Handler]:
        if intent == Intent.BOTH:
            return [self._handlers[Intent.TASK], self._handlers[Intent.EVENT]]
        return [self._handlers[intent]]

    def for_batch(self, operation: BatchOperationType) -> Handler:
        return self._batch[operation]

    def fallback(self) -> Handler:
        return self._handlers[Intent.TASK]

    @classmethod
    def default(
        cls,
        nlu: NLUService,
        tasks: TaskRepository,
        events: EventRepository,
    ) -> "HandlerRegistry":
        batch = BatchTaskHandler(tasks)
        return cls(
            {
                Intent.TASK: TaskHandler(nlu, tasks),
                Intent.EVENT: EventHandler(nlu, events),
                Intent.RESEARCH: ResearchHandler(nlu),
                Intent.ANSWER: AnswerHandler(nlu),
            },
            {op: batch for op in BatchOperationType},
        )
