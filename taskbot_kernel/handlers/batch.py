"""
Batch task handler — applies one resolved BatchOperation to every target.

Operations:
  delete   → removes each task, one `task_deleted` action per removal
  complete → status=completed, one `task` action per updated task
  update   → confirmation only; the follow-up message carries the changes

All mutations of one batch run in a single transaction.
"""

import asyncio
import logging
import sqlite3
from typing import List

from taskbot_kernel.handlers.base import HandlerError, HandlerRequest
from taskbot_kernel.models.conversation import Action
from taskbot_kernel.models.orchestrator import HandlerResult
from taskbot_kernel.models.routing import BatchOperationType
from taskbot_kernel.store.database import Database
from taskbot_kernel.store.repository import TaskRepository

logger = logging.getLogger(__name__)

NOTHING_TO_APPLY = (
    "I couldn't find any tasks to {operation}. Could you tell me which tasks you mean?"
)


def _count(n: int) -> str:
    return f"{n} task" if n == 1 else f"{n} tasks"


class BatchTaskHandler:

    name = "task"

    def __init__(self, tasks: TaskRepository):
        self.tasks = tasks

    async def handle(self, request: HandlerRequest) -> HandlerResult:
        batch = request.batch
        if batch is None or batch.is_empty:
            raise HandlerError("Batch handler called without targets")

        if batch.operation == BatchOperationType.UPDATE:
            titles = ", ".join(f'"{t}"' for t in batch.target_titles if t)
            return HandlerResult(
                response=(
                    f"I found {_count(len(batch.target_ids))} to update"
                    f"{': ' + titles if titles else ''}. What would you like to change?"
                ),
                agent=self.name,
            )

        try:
            actions = await asyncio.to_thread(
                self.tasks.db.with_transaction,
                lambda db: self._apply(db, batch.operation, batch.target_ids, request.user_id),
            )
        except sqlite3.Error as e:
            raise HandlerError(f"Batch {batch.operation.value} failed: {e}") from e

        if not actions:
            logger.info("Batch %s matched no existing task", batch.operation.value)
            return HandlerResult(
                response=NOTHING_TO_APPLY.format(operation=batch.operation.value),
                agent=self.name,
            )
        if batch.operation == BatchOperationType.DELETE:
            response = f"Deleted {_count(len(actions))}."
        else:
            response = f"Marked {_count(len(actions))} as complete!"
        logger.info("Batch %s applied to %d task(s)", batch.operation.value, len(actions))
        return HandlerResult(response=response, actions=actions, agent=self.name)

    def _apply(
        self, db: Database, operation: BatchOperationType, ids: List[str], user_id: str,
    ) -> List[Action]:
        actions = []
        for task_id in ids:
            if operation == BatchOperationType.DELETE:
                removed = self.tasks.delete(task_id, user_id)
                if removed is not None:
                    actions.append(Action(type="task_deleted", data={
                        "id": task_id, "title": removed["title"],
                    }))
            else:
                updated = self.tasks.complete(task_id, user_id)
                if updated is not None:
                    actions.append(Action(type="task", data=updated))
            if not actions or actions[-1].entity_id != task_id:
                logger.warning("Batch target %s not found for user %s", task_id, user_id)
        return actions
