"""
Action Aggregator — turns heterogeneous tool results into Actions and merges handler output.

Tool results arrive in several shapes depending on where the generator nested
them. For each item the first location that holds an entity key wins:

    payload.result → result → output → data → the item itself

Behavioral Contract:
- Pure; unknown shapes yield no actions rather than errors
- Collections (tasks, events) are flattened into one action per entity
- Duplicate actions (same type and id) are dropped, latest data kept
"""

import logging
from typing import Any, Iterable, List, Optional

from taskbot_kernel.models.conversation import Action
from taskbot_kernel.models.orchestrator import HandlerResult

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = "Request processed"

_ENTITY_KEYS = (
    "task", "tasks", "event", "events", "deleted_task", "deleted_event", "report", "answer",
)


def _locate(item: dict) -> Optional[dict]:
    payload = item.get("payload")
    candidates = [
        payload.get("result") if isinstance(payload, dict) else None,
        item.get("result"),
        item.get("output"),
        item.get("data"),
        item,
    ]
    for candidate in candidates:
        if isinstance(candidate, dict) and any(k in candidate for k in _ENTITY_KEYS):
            return candidate
    return None


def _actions_from(location: dict) -> List[Action]:
    actions = []
    if isinstance(location.get("task"), dict):
        actions.append(Action(type="task", data=location["task"]))
    for task in location.get("tasks") or []:
        if isinstance(task, dict):
            actions.append(Action(type="task", data=task))
    if isinstance(location.get("event"), dict):
        actions.append(Action(type="event", data=location["event"]))
    for event in location.get("events") or []:
        if isinstance(event, dict):
            actions.append(Action(type="event", data=event))
    if isinstance(location.get("deleted_task"), dict):
        actions.append(Action(type="task_deleted", data=location["deleted_task"]))
    if isinstance(location.get("deleted_event"), dict):
        actions.append(Action(type="event_deleted", data=location["deleted_event"]))
    if location.get("report") or location.get("answer"):
        actions.append(Action(type="research", data={
            "report": location.get("report") or location.get("answer"),
            "citations": location.get("citations") or [],
        }))
    return actions


def dedupe(actions: Iterable[Action]) -> List[Action]:
    seen = {}
    ordered: List[Any] = []
    for action in actions:
        entity_id = action.entity_id
        if entity_id is None:
            ordered.append(action)
            continue
        key = (action.type, entity_id)
        if key in seen:
            ordered[seen[key]] = action
        else:
            seen[key] = len(ordered)
            ordered.append(action)
    return ordered


def normalize(raw: Any) -> List[Action]:
    """Extract Actions from a list of tool-result items."""
    if not isinstance(raw, list):
        return []
    actions = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        location = _locate(item)
        if location is None:
            continue
        if location.get("success") is False:
            logger.debug("Skipping failed tool result: %s", location.get("error"))
            continue
        actions.extend(_actions_from(location))
    return dedupe(actions)


def merge(results: List[HandlerResult], agent: str) -> HandlerResult:
    """
    Combine handler outputs into one response. Timed-out handlers contribute
    their placeholder text only when nothing else answered.
    """
    answered = [r for r in results if not r.timed_out]
    texts = [r.response.strip() for r in answered if r.response.strip()]
    if not texts:
        texts = [r.response.strip() for r in results if r.response.strip()]
    actions = dedupe(a for r in results for a in r.actions)
    return HandlerResult(
        response="\n\n".join(texts) or DEFAULT_RESPONSE,
        actions=actions,
        agent=agent,
        timed_out=bool(results) and all(r.timed_out for r in results),
    )
