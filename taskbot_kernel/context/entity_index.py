"""
Entity Reference Index — recovers task/event mentions from prior assistant turns.

Each assistant turn carries its entities twice: as structured `actions` and as a
textual annotation appended to the content, e.g.

    [Task ID: t1, Title: "Renew contract", Priority: high, Status: pending]

Deletions are carried the same way and invalidate every mention of the entity:

    [Deleted Task ID: t1, Title: "Renew contract"]

The textual form exists because downstream extractors may only see rendered text.

Behavioral Contract:
- Pure: no I/O, never raises on malformed turns (they are skipped)
- De-duplicated by entity id, most-recent-wins on conflict
- Only the last `window` turns are considered
- An entity deleted anywhere in the window is never returned
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from taskbot_kernel.models.conversation import (
    Action,
    ConversationTurn,
    EntityKind,
    EntityReference,
    Role,
)

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Context - Items mentioned:"

_ANNOTATION_RE = re.compile(r"\[(Task|Event) ID:\s*((?:\\.|[^\]\\])*)\]", re.IGNORECASE)
_DELETED_RE = re.compile(r"\[Deleted (Task|Event) ID:\s*([^,\]\s]+)", re.IGNORECASE)
_FIELD_RE = re.compile(r"([A-Za-z_][A-Za-z_ ]*):\s*(?:\"((?:\\.|[^\"\\])*)\"|([^,]*))")
_ESCAPED_RE = re.compile(r"\\(.)")

# Action types that remove an entity, by the kind they remove
_DELETION_TYPES = {"task_deleted": EntityKind.TASK, "event_deleted": EntityKind.EVENT}

# Snapshot fields rendered per kind: (label, candidate data keys)
_TASK_FIELDS = [("Priority", ("priority",)), ("Status", ("status",))]
_EVENT_FIELDS = [("Date", ("start_date", "startDate"))]


def _first(data: dict, keys: Iterable[str]) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _field_key(label: str) -> str:
    return label.strip().lower().replace(" ", "_")


def _quote(value: Any) -> str:
    """Double-quoted title with backslash, quote and closing bracket escaped."""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("]", "\\]")
    return f'"{text}"'


class EntityReferenceIndex:
    """Builds the flat reference list the batch resolver and classifiers read."""

    def __init__(self, window: int = 10):
        self.window = window

    def index(self, turns: List[Any]) -> List[EntityReference]:
        window = self._coerce(turns[-self.window:] if self.window else turns)
        deleted = self.deleted_in(window)
        refs: Dict[str, EntityReference] = {}
        for turn in window:
            if turn.role != Role.ASSISTANT:
                continue
            for ref in self.references_in(turn):
                if ref.id in deleted:
                    continue
                # Re-insert so iteration order follows the latest mention
                refs.pop(ref.id, None)
                refs[ref.id] = ref
        return list(refs.values())

    def references_in(self, turn: ConversationTurn) -> List[EntityReference]:
        """References carried by one turn, structured actions first, then text."""
        found: Dict[str, EntityReference] = {}
        for action in turn.actions:
            ref = self._from_action(action)
            if ref is not None:
                found[ref.id] = ref
        for ref in self.parse_annotations(turn.content):
            found.setdefault(ref.id, ref)
        return list(found.values())

    def deleted_in(self, turns: List[Any]) -> Set[str]:
        """Ids deleted in any assistant turn, from actions or annotations."""
        deleted: Set[str] = set()
        for turn in self._coerce(turns):
            if turn.role != Role.ASSISTANT:
                continue
            for action in turn.actions:
                if action.type in _DELETION_TYPES and action.entity_id is not None:
                    deleted.add(action.entity_id)
            deleted.update(self.parse_deleted(turn.content))
        return deleted

    def annotate(self, turn: ConversationTurn) -> str:
        """Content with the textual entity annotation appended."""
        if turn.role != Role.ASSISTANT or CONTEXT_HEADER in turn.content:
            return turn.content
        lines = [self.encode(action) for action in turn.actions]
        lines = [line for line in lines if line]
        if not lines:
            return turn.content
        return f"{turn.content}\n\n{CONTEXT_HEADER}\n" + "\n".join(lines)

    def render(self, turns: List[Any]) -> List[dict]:
        """Role/content messages with annotated assistant content."""
        return [
            {"role": turn.role.value, "content": self.annotate(turn)}
            for turn in self._coerce(turns)
        ]

    @staticmethod
    def encode(action: Action) -> str:
        data = action.data if isinstance(action.data, dict) else {}
        if data.get("id") in (None, ""):
            return ""
        if action.type in _DELETION_TYPES:
            kind = _DELETION_TYPES[action.type].value.capitalize()
            return f"[Deleted {kind} ID: {data['id']}, Title: {_quote(data.get('title', ''))}]"
        if action.type not in (EntityKind.TASK.value, EntityKind.EVENT.value):
            return ""
        kind = action.type.capitalize()
        parts = [f"{kind} ID: {data['id']}", f"Title: {_quote(data.get('title', ''))}"]
        fields = _TASK_FIELDS if action.type == EntityKind.TASK.value else _EVENT_FIELDS
        for label, keys in fields:
            parts.append(f"{label}: {_first(data, keys)}")
        return "[" + ", ".join(parts) + "]"

    @staticmethod
    def parse_annotations(content: str) -> List[EntityReference]:
        refs = []
        for match in _ANNOTATION_RE.finditer(content or ""):
            kind = EntityKind(match.group(1).lower())
            fields: Dict[str, str] = {}
            for field in _FIELD_RE.finditer("ID: " + match.group(2)):
                if field.group(2) is not None:
                    value = _ESCAPED_RE.sub(r"\1", field.group(2))
                else:
                    value = field.group(3).strip()
                fields[_field_key(field.group(1))] = value
            entity_id = fields.pop("id", "")
            if not entity_id:
                continue
            title = fields.pop("title", "")
            refs.append(EntityReference(
                id=entity_id, kind=kind, title=title, snapshot_fields=fields,
            ))
        return refs

    @staticmethod
    def parse_deleted(content: str) -> Set[str]:
        return {match.group(2) for match in _DELETED_RE.finditer(content or "")}

    def _from_action(self, action: Action) -> Optional[EntityReference]:
        if action.type not in (EntityKind.TASK.value, EntityKind.EVENT.value):
            return None
        data = action.data if isinstance(action.data, dict) else {}
        entity_id = action.entity_id
        if entity_id is None:
            return None
        fields = _TASK_FIELDS if action.type == EntityKind.TASK.value else _EVENT_FIELDS
        snapshot = {}
        for label, keys in fields:
            value = _first(data, keys)
            if value is not None:
                snapshot[_field_key(label)] = str(value)
        return EntityReference(
            id=entity_id,
            kind=EntityKind(action.type),
            title=str(data.get("title") or ""),
            snapshot_fields=snapshot,
        )

    def _coerce(self, turns: Iterable[Any]) -> List[ConversationTurn]:
        """Accept stored rows as dicts; drop malformed actions instead of failing."""
        coerced = []
        for raw in turns:
            if isinstance(raw, ConversationTurn):
                coerced.append(raw)
                continue
            if not isinstance(raw, dict):
                continue
            actions = []
            raw_actions = raw.get("actions")
            if isinstance(raw_actions, list):
                for item in raw_actions:
                    try:
                        actions.append(Action.model_validate(item))
                    except ValidationError:
                        logger.debug("Skipping malformed action in history: %r", item)
            try:
                coerced.append(ConversationTurn(
                    role=raw.get("role"),
                    content=raw.get("content") or "",
                    actions=actions,
                ))
            except ValidationError:
                logger.debug("Skipping malformed turn in history")
        return coerced
