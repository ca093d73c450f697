"""
Batch Resolver — turns "delete these" / "finish all of them" into concrete task IDs.

Targets are recovered from the annotated history only:

    extractor (LLM or reference rules) → candidate ids/titles
        → filtered against the Entity Reference Index → BatchOperation

Behavioral Contract:
- Never fabricates: an id absent from the indexed history is dropped
- Same title under two ids → the most recent id wins
- Output follows history order, so resolving twice gives the same result
- Extractor failure falls back to the deterministic ReferenceExtractor
"""

import logging
import re
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, ValidationError

from taskbot_kernel.context.entity_index import EntityReferenceIndex
from taskbot_kernel.models.conversation import EntityKind, EntityReference
from taskbot_kernel.models.routing import BatchOperation, BatchOperationType
from taskbot_kernel.nlu.client import NLUError, NLUService
from taskbot_kernel.routing.classifier import ClassificationError

logger = logging.getLogger(__name__)

_ALL_RE = re.compile(r"\ball\b")


class ExtractedEntities(BaseModel):
    ids: List[str] = []
    titles: List[str] = []
    reasoning: str = ""


class EntityExtractor(Protocol):
    """Protocol for batch target extraction — pluggable backend."""

    async def extract_entities(self, message: str, history: List[dict]) -> ExtractedEntities: ...


def _task_refs(index: EntityReferenceIndex, history: List[dict]) -> List[List[EntityReference]]:
    """Task references per assistant message, oldest first, deleted tasks removed."""
    assistant = [m.get("content", "") for m in history if m.get("role") == "assistant"]
    deleted = set()
    for content in assistant:
        deleted.update(index.parse_deleted(content))
    per_turn = []
    for content in assistant:
        refs = [
            r for r in index.parse_annotations(content)
            if r.kind == EntityKind.TASK and r.id not in deleted
        ]
        per_turn.append(refs)
    return per_turn


class ReferenceExtractor:
    """
    Deterministic extraction: titles named in the message, else every
    reference when the message says "all", else the latest assistant turn's
    task references.
    """

    def __init__(self, index: EntityReferenceIndex):
        self.index = index

    async def extract_entities(self, message: str, history: List[dict]) -> ExtractedEntities:
        per_turn = _task_refs(self.index, history)
        lower = message.lower()

        named = [
            r for refs in per_turn for r in refs
            if r.title and re.search(rf"\b{re.escape(r.title.lower())}\b", lower)
        ]
        if named:
            return ExtractedEntities(
                ids=[r.id for r in named],
                titles=[r.title for r in named],
                reasoning="Titles named in the message",
            )

        if _ALL_RE.search(lower):
            every = [r for refs in per_turn for r in refs]
            return ExtractedEntities(
                ids=[r.id for r in every],
                titles=[r.title for r in every],
                reasoning="All tasks mentioned in recent history",
            )

        for refs in reversed(per_turn):
            if refs:
                return ExtractedEntities(
                    ids=[r.id for r in refs],
                    titles=[r.title for r in refs],
                    reasoning="Tasks from the most recent assistant message",
                )
        return ExtractedEntities(reasoning="No task references in history")


EXTRACTOR_INSTRUCTIONS = """You extract which tasks a user is referring to in a batch instruction.
Only use task IDs that appear in the conversation as [Task ID: ...] annotations.
Pronouns such as "these", "those", "them" and "that" refer to the tasks in the most recent assistant message.
"all" refers to every task mentioned in the conversation.
If nothing matches, return empty lists."""


class EntitySchema(BaseModel):
    taskIds: List[str] = []
    taskTitles: List[str] = []
    reasoning: str = ""


class LLMEntityExtractor:
    """Structured-output extraction through the NLU service."""

    def __init__(self, nlu: NLUService, index: EntityReferenceIndex):
        self.nlu = nlu
        self.index = index

    async def extract_entities(self, message: str, history: List[dict]) -> ExtractedEntities:
        transcript = "\n\n".join(f"{m.get('role')}: {m.get('content')}" for m in history)
        prompt = (
            f"Conversation:\n{transcript or '(none)'}\n\n"
            f'User instruction: "{message}"\n\n'
            "Return taskIds, taskTitles and reasoning."
        )
        try:
            raw = await self.nlu.classify(prompt, EntitySchema, system=EXTRACTOR_INSTRUCTIONS)
            parsed = EntitySchema.model_validate(raw)
        except NLUError as e:
            raise ClassificationError(f"Entity extraction unavailable: {e}") from e
        except ValidationError as e:
            raise ClassificationError(f"Entity extraction returned an invalid shape: {e}") from e
        return ExtractedEntities(
            ids=parsed.taskIds, titles=parsed.taskTitles, reasoning=parsed.reasoning,
        )


class BatchResolver:

    def __init__(
        self,
        extractor: EntityExtractor,
        index: EntityReferenceIndex,
        window: int = 5,
    ):
        self.extractor = extractor
        self.index = index
        self.window = window
        self._fallback = ReferenceExtractor(index)

    async def resolve(
        self,
        message: str,
        history: list,
        operation: BatchOperationType,
    ) -> BatchOperation:
        recent = history[-self.window:] if self.window else list(history)
        rendered = self.index.render(recent)
        known = [r for r in self.index.index(recent) if r.kind == EntityKind.TASK]

        try:
            extracted = await self.extractor.extract_entities(message, rendered)
        except ClassificationError as e:
            logger.warning("Entity extraction failed, using history references: %s", e)
            extracted = await self._fallback.extract_entities(message, rendered)

        selected = self._select(extracted, known)
        logger.info(
            "Batch %s resolved to %d task(s): %s (%s)",
            operation.value, len(selected), [r.id for r in selected], extracted.reasoning,
        )
        return BatchOperation(
            operation=operation,
            target_ids=[r.id for r in selected],
            target_titles=[r.title for r in selected],
        )

    @staticmethod
    def _select(
        extracted: ExtractedEntities, known: List[EntityReference],
    ) -> List[EntityReference]:
        position = {r.id: i for i, r in enumerate(known)}
        by_id = {r.id: r for r in known}
        by_title: Dict[str, EntityReference] = {}
        for ref in known:
            if ref.title:
                # Later position wins: known is ordered oldest to latest mention
                by_title[ref.title.lower()] = ref

        chosen: Dict[str, EntityReference] = {}
        for entity_id in extracted.ids:
            ref: Optional[EntityReference] = by_id.get(entity_id)
            if ref is None:
                logger.warning("Dropping unknown task id from batch: %s", entity_id)
                continue
            chosen[ref.id] = ref
        for title in extracted.titles:
            ref = by_title.get(title.lower())
            if ref is not None:
                chosen[ref.id] = ref

        # Collapse duplicate titles onto the most recent id
        latest: Dict[str, EntityReference] = {}
        for ref in sorted(chosen.values(), key=lambda r: position[r.id]):
            latest[ref.title.lower() or ref.id] = ref
        return sorted(latest.values(), key=lambda r: position[r.id])
