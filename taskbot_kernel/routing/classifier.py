"""
Intent Classifier Adapter — turns a raw message plus annotated history into a RoutingDecision.

Routing policy (shared by both backends):
  - Definitional/explanatory phrasing ("what is", "explain", "how does") → answer,
    never research, unless an explicit research trigger is present.
  - research only for explicit requests for current/external information
    ("search", "latest", "trending", "research").
  - both only when task AND event/calendar concepts appear in the same message.
  - Priority: batch-operation cues > task/event cues > research cues > generic questions.

The rule-based classifier implements the policy deterministically. The LLM
classifier hands the same policy to the NLU service and validates the answer
against the closed Intent enum.
"""

import logging
import re
from typing import List, Literal, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from taskbot_kernel.models.routing import BatchOperationType, Intent, RoutingDecision
from taskbot_kernel.nlu.client import NLUError, NLUService

logger = logging.getLogger(__name__)


class ClassificationError(Exception):
    """Raised when the NLU call fails or returns a decision outside the intent enum."""
    pass


class IntentClassifier(Protocol):
    """Protocol for intent classification — pluggable backend."""

    async def classify(self, message: str, history: List[dict]) -> RoutingDecision: ...


_BATCH_VERBS = [
    (BatchOperationType.DELETE, re.compile(r"\b(delete|remove)\b")),
    (BatchOperationType.COMPLETE, re.compile(r"\b(complete|finish)\b")),
    (BatchOperationType.UPDATE, re.compile(r"\bupdate\b")),
]
_BATCH_REFERENTS = re.compile(r"\b(these|those|them|all)\b")
# "that"/"it" only count as the verb's direct object, never as a relative pronoun
_DIRECT_OBJECT = re.compile(r"\b(delete|remove|complete|finish|update)\s+(that|it)(\s+one)?\b")
_VERB_OPERATIONS = {
    "delete": BatchOperationType.DELETE,
    "remove": BatchOperationType.DELETE,
    "complete": BatchOperationType.COMPLETE,
    "finish": BatchOperationType.COMPLETE,
    "update": BatchOperationType.UPDATE,
}

_TASK_CUES = re.compile(
    r"\b(tasks?|todos?|to-dos?|to do list|checklist|my plate|need to|have to|"
    r"remember to|mark (it|this|that|them) (as )?(done|complete))\b"
)
_EVENT_CUES = re.compile(
    r"\b(meetings?|appointments?|calendar|schedul(e|ed|ing)|events?|"
    r"reminders?|remind me|book (a|an)|agenda)\b"
)
_RESEARCH_CUES = re.compile(
    r"\b(search|research|latest|trending|current|recent|news|look up|"
    r"find information|on the web)\b"
)
_QUESTION_CUES = re.compile(
    r"^\s*(what is|what's|what are|what does|define|explain|how does|how do|"
    r"how to|tell me about|describe|who is|why)\b"
)


def detect_batch_operation(message: str) -> Optional[BatchOperationType]:
    """
    Keyword heuristic for batch instructions: an operation verb AND a plural
    referent ("delete these", "finish all of them"), or a verb taking "that"/"it"
    as its object ("delete that one").
    """
    lower = message.lower()
    direct = _DIRECT_OBJECT.search(lower)
    if direct:
        return _VERB_OPERATIONS[direct.group(1)]
    if not _BATCH_REFERENTS.search(lower):
        return None
    for operation, verb in _BATCH_VERBS:
        if verb.search(lower):
            return operation
    return None


def _decision(
    intent: Intent,
    confidence: float,
    threshold: float,
    reasoning: str,
    parameters: Optional[dict] = None,
) -> RoutingDecision:
    confidence = max(0.0, min(1.0, confidence))
    return RoutingDecision(
        intent=intent,
        confidence=confidence,
        parameters=parameters or {},
        reasoning=reasoning,
        needs_clarification=confidence < threshold,
    )


class RuleBasedIntentClassifier:
    """
    Deterministic classifier. Used in tests, when routing is configured for
    rules, and as the reference behaviour for the routing policy.
    """

    def __init__(self, clarification_threshold: float = 0.5):
        self.clarification_threshold = clarification_threshold

    async def classify(self, message: str, history: List[dict]) -> RoutingDecision:
        return self.classify_text(message)

    def classify_text(self, message: str) -> RoutingDecision:
        lower = message.lower()
        threshold = self.clarification_threshold

        operation = detect_batch_operation(message)
        if operation is not None:
            return _decision(
                Intent.TASK, 0.95, threshold,
                f"Batch {operation.value} instruction referring to earlier items",
                {"batch_operation": operation.value},
            )

        has_task = bool(_TASK_CUES.search(lower))
        has_event = bool(_EVENT_CUES.search(lower))
        if has_task and has_event:
            return _decision(Intent.BOTH, 0.85, threshold, "Mentions both tasks and calendar")
        if has_task:
            return _decision(Intent.TASK, 0.85, threshold, "Task management request")
        if has_event:
            return _decision(Intent.EVENT, 0.85, threshold, "Calendar/scheduling request")

        if _RESEARCH_CUES.search(lower):
            return _decision(
                Intent.RESEARCH, 0.8, threshold, "Explicit request for current or web information",
            )
        if _QUESTION_CUES.search(lower):
            return _decision(Intent.ANSWER, 0.75, threshold, "Definitional or explanatory question")
        return _decision(Intent.ANSWER, 0.4, threshold, "No specific domain cue; general answer")


ROUTER_INSTRUCTIONS = """You are a routing assistant that analyzes user messages and determines the best agent to handle them.

You MUST return one of these values for agentType:
- "answer" - general knowledge questions, definitions, explanations (no web search needed)
- "task" - task management (creating, updating, listing, deleting tasks, todos)
- "event" - calendar/scheduling (meetings, appointments, calendar events)
- "research" - web research, current information gathering, market research
- "both" - the message involves both tasks AND events

Routing rules:
1. "What is", "Explain", "How does", "Tell me about" are answer, never research.
2. research ONLY when the user explicitly asks to search/research or wants latest, current or trending information.
3. task for creating, updating, listing, deleting or completing tasks and todos.
4. event for scheduling meetings, appointments, reminders and calendar operations.
5. both ONLY when the message explicitly mentions BOTH tasks AND calendar/scheduling.
When cues conflict, batch operations on earlier items beat task/event cues, which beat research cues, which beat generic questions."""


class RoutingSchema(BaseModel):
    agentType: Literal["answer", "task", "event", "research", "both"]
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class LLMIntentClassifier:
    """Wraps the external NLU call into a typed routing decision."""

    def __init__(
        self,
        nlu: NLUService,
        clarification_threshold: float = 0.5,
        history_turns: int = 6,
    ):
        self.nlu = nlu
        self.clarification_threshold = clarification_threshold
        self.history_turns = history_turns

    async def classify(self, message: str, history: List[dict]) -> RoutingDecision:
        context = "\n".join(
            f"{m.get('role')}: {m.get('content')}"
            for m in history[-self.history_turns:]
            if m.get("role") != "system"
        )
        prompt = (
            f'Analyze this user message and decide which agent should handle it:\n"{message}"\n\n'
            f"Recent conversation:\n{context or '(none)'}\n\n"
            "Return agentType, confidence (0-1) and reasoning."
        )
        try:
            raw = await self.nlu.classify(prompt, RoutingSchema, system=ROUTER_INSTRUCTIONS)
            parsed = RoutingSchema.model_validate(raw)
        except NLUError as e:
            raise ClassificationError(f"Classifier unavailable: {e}") from e
        except ValidationError as e:
            raise ClassificationError(f"Classifier returned an invalid decision: {e}") from e

        logger.info(
            "Routing decision: %s (confidence %.2f) - %s",
            parsed.agentType, parsed.confidence, parsed.reasoning,
        )
        parameters = {}
        operation = detect_batch_operation(message)
        if operation is not None:
            parameters["batch_operation"] = operation.value
        return _decision(
            Intent(parsed.agentType),
            parsed.confidence,
            self.clarification_threshold,
            parsed.reasoning,
            parameters,
        )
