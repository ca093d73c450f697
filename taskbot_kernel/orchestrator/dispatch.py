"""
Dispatch Orchestrator — one inbound message from history load to persisted reply.

States:
  RECEIVED → CLASSIFIED → (BATCH_RESOLVING) → HANDLER_RUNNING
           → AGGREGATING → STREAMING → COMPLETED | FAILED

Recovery:
  - Classifier failure routes to `answer` with confidence 0
  - Empty batch resolution replies without calling a handler
  - Handler failure retries once with the task handler on the raw message,
    then replies with an apology under agent `fallback`
  - `both` runs task and event handlers concurrently; one failing still
    yields the other's output

Cancellation is cooperative: when the client disconnects the run finishes
its in-flight handler calls, discards the result and skips persistence.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Callable, List, Optional
from uuid import uuid4

from taskbot_kernel.aggregation.actions import merge
from taskbot_kernel.context.entity_index import EntityReferenceIndex
from taskbot_kernel.handlers.base import Handler, HandlerError, HandlerRequest
from taskbot_kernel.handlers.batch import NOTHING_TO_APPLY
from taskbot_kernel.handlers.registry import HandlerRegistry
from taskbot_kernel.models.conversation import (
    AgentRequest,
    AgentResponse,
    ConversationTurn,
    Role,
)
from taskbot_kernel.models.orchestrator import (
    HandlerResult,
    OrchestrationState,
    OrchestratorConfig,
)
from taskbot_kernel.models.routing import (
    BatchOperation,
    BatchOperationType,
    Intent,
    RoutingDecision,
)
from taskbot_kernel.models.streaming import StepStatus
from taskbot_kernel.nlu.client import UpstreamUnavailable
from taskbot_kernel.routing.batch import BatchResolver
from taskbot_kernel.routing.classifier import ClassificationError, IntentClassifier
from taskbot_kernel.store.history import ConversationHistoryStore
from taskbot_kernel.streaming.progress import ProgressStreamer, StreamDisconnect

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "I understand your request. How can I help you with your tasks or events?"
APOLOGY = "I'm sorry, I ran into a problem handling that request. Please try again."

_AGENT_LABELS = {
    "task": ("TaskAgent", "Executing task agent"),
    "event": ("EventAgent", "Executing event agent"),
    "research": ("ResearchAgent", "Conducting research"),
    "answer": ("AnswerAgent", "Answering question"),
    "both": ("TaskAgent + EventAgent", "Executing task and event agents"),
}


class OrchestrationRun:
    """State trail and outcome of one dispatch."""

    def __init__(self, request: AgentRequest):
        self.id = f"run_{uuid4().hex[:12]}"
        self.request = request
        self.states: List[OrchestrationState] = []
        self.decision: Optional[RoutingDecision] = None
        self.batch: Optional[BatchOperation] = None
        self.response: Optional[AgentResponse] = None
        self.cancelled = False
        self.error: Optional[str] = None

    @property
    def state(self) -> Optional[OrchestrationState]:
        return self.states[-1] if self.states else None

    def transition(self, state: OrchestrationState) -> None:
        logger.debug("%s: %s", self.id, state.value)
        self.states.append(state)


class DispatchOrchestrator:

    def __init__(
        self,
        classifier: IntentClassifier,
        registry: HandlerRegistry,
        batch_resolver: BatchResolver,
        history_store: ConversationHistoryStore,
        index: Optional[EntityReferenceIndex] = None,
        config: Optional[OrchestratorConfig] = None,
        readiness: Optional[Callable[[], None]] = None,
    ):
        self.classifier = classifier
        self.registry = registry
        self.batch_resolver = batch_resolver
        self.history = history_store
        self.config = config or OrchestratorConfig()
        self.index = index or EntityReferenceIndex(window=self.config.history_window)
        self.readiness = readiness

    def ensure_ready(self) -> None:
        """Raise UpstreamUnavailable when the NLU service cannot be used."""
        if self.readiness is not None:
            self.readiness()

    async def run(
        self,
        request: AgentRequest,
        streamer: Optional[ProgressStreamer] = None,
    ) -> OrchestrationRun:
        streamer = streamer or ProgressStreamer()
        run = OrchestrationRun(request)
        run.transition(OrchestrationState.RECEIVED)
        try:
            self.ensure_ready()
            await self._run(run, streamer)
        except StreamDisconnect:
            logger.debug("%s: client disconnected, discarding result", run.id)
            run.cancelled = True
        except UpstreamUnavailable as e:
            logger.error("%s: NLU service unavailable: %s", run.id, e)
            self._fail(run, streamer, str(e))
            raise
        except Exception as e:
            logger.exception("%s: orchestration failed", run.id)
            self._fail(run, streamer, str(e) or "Internal server error")
            raise
        return run

    @staticmethod
    def _fail(run: OrchestrationRun, streamer: ProgressStreamer, error: str) -> None:
        run.transition(OrchestrationState.FAILED)
        run.error = error
        streamer.error(error)
        streamer.close()

    async def run_direct(self, request: AgentRequest, intent: Intent) -> AgentResponse:
        """Call one handler for `intent`, bypassing routing and batch resolution."""
        self.ensure_ready()
        context = request.context
        history = await self.history.load_recent(
            request.user_id, context.conversation_id, context.session_id,
            self.config.history_window,
        )
        handler_request = HandlerRequest(
            message=request.message,
            user_id=request.user_id,
            history=self.index.render(history),
            context=context,
        )
        results = await asyncio.gather(*[
            self._call(h, handler_request) for h in self.registry.for_intent(intent)
        ])
        result = results[0] if len(results) == 1 else merge(list(results), intent.value)
        return AgentResponse(
            response=result.response.strip() or EMPTY_RESPONSE,
            actions=result.actions,
            agent=result.agent,
        )

    async def _run(self, run: OrchestrationRun, streamer: ProgressStreamer) -> None:
        request = run.request
        context = request.context
        streamer.start()

        history = await self.history.load_recent(
            request.user_id, context.conversation_id, context.session_id,
            self.config.history_window,
        )
        rendered = self.index.render(history)
        logger.info("%s: loaded %d previous turn(s)", run.id, len(history))

        run.decision = await self._classify(request.message, rendered)
        run.transition(OrchestrationState.CLASSIFIED)
        streamer.step(
            "RoutingAgent",
            f"Routed to {run.decision.intent.value} agent ({run.decision.confidence:.2f})",
        )
        streamer.check()

        handlers: List[Handler] = []
        result: Optional[HandlerResult] = None
        operation = run.decision.parameters.get("batch_operation")
        if operation:
            run.transition(OrchestrationState.BATCH_RESOLVING)
            run.batch = await self.batch_resolver.resolve(
                request.message, history[-self.config.batch_window:],
                BatchOperationType(operation),
            )
            streamer.step(
                "BatchResolver", f"Resolved {len(run.batch.target_ids)} task(s) to {operation}",
            )
            if run.batch.is_empty:
                result = HandlerResult(
                    response=NOTHING_TO_APPLY.format(operation=operation), agent="task",
                )
            else:
                handlers = [self.registry.for_batch(run.batch.operation)]
        else:
            handlers = self.registry.for_intent(run.decision.intent)

        if result is None:
            label = "both" if len(handlers) > 1 else handlers[0].name
            agent, action = _AGENT_LABELS.get(label, ("Agent", "Processing request"))
            run.transition(OrchestrationState.HANDLER_RUNNING)
            streamer.step(agent, action, StepStatus.IN_PROGRESS)
            handler_request = HandlerRequest(
                message=request.message,
                user_id=request.user_id,
                history=rendered,
                context=context,
                batch=run.batch,
            )
            result = await self._dispatch(run, handlers, handler_request, label)
            streamer.step(agent, action, StepStatus.COMPLETED)
        streamer.check()

        run.transition(OrchestrationState.AGGREGATING)
        if result.actions:
            streamer.step(
                "ToolExecutor",
                f"Executed {len(result.actions)} action(s): "
                f"{', '.join(sorted({a.type for a in result.actions}))}",
            )
        run.response = AgentResponse(
            response=result.response.strip() or EMPTY_RESPONSE,
            actions=result.actions,
            agent=result.agent,
        )
        streamer.check()

        run.transition(OrchestrationState.STREAMING)
        streamer.complete(run.response.response, run.response.actions, run.response.agent)
        if self.config.persist_turns:
            await self._persist(run)
        run.transition(OrchestrationState.COMPLETED)
        streamer.close()

    async def _classify(self, message: str, history: List[dict]) -> RoutingDecision:
        try:
            decision = await self.classifier.classify(message, history)
        except ClassificationError as e:
            logger.warning("Classification failed, answering directly: %s", e)
            return RoutingDecision(
                intent=Intent.ANSWER,
                confidence=0.0,
                reasoning=f"Classifier unavailable: {e}",
                needs_clarification=True,
            )
        logger.info(
            "Routed to %s (confidence %.2f%s): %s",
            decision.intent.value, decision.confidence,
            ", low" if decision.needs_clarification else "", decision.reasoning,
        )
        return decision

    async def _dispatch(
        self,
        run: OrchestrationRun,
        handlers: List[Handler],
        request: HandlerRequest,
        agent: str,
    ) -> HandlerResult:
        outcomes = await asyncio.gather(
            *[self._call(h, request) for h in handlers], return_exceptions=True,
        )
        results = []
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, HandlerError):
                logger.warning("%s handler failed: %s", handler.name, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        if not results:
            run.transition(OrchestrationState.FAILED)
            return await self._fallback(request)
        if len(handlers) == 1:
            return results[0]
        return merge(results, agent)

    async def _fallback(self, request: HandlerRequest) -> HandlerResult:
        logger.info("Retrying with the task handler on the raw message")
        retry = HandlerRequest(
            message=request.message,
            user_id=request.user_id,
            history=request.history,
            context=request.context,
        )
        try:
            result = await self._call(self.registry.fallback(), retry)
        except HandlerError as e:
            logger.error("Fallback handler failed too: %s", e)
            return HandlerResult(response=APOLOGY, agent="fallback")
        return result.model_copy(update={"agent": "fallback"})

    async def _call(self, handler: Handler, request: HandlerRequest) -> HandlerResult:
        timeout = self.config.handler_timeout_seconds
        try:
            return await asyncio.wait_for(handler.handle(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s handler timed out after %.1fs", handler.name, timeout)
            return HandlerResult(
                response=f"The {handler.name} agent took too long to respond.",
                agent=handler.name,
                timed_out=True,
            )
        except HandlerError:
            raise
        except Exception as e:
            logger.exception("%s handler raised", handler.name)
            raise HandlerError(f"{handler.name} handler failed: {e}") from e

    async def _persist(self, run: OrchestrationRun) -> None:
        request = run.request
        context = request.context
        try:
            await self.history.append(
                request.user_id,
                ConversationTurn(role=Role.USER, content=request.message),
                context.conversation_id, context.session_id,
            )
            await self.history.append(
                request.user_id,
                ConversationTurn(
                    role=Role.ASSISTANT,
                    content=run.response.response,
                    actions=run.response.actions,
                ),
                context.conversation_id, context.session_id,
            )
        except sqlite3.Error as e:
            logger.error("%s: failed to persist conversation turns: %s", run.id, e)
