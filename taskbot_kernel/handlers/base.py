"""
Handler base — the contract every domain handler implements.

A handler receives the raw message, the annotated history and the request
context, and returns a HandlerResult. Agent-style handlers delegate to the
NLU generator with a set of bound tools and normalize its tool results.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskbot_kernel.aggregation.actions import normalize
from taskbot_kernel.models.conversation import RequestContext
from taskbot_kernel.models.orchestrator import HandlerResult
from taskbot_kernel.models.routing import BatchOperation
from taskbot_kernel.nlu.client import NLUError, NLUService, Tool

logger = logging.getLogger(__name__)


class HandlerError(Exception):
    """Raised when a handler cannot produce a result."""
    pass


class HandlerRequest:
    """Everything a handler sees for one dispatch."""

    def __init__(
        self,
        message: str,
        user_id: str,
        history: Optional[List[dict]] = None,
        context: Optional[RequestContext] = None,
        batch: Optional[BatchOperation] = None,
    ):
        self.message = message
        self.user_id = user_id
        self.history = history or []
        self.context = context or RequestContext()
        self.batch = batch


class Handler(Protocol):
    name: str

    async def handle(self, request: HandlerRequest) -> HandlerResult: ...


def current_time(context: RequestContext) -> datetime:
    """The caller's clock in the caller's timezone, falling back to UTC."""
    try:
        tz = ZoneInfo(context.timezone) if context.timezone else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r, using UTC", context.timezone)
        tz = timezone.utc
    now = datetime.now(timezone.utc)
    if context.current_datetime:
        try:
            now = datetime.fromisoformat(context.current_datetime.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable currentDateTime %r", context.current_datetime)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    return now.astimezone(tz)


def datetime_message(context: RequestContext) -> dict:
    now = current_time(context)
    return {
        "role": "system",
        "content": (
            f"CURRENT DATE AND TIME: {now.strftime('%A, %B %d, %Y at %H:%M')} "
            f"({now.tzinfo}). The current year is {now.year}. ISO: {now.isoformat()}. "
            "Resolve relative dates such as 'tomorrow' or 'next week' from this date."
        ),
    }


def build_messages(instructions: str, request: HandlerRequest) -> List[dict]:
    return [
        {"role": "system", "content": instructions},
        datetime_message(request.context),
        {"role": "system", "content": f"User ID: {request.user_id}"},
        *request.history,
        {"role": "user", "content": request.message},
    ]


class AgentHandler:
    """A handler backed by the NLU generator and an optional set of bound tools."""

    name = "agent"
    instructions = ""

    def __init__(
        self,
        nlu: NLUService,
        tools: Optional[Callable[[HandlerRequest], List[Tool]]] = None,
    ):
        self.nlu = nlu
        self._tools = tools

    def tools_for(self, request: HandlerRequest) -> List[Tool]:
        return self._tools(request) if self._tools else []

    async def handle(self, request: HandlerRequest) -> HandlerResult:
        messages = build_messages(self.instructions, request)
        try:
            generation = await self.nlu.generate(messages, self.tools_for(request) or None)
        except NLUError as e:
            raise HandlerError(f"{self.name} agent failed: {e}") from e
        actions = normalize(generation.tool_results)
        logger.info(
            "%s agent produced %d action(s) from %d tool call(s)",
            self.name, len(actions), len(generation.tool_results),
        )
        return HandlerResult(response=generation.text, actions=actions, agent=self.name)
