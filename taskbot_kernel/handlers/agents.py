"""Domain handlers backed by the NLU generator: task, event, research and answer."""

import logging

from taskbot_kernel.handlers.base import (
    AgentHandler,
    HandlerError,
    HandlerRequest,
    build_messages,
    current_time,
)
from taskbot_kernel.handlers.tools import event_tools, task_tools
from taskbot_kernel.models.conversation import Action
from taskbot_kernel.models.orchestrator import HandlerResult
from taskbot_kernel.nlu.client import NLUError, NLUService
from taskbot_kernel.store.repository import EventRepository, TaskRepository

logger = logging.getLogger(__name__)

TASK_INSTRUCTIONS = """You are a helpful task management assistant. You create, update, list, search, complete and delete the user's tasks.

- Always use the tools to read or change tasks. Never make up tasks or IDs.
- Calculate due dates relative to the CURRENT DATE AND TIME system message; due dates are in the future.
- Earlier assistant messages list tasks as [Task ID: ..., Title: "..."]. When the user says "these", "those", "them" or "that", use the IDs from the most recent list.
- Keep confirmations brief (e.g. "Created 'Buy oil'!"). The interface shows full task details, so do not repeat every field.
- Ask for clarification when the request is ambiguous."""

EVENT_INSTRUCTIONS = """You are a calendar assistant. You schedule, reschedule, list and cancel the user's events (meetings, appointments, deadlines, reminders).

- Always use the tools to read or change events. Never make up events or IDs.
- Resolve relative dates from the CURRENT DATE AND TIME system message. Use ISO-8601 for start_date and end_date; default to one hour when no end is given.
- Earlier assistant messages list events as [Event ID: ..., Title: "..."]; use those IDs when the user refers back to them.
- Keep confirmations brief; the interface shows full event details."""

RESEARCH_INSTRUCTIONS = """You are a research specialist. Search the web for current information and write a thorough, structured report on the user's research request.

- Prefer recent, authoritative sources and include the dates of the facts you report.
- Organize findings with headers and bullet points.
- Include specific facts and figures from the sources you found.
- Finish with a short summary of key takeaways."""

ANSWER_INSTRUCTIONS = """You are a helpful assistant that answers general knowledge questions quickly and concisely.

- Give clear definitions for "what is" questions and practical steps for "how to" questions.
- Use bullet points when they help.
- If you don't know, say so and suggest researching it."""

class TaskHandler(AgentHandler):
    name = "task"
    instructions = TASK_INSTRUCTIONS

    def __init__(self, nlu: NLUService, tasks: TaskRepository):
        super().__init__(nlu, lambda request: task_tools(tasks, request.user_id))


class EventHandler(AgentHandler):
    name = "event"
    instructions = EVENT_INSTRUCTIONS

    def __init__(self, nlu: NLUService, events: EventRepository):
        super().__init__(nlu, lambda request: event_tools(
            events, request.user_id, now=current_time(request.context),
        ))


class AnswerHandler(AgentHandler):
    name = "answer"
    instructions = ANSWER_INSTRUCTIONS


class ResearchHandler(AgentHandler):
    """Web research: a report plus the sources the search returned, as one research action."""

    name = "research"
    instructions = RESEARCH_INSTRUCTIONS

    async def handle(self, request: HandlerRequest) -> HandlerResult:
        try:
            research = await self.nlu.research(build_messages(self.instructions, request))
        except NLUError as e:
            raise HandlerError(f"research agent failed: {e}") from e
        report = research.text.strip()
        logger.info(
            "research agent ran %d search(es) with %d citation(s)",
            research.search_count, len(research.citations),
        )
        actions = []
        if report:
            actions.append(Action(type="research", data={
                "query": request.message,
                "report": report,
                "citations": research.citations,
                "searchCount": research.search_count,
            }))
        return HandlerResult(response=report, actions=actions, agent=self.name)
