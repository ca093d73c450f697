"""
Taskbot Kernel API — FastAPI endpoints.

Exposes the orchestrator and its stores via a REST API for:
- Routed chat (synchronous and streamed over SSE)
- Direct task, event and research agents
- Task and event inspection
- Conversation history
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from taskbot_kernel.config import Settings, configure_logging, get_settings
from taskbot_kernel.context.entity_index import EntityReferenceIndex
from taskbot_kernel.handlers.registry import HandlerRegistry
from taskbot_kernel.models.conversation import Action, AgentRequest, ConversationTurn, Role
from taskbot_kernel.models.routing import Intent
from taskbot_kernel.nlu.client import NLUService, OpenAIChatClient, UpstreamUnavailable
from taskbot_kernel.orchestrator.dispatch import APOLOGY, DispatchOrchestrator
from taskbot_kernel.routing.batch import BatchResolver, LLMEntityExtractor, ReferenceExtractor
from taskbot_kernel.routing.classifier import LLMIntentClassifier, RuleBasedIntentClassifier
from taskbot_kernel.store.database import Database
from taskbot_kernel.store.history import ConversationHistoryStore
from taskbot_kernel.store.repository import EventRepository, TaskRepository
from taskbot_kernel.streaming.progress import ProgressStreamer

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class HistoryMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    role: Role
    content: str = Field(min_length=1)
    actions: List[Action] = []


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def build_orchestrator(
    settings: Settings,
    database: Database,
    nlu: NLUService,
) -> DispatchOrchestrator:
    """Wire the default classifier, resolver, registry and stores."""
    config = settings.orchestrator_config()
    index = EntityReferenceIndex(window=config.history_window)
    tasks = TaskRepository(database)

    if settings.classifier == "llm":
        classifier = LLMIntentClassifier(nlu, config.clarification_threshold)
    else:
        classifier = RuleBasedIntentClassifier(config.clarification_threshold)
    if settings.entity_extractor == "llm":
        extractor = LLMEntityExtractor(nlu, index)
    else:
        extractor = ReferenceExtractor(index)

    return DispatchOrchestrator(
        classifier=classifier,
        registry=HandlerRegistry.default(nlu, tasks, EventRepository(database)),
        batch_resolver=BatchResolver(extractor, index, window=config.batch_window),
        history_store=ConversationHistoryStore(database),
        index=index,
        config=config,
        readiness=getattr(nlu, "ensure_available", None),
    )


# --- Application Factory ---

def create_app(
    orchestrator: Optional[DispatchOrchestrator] = None,
    database: Optional[Database] = None,
    settings: Optional[Settings] = None,
    nlu: Optional[NLUService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Taskbot Kernel API",
        description="Conversational task and calendar assistant",
        version="0.1.0",
    )

    # Initialize components
    db = database or Database(settings.database_path)
    nlu = nlu or OpenAIChatClient(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.model,
        timeout=settings.nlu_timeout_seconds,
        max_tool_steps=settings.max_tool_steps,
        research_model=settings.research_model,
        search_tool=settings.search_tool,
    )
    orch = orchestrator or build_orchestrator(settings, db, nlu)

    # Store components on app state for access in endpoints
    app.state.settings = settings
    app.state.database = db
    app.state.tasks = TaskRepository(db)
    app.state.events = EventRepository(db)
    app.state.history = orch.history
    app.state.orchestrator = orch
    app.state.inflight = set()

    # === HEALTH ===

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "nlu_configured": bool(getattr(nlu, "available", True)),
        }

    # === AGENTS ===

    @app.post("/api/agent/general")
    async def agent_general(req: AgentRequest):
        if not req.message.strip():
            return _failure(400, "Message is required")
        try:
            run = await orch.run(req)
        except UpstreamUnavailable as e:
            return _failure(500, str(e))
        except Exception:
            return _failure(500, APOLOGY)
        if run.response is None:
            return _failure(500, APOLOGY)
        return {"success": True, "data": run.response.model_dump(mode="json")}

    @app.post("/api/agent/stream")
    async def agent_stream(req: AgentRequest):
        if not req.message.strip():
            return _failure(400, "Message is required")
        try:
            orch.ensure_ready()
        except UpstreamUnavailable as e:
            return _failure(500, str(e))

        streamer = ProgressStreamer()
        streamer.connected()

        async def run_in_background():
            try:
                await orch.run(req, streamer)
            except Exception as e:
                # Already logged and reported to the client as an error event
                logger.debug("Streamed run ended with error: %s", e)

        task = asyncio.create_task(run_in_background())
        app.state.inflight.add(task)
        task.add_done_callback(app.state.inflight.discard)

        async def frames():
            try:
                async for frame in streamer.frames():
                    yield frame
            finally:
                if not streamer.finished:
                    streamer.disconnect()

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "Connection": "keep-alive",
            },
        )

    async def _direct(req: AgentRequest, intent: Intent):
        if not req.message.strip():
            return _failure(400, "Message is required")
        try:
            response = await orch.run_direct(req, intent)
        except UpstreamUnavailable as e:
            return _failure(500, str(e))
        except Exception as e:
            logger.exception("Direct %s agent failed", intent.value)
            return _failure(500, str(e) or APOLOGY)
        return {"success": True, "data": response.model_dump(mode="json")}

    @app.post("/api/agent/task")
    async def agent_task(req: AgentRequest):
        return await _direct(req, Intent.TASK)

    @app.post("/api/agent/event")
    async def agent_event(req: AgentRequest):
        return await _direct(req, Intent.EVENT)

    @app.post("/api/agent/research")
    async def agent_research(req: AgentRequest):
        return await _direct(req, Intent.RESEARCH)

    # === TASKS ===

    @app.get("/api/tasks")
    def list_tasks(
        user_id: str = Query("default-user", alias="userId"),
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        page = app.state.tasks.list(user_id, status, priority, search, limit, offset)
        return {"success": True, "data": page["tasks"], "total": page["total"]}

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str):
        task = app.state.tasks.get(task_id)
        if task is None:
            raise HTTPException(404, "Task not found")
        return {"success": True, "data": task}

    @app.delete("/api/tasks/{task_id}")
    def delete_task(task_id: str):
        removed = app.state.tasks.delete(task_id)
        if removed is None:
            raise HTTPException(404, "Task not found")
        return {"success": True, "message": "Task deleted successfully"}

    # === EVENTS ===

    @app.get("/api/events")
    def list_events(
        user_id: str = Query("default-user", alias="userId"),
        type: Optional[str] = None,
        status: Optional[str] = None,
        start_from: Optional[str] = Query(None, alias="startFrom"),
        start_to: Optional[str] = Query(None, alias="startTo"),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        page = app.state.events.list(user_id, type, status, start_from, start_to, limit, offset)
        return {"success": True, "data": page["events"], "total": page["total"]}

    @app.get("/api/events/{event_id}")
    def get_event(event_id: str):
        event = app.state.events.get(event_id)
        if event is None:
            raise HTTPException(404, "Event not found")
        return {"success": True, "data": event}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str):
        removed = app.state.events.delete(event_id)
        if removed is None:
            raise HTTPException(404, "Event not found")
        return {"success": True, "message": "Event deleted successfully"}

    # === CONVERSATION HISTORY ===

    @app.get("/api/conversation/history")
    async def get_history(
        user_id: str = Query(..., alias="userId"),
        conversation_id: Optional[str] = Query(None, alias="conversationId"),
        session_id: Optional[str] = Query(None, alias="sessionId"),
        limit: int = Query(50, ge=1, le=500),
    ):
        messages = await app.state.history.messages(user_id, conversation_id, session_id, limit)
        return {"success": True, "data": messages}

    @app.post("/api/conversation/history")
    async def add_history_message(req: HistoryMessageRequest):
        stored = await app.state.history.append(
            req.user_id,
            ConversationTurn(role=req.role, content=req.content, actions=req.actions),
            req.conversation_id,
            req.session_id,
        )
        return {"success": True, "data": {"timestamp": stored.created_at.isoformat()}}

    @app.delete("/api/conversation/history")
    async def clear_history(
        user_id: str = Query(..., alias="userId"),
        conversation_id: Optional[str] = Query(None, alias="conversationId"),
        session_id: Optional[str] = Query(None, alias="sessionId"),
    ):
        removed = await app.state.history.clear(user_id, conversation_id, session_id)
        return {
            "success": True,
            "message": "Conversation history cleared",
            "deletedCount": removed,
        }

    return app


# Default app instance
app = create_app()
