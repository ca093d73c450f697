"""
Progress Streamer — per-request lifecycle events as Server-Sent Events.

Event order:

    connected → start → step* → complete → done
                              ↘ error    → done

Behavioral Contract:
- Exactly one `done` per request, always last
- Step numbers strictly increase within a request
- Anything emitted after `done` or after the client disconnected is dropped
- Frames are `data: <json>\\n\\n`, one per write
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import List, Optional

from taskbot_kernel.models.conversation import Action
from taskbot_kernel.models.streaming import StepEvent, StepStatus, StreamEventType

logger = logging.getLogger(__name__)


class StreamDisconnect(Exception):
    """Raised inside a run when the client has gone away."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressStreamer:

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._disconnected = asyncio.Event()
        self._phase: Optional[StreamEventType] = None
        self._step = 0
        self.history: List[dict] = []

    @staticmethod
    def frame(payload: dict) -> str:
        return f"data: {json.dumps(payload, default=str)}\n\n"

    @property
    def cancelled(self) -> bool:
        return self._disconnected.is_set()

    @property
    def finished(self) -> bool:
        return self._phase == StreamEventType.DONE

    def _emit(self, payload: dict) -> bool:
        if self.cancelled or self.finished:
            logger.debug("Dropping %s event after stream end", payload.get("type"))
            return False
        self._phase = StreamEventType(payload["type"])
        self.history.append(payload)
        self._queue.put_nowait(self.frame(payload))
        return True

    def connected(self) -> None:
        if self._phase is None:
            self._emit({"type": StreamEventType.CONNECTED.value, "timestamp": _now()})

    def start(self, message: str = "Analyzing your request...") -> None:
        self.connected()
        if self._phase == StreamEventType.CONNECTED:
            self._emit({"type": StreamEventType.START.value, "message": message, "timestamp": _now()})

    def step(self, agent: str, action: str, status: StepStatus = StepStatus.COMPLETED) -> int:
        self.start()
        if self._phase not in (StreamEventType.START, StreamEventType.STEP):
            return self._step
        self._step += 1
        event = StepEvent(
            number=self._step,
            agent=agent,
            action=action,
            status=status,
            timestamp=datetime.now(timezone.utc),
        )
        self._emit({"type": StreamEventType.STEP.value, "step": event.model_dump(mode="json")})
        return self._step

    def complete(self, response: str, actions: List[Action], agent: str) -> None:
        self.start()
        if self._phase in (StreamEventType.COMPLETE, StreamEventType.ERROR):
            return
        self._emit({
            "type": StreamEventType.COMPLETE.value,
            "result": {
                "response": response,
                "actions": [a.model_dump(mode="json") for a in actions],
                "agent": agent,
                "timestamp": _now(),
            },
        })

    def error(self, message: str) -> None:
        self.connected()
        if self._phase in (StreamEventType.COMPLETE, StreamEventType.ERROR):
            return
        self._emit({"type": StreamEventType.ERROR.value, "error": message, "timestamp": _now()})

    def close(self) -> None:
        """Emit `done` once and end the frame stream."""
        if self._emit({"type": StreamEventType.DONE.value}):
            self._queue.put_nowait(None)

    def disconnect(self) -> None:
        if not self.cancelled:
            logger.debug("Client disconnected; cancelling stream")
            self._disconnected.set()
            self._queue.put_nowait(None)

    def check(self) -> None:
        if self.cancelled:
            raise StreamDisconnect("Client disconnected")

    async def frames(self) -> AsyncGenerator[str, None]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            yield frame
