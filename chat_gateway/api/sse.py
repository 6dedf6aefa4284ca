"""Server-sent-event transport for chat turns.

The orchestrator runs in its own task and feeds a queue; the HTTP response
only drains that queue. A client that goes away stops the draining but not
the turn, so persistence and billing settlement still complete.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Set

from chat_gateway.models.events import DoneEvent, ErrorEvent, StatusEvent, StreamEvent, TextDeltaEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Strong references to running relays; the event loop only keeps weak ones
_background_tasks: Set[asyncio.Task] = set()

_END = object()


def event_payload(event: StreamEvent, request_id: str) -> Dict[str, Any]:
    """The JSON body sent to the browser for `event`."""
    if isinstance(event, StatusEvent):
        return {"status": event.status, "progress": event.progress}
    if isinstance(event, TextDeltaEvent):
        return {"delta": event.delta}
    if isinstance(event, DoneEvent):
        return {
            "content": event.content,
            "usage": event.usage.model_dump() if event.usage else None,
            "request_id": request_id,
        }
    if isinstance(event, ErrorEvent):
        return {"errorMessage": event.message, "errorCode": event.code}
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def encode_event(event: StreamEvent, request_id: str) -> str:
    data = json.dumps(event_payload(event, request_id), ensure_ascii=False)
    return f"event: {event.type}\ndata: {data}\n\n"


class EventRelay:
    """Runs an event sequence to completion and relays it as SSE frames."""

    def __init__(self, events: AsyncIterator[StreamEvent], request_id: str) -> None:
        self.events = events
        self.request_id = request_id
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.task: "asyncio.Task[None] | None" = None

    def start(self) -> "EventRelay":
        self.task = asyncio.create_task(self._pump())
        _background_tasks.add(self.task)
        self.task.add_done_callback(_background_tasks.discard)
        return self

    async def _pump(self) -> None:
        try:
            async for event in self.events:
                await self.queue.put(event)
        except Exception:
            logger.exception("Chat stream failed request_id=%s", self.request_id)
            await self.queue.put(
                ErrorEvent(code="INTERNAL_ERROR", message="Temporary service error. Please try again later.")
            )
        finally:
            await self.queue.put(_END)

    async def stream(self) -> AsyncIterator[str]:
        if self.task is None:
            self.start()
        finished = False
        try:
            while True:
                item = await self.queue.get()
                if item is _END:
                    finished = True
                    return
                yield encode_event(item, self.request_id)
        finally:
            if not finished:
                logger.info("Client disconnected request_id=%s, turn continues in background", self.request_id)
