"""Per-execution event streams.

Each execution publishes its events into one ``ExecutionEventStream``.
Subscribers get an async iterator that yields events in publication order and
stops after the terminal ``ExecutionFinished`` event (or when the stream is
closed for any other reason).
"""

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, List, Optional

from mcpchat.domain.executions.events import (
    ExecutionEvent,
    ExecutionFinished,
    ProgressReported,
)

logger = logging.getLogger(__name__)

_CLOSED = object()

EventCallback = Callable[[ExecutionEvent], Any]


class ExecutionEventStream:
    """Fan-out of one execution's events to any number of subscribers."""

    def __init__(self, tool_call_id: str, replay_size: int = 256):
        self.tool_call_id = tool_call_id
        self._subscribers: List[asyncio.Queue] = []
        self._replay: Deque[ExecutionEvent] = deque(maxlen=replay_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ExecutionEvent) -> None:
        if self._closed:
            return
        self._replay.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
        if isinstance(event, ExecutionFinished):
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)

    def subscribe(self, replay: bool = True) -> AsyncIterator[ExecutionEvent]:
        """Subscribe to this stream.

        With ``replay`` the subscriber first receives the events already
        published (bounded by the replay buffer).
        """
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self._replay:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._subscribers.append(queue)
        return self._iterate(queue)

    async def _iterate(self, queue: asyncio.Queue) -> AsyncIterator[ExecutionEvent]:
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)


async def _invoke(callback: Optional[EventCallback], event: ExecutionEvent) -> None:
    if callback is None:
        return
    try:
        result = callback(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Execution event callback failed for {event.tool_call_id}: {e}")


async def pump_callbacks(
    events: AsyncIterator[ExecutionEvent],
    on_progress: Optional[EventCallback] = None,
    on_status: Optional[EventCallback] = None,
) -> None:
    """Deliver a stream's events to progress/status callbacks, in order.

    Progress frames go to ``on_progress``; stage changes and the terminal
    event go to ``on_status``. Callback failures are logged and skipped.
    """
    async for event in events:
        if isinstance(event, ProgressReported):
            await _invoke(on_progress, event)
        else:
            await _invoke(on_status, event)
