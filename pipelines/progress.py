"""In-process pub/sub channel broadcasting deployment progress per pipeline id."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from pipelines.model import ProgressEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass
class _Topic:
    history: list[ProgressEvent] = field(default_factory=list)
    queues: list[asyncio.Queue] = field(default_factory=list)
    closed: bool = False


class Subscription:
    """Async iterator over the events of one pipeline; ends when the pipeline closes."""

    def __init__(self, pipeline_id: str, queue: asyncio.Queue) -> None:
        self.pipeline_id = pipeline_id
        self._queue = queue
        self._done = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item


class ProgressChannel:
    """Dispatch table of subscribers keyed by pipeline id.

    Events are delivered in publish order. A subscriber joining an open pipeline
    first receives the retained history, so delivery is at-least-once. Closing a
    pipeline ends every subscription and releases the topic once its last
    subscriber leaves.
    """

    def __init__(self) -> None:
        self._topics: dict[str, _Topic] = {}

    def open(self, pipeline_id: str) -> None:
        topic = self._topics.get(pipeline_id)
        if topic is None or topic.closed:
            self._topics[pipeline_id] = _Topic()

    def publish(self, event: ProgressEvent) -> None:
        topic = self._topics.get(event.pipeline_id)
        if topic is None or topic.closed:
            logger.debug("Dropping progress event for closed pipeline %s.", event.pipeline_id)
            return
        topic.history.append(event)
        for queue in topic.queues:
            queue.put_nowait(event)

    def close(self, pipeline_id: str) -> None:
        topic = self._topics.get(pipeline_id)
        if topic is None or topic.closed:
            return
        topic.closed = True
        for queue in topic.queues:
            queue.put_nowait(_CLOSED)
        self._release_if_idle(pipeline_id)

    def is_open(self, pipeline_id: str) -> bool:
        topic = self._topics.get(pipeline_id)
        return topic is not None and not topic.closed

    def subscriber_count(self, pipeline_id: str) -> int:
        topic = self._topics.get(pipeline_id)
        return len(topic.queues) if topic else 0

    @asynccontextmanager
    async def subscribe(self, pipeline_id: str) -> AsyncIterator[Subscription]:
        """Subscribe to a pipeline; the queue is released on exit, including on errors.

        Unknown or already released pipelines yield a subscription that ends at once.
        """

        queue: asyncio.Queue = asyncio.Queue()
        topic = self._topics.get(pipeline_id)
        if topic is None:
            queue.put_nowait(_CLOSED)
            yield Subscription(pipeline_id, queue)
            return
        for event in topic.history:
            queue.put_nowait(event)
        if topic.closed:
            queue.put_nowait(_CLOSED)
        topic.queues.append(queue)
        try:
            yield Subscription(pipeline_id, queue)
        finally:
            if queue in topic.queues:
                topic.queues.remove(queue)
            self._release_if_idle(pipeline_id)

    def _release_if_idle(self, pipeline_id: str) -> None:
        topic = self._topics.get(pipeline_id)
        if topic is not None and topic.closed and not topic.queues:
            del self._topics[pipeline_id]


__all__ = ["ProgressChannel", "Subscription"]
