"""
Progress events for a run.

The executor emits events at every transition; a sink decides where they
go. Emission never blocks and never fails a run: a full channel drops its
oldest undelivered event, and sink errors are logged and swallowed.

    channel = ProgressChannel(maxsize=256)
    task = asyncio.create_task(executor.start(graph, data, sink=channel))
    async for event in channel:
        print(event.type, event.payload)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ProgressEventType(StrEnum):
    START = "start"
    NODE_UPDATE = "node_update"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETE = "complete"

    @property
    def is_final(self) -> bool:
        return self in (
            ProgressEventType.PAUSED,
            ProgressEventType.ERROR,
            ProgressEventType.COMPLETE,
        )


@dataclass
class ProgressEvent:
    """A progress notification for one execution."""

    type: ProgressEventType
    execution_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class NullProgressSink:
    def emit(self, event: ProgressEvent) -> None:
        pass


class CollectingProgressSink:
    """Keeps every event in memory."""

    def __init__(self):
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[ProgressEventType]:
        return [e.type for e in self.events]


_CLOSED = object()


class ProgressChannel:
    """
    Bounded, single-consumer event queue.

    ``emit`` is non-blocking. When the queue is full the oldest undelivered
    event is dropped to make room, so the final paused/error/complete event
    always reaches the consumer. Iteration ends after ``close()``.
    """

    def __init__(self, maxsize: int = 256):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        # The bound applies to events only; the close marker is always accepted
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.dropped = 0

    def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug(f"Progress channel closed, discarding {event.type} event")
            return
        while self._queue.qsize() >= self.maxsize:
            dropped = self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Progress channel full, dropped {dropped.type} event")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Signal end of stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ProgressChannel":
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ProgressEmitter:
    """Stamps events with an execution id and forwards them to a sink."""

    def __init__(self, execution_id: str, sink: ProgressSink | None = None):
        self.execution_id = execution_id
        self._sink = sink or NullProgressSink()

    def emit(self, event_type: ProgressEventType, **payload: Any) -> None:
        event = ProgressEvent(type=event_type, execution_id=self.execution_id, payload=payload)
        logger.debug(f"progress {event_type.value}", extra={"event": event_type.value})
        try:
            self._sink.emit(event)
        except Exception:
            logger.exception(f"Progress sink failed on {event_type.value} event")
