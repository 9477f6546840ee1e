"""
Event Bus - Pub/sub event system for flow executions.

Allows callers to:
- Observe execution and node lifecycle events
- Receive streamed tokens of ending nodes
- Wait for a specific event (e.g. execution completed)

Streaming sinks adapt the bus (or a queue) to the three-call interface the
executor streams through: ``stream_token``, ``stream_error``, ``stream_end``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_ABORTED = "execution_aborted"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    # Runtime state
    STATE_CHANGED = "state_changed"

    # Streaming
    TOKEN = "token"
    STREAM_ERROR = "stream_error"
    STREAM_END = "stream_end"

    # Custom events
    CUSTOM = "custom"


@dataclass
class FlowEvent:
    """An event emitted during a flow execution."""

    type: EventType
    chat_id: str
    node_id: str | None = None  # Which node emitted this event
    execution_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "chat_id": self.chat_id,
            "node_id": self.node_id,
            "execution_id": self.execution_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_chat: str | None = None  # Only receive events for this chat
    filter_node: str | None = None  # Only receive events from this node
    filter_execution: str | None = None  # Only receive events from this execution


class EventBus:
    """
    Pub/sub event bus for flow executions.

    Example:
        bus = EventBus()

        async def on_token(event: FlowEvent):
            print(event.data["token"], end="")

        bus.subscribe(event_types=[EventType.TOKEN], handler=on_token)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_chat: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_chat: Only receive events for this chat
            filter_node: Only receive events from this node
            filter_execution: Only receive events from this execution

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_chat=filter_chat,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_chat and subscription.filter_chat != event.chat_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: FlowEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_execution_started(
        self,
        chat_id: str,
        execution_id: str,
        flow_id: str,
        question: str = "",
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_STARTED,
                chat_id=chat_id,
                execution_id=execution_id,
                data={"flow_id": flow_id, "question": question},
            )
        )

    async def emit_execution_completed(
        self,
        chat_id: str,
        execution_id: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_COMPLETED,
                chat_id=chat_id,
                execution_id=execution_id,
                data={"output": output or {}},
            )
        )

    async def emit_execution_failed(
        self,
        chat_id: str,
        execution_id: str,
        error: str,
        node_id: str | None = None,
        aborted: bool = False,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_ABORTED if aborted else EventType.EXECUTION_FAILED,
                chat_id=chat_id,
                node_id=node_id,
                execution_id=execution_id,
                data={"error": error},
            )
        )

    async def emit_node_started(
        self,
        chat_id: str,
        node_id: str,
        execution_id: str | None = None,
        node_name: str = "",
        tier: int | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_STARTED,
                chat_id=chat_id,
                node_id=node_id,
                execution_id=execution_id,
                data={"node_name": node_name, "tier": tier},
            )
        )

    async def emit_node_completed(
        self,
        chat_id: str,
        node_id: str,
        execution_id: str | None = None,
        output: dict[str, Any] | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_COMPLETED,
                chat_id=chat_id,
                node_id=node_id,
                execution_id=execution_id,
                data={"output": output or {}},
            )
        )

    async def emit_node_failed(
        self,
        chat_id: str,
        node_id: str,
        error: str,
        execution_id: str | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_FAILED,
                chat_id=chat_id,
                node_id=node_id,
                execution_id=execution_id,
                data={"error": error},
            )
        )

    async def emit_state_changed(
        self,
        chat_id: str,
        execution_id: str,
        key: str,
        old_value: Any,
        new_value: Any,
        node_id: str | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.STATE_CHANGED,
                chat_id=chat_id,
                node_id=node_id,
                execution_id=execution_id,
                data={"key": key, "old_value": old_value, "new_value": new_value},
            )
        )

    async def emit_token(self, chat_id: str, token: str, execution_id: str | None = None) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.TOKEN,
                chat_id=chat_id,
                execution_id=execution_id,
                data={"token": token},
            )
        )

    async def emit_stream_error(
        self, chat_id: str, message: str, execution_id: str | None = None
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.STREAM_ERROR,
                chat_id=chat_id,
                execution_id=execution_id,
                data={"message": message},
            )
        )

    async def emit_stream_end(self, chat_id: str, execution_id: str | None = None) -> None:
        await self.publish(
            FlowEvent(type=EventType.STREAM_END, chat_id=chat_id, execution_id=execution_id)
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        chat_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if chat_id:
            events = [e for e in events if e.chat_id == chat_id]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]

        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        chat_id: str | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_chat=chat_id,
            filter_node=node_id,
            filter_execution=execution_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)


@runtime_checkable
class StreamingSink(Protocol):
    """Where the executor pushes streamed output for a chat."""

    async def stream_token(self, chat_id: str, token: str) -> None: ...

    async def stream_error(self, chat_id: str, message: str) -> None: ...

    async def stream_end(self, chat_id: str) -> None: ...


class EventBusStreamer:
    """StreamingSink that republishes stream calls as bus events."""

    def __init__(self, bus: EventBus, execution_id: str | None = None):
        self.bus = bus
        self.execution_id = execution_id

    async def stream_token(self, chat_id: str, token: str) -> None:
        await self.bus.emit_token(chat_id, token, execution_id=self.execution_id)

    async def stream_error(self, chat_id: str, message: str) -> None:
        await self.bus.emit_stream_error(chat_id, message, execution_id=self.execution_id)

    async def stream_end(self, chat_id: str) -> None:
        await self.bus.emit_stream_end(chat_id, execution_id=self.execution_id)


@dataclass
class StreamChunk:
    """One item yielded by QueueStreamer."""

    chat_id: str
    text: str
    is_error: bool = False


class QueueStreamer:
    """
    StreamingSink backed by an asyncio.Queue, consumed as an async iterator.

    Example:
        streamer = QueueStreamer()
        task = asyncio.create_task(executor.execute(..., streamer=streamer))
        async for chunk in streamer:
            print(chunk.text, end="")
    """

    _END = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def stream_token(self, chat_id: str, token: str) -> None:
        await self._queue.put(StreamChunk(chat_id=chat_id, text=token))

    async def stream_error(self, chat_id: str, message: str) -> None:
        await self._queue.put(StreamChunk(chat_id=chat_id, text=message, is_error=True))

    async def stream_end(self, chat_id: str) -> None:
        if not self.closed:
            self.closed = True
            await self._queue.put(self._END)

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item
