"""Runtime plumbing: event bus and streaming sinks, usage tracking, caches."""

from flowengine.runtime.cache import TTLCache, inputs_digest
from flowengine.runtime.event_bus import (
    EventBus,
    EventBusStreamer,
    EventType,
    FlowEvent,
    QueueStreamer,
    StreamChunk,
    StreamingSink,
)
from flowengine.runtime.usage import (
    InMemoryUsageSink,
    LoggingUsageSink,
    UsageRecord,
    UsageSink,
    UsageTracker,
)

__all__ = [
    "EventBus",
    "EventBusStreamer",
    "EventType",
    "FlowEvent",
    "QueueStreamer",
    "StreamChunk",
    "StreamingSink",
    "TTLCache",
    "inputs_digest",
    "UsageRecord",
    "UsageSink",
    "UsageTracker",
    "LoggingUsageSink",
    "InMemoryUsageSink",
]
