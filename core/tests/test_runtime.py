"""
Tests for the event bus, streaming sinks, usage tracking and configuration.
"""

import asyncio
import json

import pytest

from flowengine.config import (
    DEFAULT_MODEL,
    EngineConfig,
    get_api_key,
    get_preferred_model,
    get_server_url,
)
from flowengine.runtime.event_bus import (
    EventBus,
    EventBusStreamer,
    EventType,
    FlowEvent,
    QueueStreamer,
)
from flowengine.runtime.usage import InMemoryUsageSink, UsageRecord, UsageTracker

# ---- EventBus ----


@pytest.mark.asyncio
async def test_subscribers_filter_by_chat():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event.chat_id)

    bus.subscribe(event_types=[EventType.TOKEN], handler=handler, filter_chat="c1")

    await bus.emit_token("c1", "a")
    await bus.emit_token("c2", "b")

    assert received == ["c1"]
    assert bus.get_stats()["events_by_type"] == {"token": 2}


@pytest.mark.asyncio
async def test_handler_errors_do_not_propagate():
    bus = EventBus()
    calls = []

    async def broken(event):
        raise RuntimeError("handler failed")

    async def healthy(event):
        calls.append(event.type)

    bus.subscribe(event_types=[EventType.CUSTOM], handler=broken)
    bus.subscribe(event_types=[EventType.CUSTOM], handler=healthy)

    await bus.publish(FlowEvent(type=EventType.CUSTOM, chat_id="c"))

    assert calls == [EventType.CUSTOM]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    sub_id = bus.subscribe(event_types=[EventType.TOKEN], handler=handler)
    assert bus.unsubscribe(sub_id) is True
    assert bus.unsubscribe(sub_id) is False

    await bus.emit_token("c", "x")
    assert received == []


@pytest.mark.asyncio
async def test_wait_for_event():
    bus = EventBus()

    async def finish_later():
        await asyncio.sleep(0.01)
        await bus.emit_execution_completed("c", "e1", output={"text": "done"})

    task = asyncio.create_task(finish_later())
    event = await bus.wait_for(EventType.EXECUTION_COMPLETED, execution_id="e1", timeout=1)
    await task

    assert event is not None
    assert event.data["output"] == {"text": "done"}


@pytest.mark.asyncio
async def test_wait_for_times_out():
    bus = EventBus()

    assert await bus.wait_for(EventType.EXECUTION_COMPLETED, timeout=0.01) is None


@pytest.mark.asyncio
async def test_failed_execution_event_distinguishes_abort():
    bus = EventBus()

    await bus.emit_execution_failed("c", "e1", "stopped", aborted=True)
    await bus.emit_execution_failed("c", "e2", "boom", node_id="n1")

    assert bus.get_history(event_type=EventType.EXECUTION_ABORTED)[0].execution_id == "e1"
    failed = bus.get_history(event_type=EventType.EXECUTION_FAILED)[0]
    assert failed.node_id == "n1"
    assert failed.to_dict()["data"] == {"error": "boom"}


@pytest.mark.asyncio
async def test_event_bus_streamer_republishes():
    bus = EventBus()
    streamer = EventBusStreamer(bus, execution_id="e1")

    await streamer.stream_token("c", "hi")
    await streamer.stream_error("c", "bad")
    await streamer.stream_end("c")

    types = [event.type for event in reversed(bus.get_history(execution_id="e1"))]
    assert types == [EventType.TOKEN, EventType.STREAM_ERROR, EventType.STREAM_END]


@pytest.mark.asyncio
async def test_queue_streamer_ends_once():
    streamer = QueueStreamer()

    await streamer.stream_token("c", "a")
    await streamer.stream_error("c", "oops")
    await streamer.stream_end("c")
    await streamer.stream_end("c")

    chunks = [chunk async for chunk in streamer]
    assert [(c.text, c.is_error) for c in chunks] == [("a", False), ("oops", True)]


# ---- Usage ----


@pytest.mark.asyncio
async def test_usage_tracker_delivers_in_background():
    sink = InMemoryUsageSink()
    tracker = UsageTracker(sink)

    tracker.track(UsageRecord(execution_id="e1", provider="mock", model="m", prompt_tokens=2))
    assert tracker.pending == 1
    await tracker.drain()

    assert tracker.pending == 0
    assert sink.records[0].to_dict()["total_tokens"] == 2


@pytest.mark.asyncio
async def test_usage_sink_failure_is_logged_not_raised(caplog):
    class BrokenSink:
        async def record(self, record):
            raise ConnectionError("billing service down")

    tracker = UsageTracker(BrokenSink())

    tracker.track(UsageRecord(execution_id="e1", provider="mock", model="m"))
    await tracker.drain()

    assert "Failed to record usage" in caplog.text


# ---- Configuration ----


def test_config_defaults_without_file():
    config = EngineConfig()

    assert config.base_url == "http://localhost:3000"
    assert config.default_model == DEFAULT_MODEL
    assert config.parallel_tiers is False
    assert config.api_override_enabled is True
    assert config.node_overrides == {}


def test_config_file_and_environment(tmp_path, monkeypatch):
    config_path = tmp_path / "configuration.json"
    config_path.write_text(
        json.dumps(
            {
                "llm": {
                    "provider": "anthropic",
                    "model": "claude-3-5-haiku-latest",
                    "api_key_env_var": "MY_LLM_KEY",
                    "max_tokens": 512,
                },
                "engine": {
                    "parallel_tiers": True,
                    "subflow_timeout_seconds": 5,
                    "node_overrides": {"LLM": ["llmModel"]},
                },
            }
        )
    )
    monkeypatch.setenv("MY_LLM_KEY", "k-1")
    monkeypatch.setenv("SERVER_PORT", "8080")

    config = EngineConfig()

    assert get_preferred_model() == "anthropic/claude-3-5-haiku-latest"
    assert get_api_key() == "k-1"
    assert config.max_tokens == 512
    assert config.parallel_tiers is True
    assert config.subflow_timeout_seconds == 5.0
    assert config.node_overrides == {"LLM": ["llmModel"]}
    assert config.base_url == "http://localhost:8080"


def test_explicit_base_url_wins(monkeypatch):
    monkeypatch.setenv("FLOWENGINE_BASE_URL", "https://flows.example.com/")

    assert get_server_url() == "https://flows.example.com"
