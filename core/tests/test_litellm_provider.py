"""
Tests for LiteLLMProvider with litellm calls patched out.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.stream_events import FinishEvent, StreamErrorEvent, TextDeltaEvent


def completion(content, prompt_tokens=5, completion_tokens=2):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")
        ],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="gpt-4o-mini",
    )


def chunk(text=None, finish_reason=None, usage=None):
    choices = []
    if text is not None or finish_reason is not None:
        choices = [
            SimpleNamespace(delta=SimpleNamespace(content=text), finish_reason=finish_reason)
        ]
    return SimpleNamespace(choices=choices, usage=usage)


async def agen(items):
    for item in items:
        yield item


def test_provider_name_from_model_prefix():
    assert LiteLLMProvider(model="anthropic/claude-3-5-haiku-latest").provider_name == "anthropic"
    assert LiteLLMProvider(model="gpt-4o-mini").provider_name == "openai"


@pytest.mark.asyncio
async def test_acomplete_builds_request_and_maps_usage():
    llm = LiteLLMProvider(model="openai/gpt-4o-mini", api_key="k", timeout=30)

    with patch(
        "flowengine.llm.litellm.litellm.acompletion",
        new=AsyncMock(return_value=completion("Paris")),
    ) as mock_call:
        response = await llm.acomplete(
            [{"role": "user", "content": "Capital of France?"}],
            system="Be brief",
            max_tokens=50,
            temperature=0.0,
            json_mode=True,
        )

    kwargs = mock_call.call_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
    assert kwargs["max_tokens"] == 50
    assert kwargs["temperature"] == 0.0
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["api_key"] == "k"
    assert kwargs["timeout"] == 30
    assert response.content == "Paris"
    assert (response.input_tokens, response.output_tokens) == (5, 2)
    assert response.stop_reason == "stop"


def test_complete_omits_unset_options():
    llm = LiteLLMProvider(model="openai/gpt-4o-mini")

    with patch(
        "flowengine.llm.litellm.litellm.completion", return_value=completion("ok")
    ) as mock_call:
        llm.complete([{"role": "user", "content": "hi"}])

    kwargs = mock_call.call_args.kwargs
    assert "temperature" not in kwargs
    assert "api_key" not in kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_finish():
    chunks = [
        chunk("Hel"),
        chunk("lo"),
        chunk(finish_reason="stop"),
        chunk(usage=SimpleNamespace(prompt_tokens=3, completion_tokens=2)),
    ]
    llm = LiteLLMProvider(model="openai/gpt-4o-mini")

    with patch(
        "flowengine.llm.litellm.litellm.acompletion",
        new=AsyncMock(return_value=agen(chunks)),
    ) as mock_call:
        events = [event async for event in llm.stream([{"role": "user", "content": "hi"}])]

    assert mock_call.call_args.kwargs["stream"] is True
    deltas = [e for e in events if isinstance(e, TextDeltaEvent)]
    assert [d.content for d in deltas] == ["Hel", "lo"]
    assert deltas[-1].snapshot == "Hello"
    finish = events[-1]
    assert isinstance(finish, FinishEvent)
    assert (finish.stop_reason, finish.input_tokens, finish.output_tokens) == ("stop", 3, 2)


@pytest.mark.asyncio
async def test_stream_failure_becomes_error_event():
    llm = LiteLLMProvider(model="openai/gpt-4o-mini")

    with patch(
        "flowengine.llm.litellm.litellm.acompletion",
        new=AsyncMock(side_effect=RuntimeError("connection reset")),
    ):
        events = [event async for event in llm.stream([{"role": "user", "content": "hi"}])]

    assert len(events) == 1
    assert isinstance(events[0], StreamErrorEvent)
    assert "connection reset" in events[0].error
