"""LiteLLM-backed provider - one interface for OpenAI, Anthropic, Gemini, Ollama..."""

import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm

from flowengine.llm.provider import LLMProvider, LLMResponse
from flowengine.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

logger = logging.getLogger(__name__)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider built on litellm.

    Model strings follow litellm's ``provider/model`` convention, e.g.
    ``openai/gpt-4o-mini`` or ``anthropic/claude-3-5-haiku-latest``.

    Example:
        llm = LiteLLMProvider(model="openai/gpt-4o-mini")
        response = await llm.acomplete([{"role": "user", "content": "Hi"}])
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.extra_kwargs = extra_kwargs
        self.provider_name = model.split("/", 1)[0] if "/" in model else "openai"

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        system: str,
        max_tokens: int,
        temperature: float | None,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        full_messages = list(messages)
        if system:
            full_messages = [{"role": "system", "content": system}, *full_messages]

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            **self.extra_kwargs,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.timeout:
            kwargs["timeout"] = self.timeout
        return kwargs

    @staticmethod
    def _to_response(response: Any, model: str) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        response = litellm.completion(**kwargs)
        return self._to_response(response, self.model)

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        response = await litellm.acompletion(**kwargs)
        return self._to_response(response, self.model)

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        snapshot = ""
        stop_reason = ""
        input_tokens = 0
        output_tokens = 0
        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                    output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = getattr(choice.delta, "content", None)
                if delta:
                    snapshot += delta
                    yield TextDeltaEvent(content=delta, snapshot=snapshot)
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            logger.error(f"Streaming from {self.model} failed: {e}")
            yield StreamErrorEvent(error=str(e), status_code=getattr(e, "status_code", None))
            return

        yield TextEndEvent(full_text=snapshot)
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model,
        )
