"""Chat-completion backends used by LLM nodes."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from flowengine.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)


@dataclass
class LLMResponse:
    """A finished completion with the token counts reported by the backend."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    A chat-completion backend.

    Subclasses implement ``complete``; ``acomplete`` and ``stream`` fall back
    to it. ``provider_name`` and ``model`` label the usage records of the
    node that called the provider.
    """

    #: Provider name reported in usage records
    provider_name: str = "unknown"
    model: str = ""

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Run one chat completion.

        Args:
            messages: Chat messages, oldest first, as {"role", "content"} dicts
            system: System prompt
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature, provider default when None
            json_mode: Ask the backend for a JSON object response

        Returns:
            LLMResponse with the text and token counts
        """
        pass

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Async completion. Default runs complete() in a worker thread."""
        return await asyncio.to_thread(
            self.complete,
            messages=messages,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Yield StreamEvents for one completion.

        The fallback emits the whole acomplete() result as a single delta,
        so backends without incremental output still stream.
        """
        response = await self.acomplete(
            messages=messages,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        yield TextDeltaEvent(content=response.content, snapshot=response.content)
        yield TextEndEvent(full_text=response.content)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            model=response.model,
        )
