"""Deterministic provider for tests and offline CLI runs."""

from typing import Any

from flowengine.llm.provider import LLMProvider, LLMResponse


class MockLLMProvider(LLMProvider):
    """
    Returns canned responses in order, then echoes the last user message.

    Token counts are word counts so usage tracking can be asserted.
    """

    provider_name = "mock"

    def __init__(self, responses: list[str] | None = None, model: str = "mock-model"):
        self.model = model
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system, "max_tokens": max_tokens})
        if self.responses:
            content = self.responses.pop(0)
        else:
            user_messages = [m for m in messages if m.get("role") == "user"]
            content = f"Echo: {user_messages[-1]['content']}" if user_messages else "Echo:"

        prompt_words = sum(len(str(m.get("content", "")).split()) for m in messages)
        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=prompt_words + len(system.split()),
            output_tokens=len(content.split()),
            stop_reason="stop",
        )

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        return self.complete(messages, system, max_tokens, temperature, json_mode)
