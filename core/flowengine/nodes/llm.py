"""LLM node - one chat completion, optionally streamed to the user."""

import logging
import time
from typing import Any

import litellm

from flowengine.config import DEFAULT_MAX_TOKENS
from flowengine.errors import ExecutionAborted, ExecutionError
from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext, NodeExecutionResult, TokenUsage
from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.provider import LLMProvider
from flowengine.llm.stream_events import FinishEvent, StreamErrorEvent, TextDeltaEvent
from flowengine.nodes.base import BuiltinNode, history_delta, state_patch

logger = logging.getLogger(__name__)


class LLMNode(BuiltinNode):
    name = "llmAgentflow"
    label = "LLM"
    description = "Large language models to analyze user-provided inputs and generate responses"
    input_params = [
        InputParam(name="llmModel", label="Model", type="asyncOptions", load_method="listModels"),
        InputParam(name="llmMessages", label="Messages", type="array", optional=True),
        InputParam(name="llmEnableMemory", label="Enable Memory", type="boolean", default=True),
        InputParam(
            name="llmUserMessage", label="Input Message", optional=True, accept_variable=True
        ),
        InputParam(name="llmReturnResponseAs", label="Return Response As", type="options"),
        InputParam(name="llmTemperature", label="Temperature", type="number", optional=True),
        InputParam(name="llmMaxTokens", label="Max Tokens", type="number", optional=True),
        InputParam(name="llmUpdateState", label="Update Flow State", type="array", optional=True),
    ]

    async def init(self, node: FlowNode, ctx: NodeContext) -> LLMProvider:
        """Build the provider for the configured model (or use the injected one)."""
        if ctx.llm is not None:
            return ctx.llm
        model = node.inputs.get("llmModel") or (ctx.config.default_model if ctx.config else "")
        if not model:
            raise ExecutionError("No model selected", node_id=node.id)
        api_key = ctx.config.api_key if ctx.config else None
        return LiteLLMProvider(model=str(model), api_key=api_key)

    async def load_options(
        self, method: str, node: FlowNode, ctx: NodeContext | None
    ) -> list[dict[str, Any]]:
        if method != "listModels":
            return []
        return [{"label": model, "name": model} for model in sorted(set(litellm.model_list))]

    def _build_messages(self, node: FlowNode, ctx: NodeContext) -> tuple[str, list[dict], str]:
        system_parts = []
        messages: list[dict[str, Any]] = []
        for msg in node.inputs.get("llmMessages") or []:
            if not isinstance(msg, dict) or not msg.get("content"):
                continue
            if msg.get("role") == "system":
                system_parts.append(str(msg["content"]))
            else:
                messages.append({"role": msg.get("role", "user"), "content": str(msg["content"])})

        if node.inputs.get("llmEnableMemory", True):
            history = [
                {"role": m["role"], "content": str(m.get("content", ""))}
                for m in ctx.chat_history
                if isinstance(m, dict) and m.get("role") in ("user", "assistant")
            ]
            messages = history + messages

        user_message = node.inputs.get("llmUserMessage") or ""
        if not isinstance(user_message, str):
            user_message = str(user_message)
        if not user_message and not ctx.chat_history:
            user_message = ctx.execution.question
        if user_message:
            messages.append({"role": "user", "content": user_message})
        return "\n\n".join(system_parts), messages, user_message

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> NodeExecutionResult:
        provider: LLMProvider = node.instance or await self.init(node, ctx)
        system, messages, user_message = self._build_messages(node, ctx)
        if not messages:
            raise ExecutionError("LLM node has no messages to send", node_id=node.id)

        max_tokens = int(node.inputs.get("llmMaxTokens") or 0) or (
            ctx.config.max_tokens if ctx.config else DEFAULT_MAX_TOKENS
        )
        temperature = node.inputs.get("llmTemperature")
        temperature = float(temperature) if temperature not in (None, "") else None

        started = time.monotonic()
        streamed = False
        try:
            if ctx.can_stream:
                content, input_tokens, output_tokens = await ctx.run_abortable(
                    self._stream(provider, ctx, messages, system, max_tokens, temperature)
                )
                streamed = True
            else:
                response = await ctx.run_abortable(
                    provider.acomplete(
                        messages=messages,
                        system=system,
                        max_tokens=max_tokens,
                        temperature=temperature,
                    )
                )
                content = response.content
                input_tokens, output_tokens = response.input_tokens, response.output_tokens
        except ExecutionAborted:
            raise
        except Exception:
            ctx.record_usage(
                TokenUsage(
                    provider=getattr(provider, "provider_name", "unknown"),
                    model=getattr(provider, "model", ""),
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                    success=False,
                )
            )
            raise
        elapsed_ms = int((time.monotonic() - started) * 1000)

        return NodeExecutionResult(
            node_id=node.id,
            name=self.name,
            input={"messages": messages},
            output={"content": content},
            state=state_patch(node, "llmUpdateState", content),
            chat_history=history_delta(
                ctx.chat_history, user_message, content, node.inputs.get("llmReturnResponseAs")
            ),
            usage=TokenUsage(
                provider=getattr(provider, "provider_name", "unknown"),
                model=getattr(provider, "model", ""),
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                processing_time_ms=elapsed_ms,
            ),
            streamed=streamed,
        )

    async def _stream(
        self,
        provider: LLMProvider,
        ctx: NodeContext,
        messages: list[dict[str, Any]],
        system: str,
        max_tokens: int,
        temperature: float | None,
    ) -> tuple[str, int, int]:
        content = ""
        input_tokens = output_tokens = 0
        async for event in provider.stream(
            messages=messages, system=system, max_tokens=max_tokens, temperature=temperature
        ):
            if isinstance(event, TextDeltaEvent):
                content = event.snapshot or content + event.content
                await ctx.stream_token(event.content)
            elif isinstance(event, FinishEvent):
                input_tokens, output_tokens = event.input_tokens, event.output_tokens
            elif isinstance(event, StreamErrorEvent):
                raise ExecutionError(
                    event.error, node_id=ctx.node.id, details={"status_code": event.status_code}
                )
        return content, input_tokens, output_tokens
