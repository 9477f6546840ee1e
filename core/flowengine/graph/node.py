"""
Node runtime protocol - the contract between the executor and node code.

Every node implementation provides ``run``. The optional capabilities are
separate protocols so the loader can check for them explicitly:

- ``Initializable.init`` builds a long-lived handle (a client, a compiled
  tool) that is cached on the node for the rest of the execution
- ``OptionProvider.load_options`` serves option lists to an editor
- ``ArgsTransformer.transform_inputs_to_args`` maps resolved inputs to the
  argument dict handed to ``run``

``run`` may return a ``NodeExecutionResult``, a dict in the same shape, or a
plain string (taken as the output content).
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from flowengine.errors import ExecutionAborted
from flowengine.graph.flow import FlowNode, FlowSpec
from flowengine.graph.payload import split_result_payload
from flowengine.runtime.usage import UsageRecord

if TYPE_CHECKING:
    from flowengine.config import EngineConfig
    from flowengine.llm.provider import LLMProvider
    from flowengine.runtime.event_bus import StreamingSink
    from flowengine.runtime.usage import UsageTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NodeStatus(StrEnum):
    """Lifecycle of a node within one execution."""

    PENDING = "pending"
    INPUT_RESOLVED = "input_resolved"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TokenUsage:
    """Token counts reported by a model-invoking node."""

    provider: str = ""
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time_ms: int = 0
    success: bool = True

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class NodeExecutionResult:
    """What a node produced in one execution."""

    node_id: str
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    artifacts: Any = None
    tool_args: Any = None
    source_documents: Any = None
    # Keys to merge into the runtime state once the tier completes
    state: dict[str, Any] = field(default_factory=dict)
    chat_history: list[dict[str, Any]] = field(default_factory=list)
    usage: TokenUsage | None = None
    # The node already pushed its content to the streaming sink
    streamed: bool = False
    instance: Any = field(default=None, repr=False)

    @property
    def content(self) -> Any:
        return self.output.get("content", "")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.node_id,
            "name": self.name,
            "input": self.input,
            "output": self.output,
            "state": self.state,
        }
        if self.artifacts is not None:
            data["artifacts"] = self.artifacts
        if self.tool_args is not None:
            data["toolArgs"] = self.tool_args
        if self.source_documents is not None:
            data["sourceDocuments"] = self.source_documents
        if self.chat_history:
            data["chatHistory"] = self.chat_history
        return data


@dataclass
class ExecutionContext:
    """Identity and plumbing shared by every node of one execution."""

    flow_id: str
    chat_id: str = ""
    session_id: str = ""
    org_id: str = ""
    user_id: str = ""
    execution_id: str = ""
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    streamer: "StreamingSink | None" = None
    base_url: str = ""
    api_key: str | None = None
    question: str = ""
    override_config: dict[str, Any] = field(default_factory=dict)
    flow: FlowSpec | None = None

    @property
    def is_aborted(self) -> bool:
        return self.abort_event.is_set()


@dataclass
class NodeContext:
    """
    Per-node view handed to ``run``/``init``.

    ``state`` and ``chat_history`` are the snapshots taken at tier start;
    writes to them are not seen by other nodes.
    """

    execution: ExecutionContext
    node: FlowNode
    state: dict[str, Any] = field(default_factory=dict)
    chat_history: list[dict[str, Any]] = field(default_factory=list)
    is_last_node: bool = False
    llm: "LLMProvider | None" = None
    config: "EngineConfig | None" = None
    usage_tracker: "UsageTracker | None" = None
    http_client: Any = None

    @property
    def can_stream(self) -> bool:
        """Only ending nodes stream, and only when a sink is attached."""
        return self.is_last_node and self.execution.streamer is not None

    def check_aborted(self) -> None:
        if self.execution.is_aborted:
            raise ExecutionAborted("Execution aborted", node_id=self.node.id)

    def record_usage(self, usage: TokenUsage) -> None:
        """Hand token usage of this node to the tracker; delivery happens in the background."""
        if self.usage_tracker is None:
            return
        self.usage_tracker.track(
            UsageRecord(
                execution_id=self.execution.execution_id,
                provider=usage.provider,
                model=usage.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                processing_time_ms=usage.processing_time_ms,
                success=usage.success,
                org_id=self.execution.org_id,
                user_id=self.execution.user_id,
                node_id=self.node.id,
            )
        )

    async def stream_token(self, token: str) -> None:
        if self.can_stream and token:
            await self.execution.streamer.stream_token(self.execution.chat_id, token)

    async def run_abortable(self, awaitable: Awaitable[T]) -> T:
        """
        Await an outbound call, cancelling it if the abort signal fires first.

        Raises:
            ExecutionAborted: abort was requested before the call completed
        """
        self.check_aborted()
        task = asyncio.ensure_future(awaitable)
        abort_waiter = asyncio.create_task(self.execution.abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            abort_waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise ExecutionAborted("Execution aborted", node_id=self.node.id)


@runtime_checkable
class NodeRuntime(Protocol):
    """Required capability: run the node."""

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> Any: ...


@runtime_checkable
class Initializable(Protocol):
    async def init(self, node: FlowNode, ctx: NodeContext) -> Any: ...


@runtime_checkable
class OptionProvider(Protocol):
    async def load_options(
        self, method: str, node: FlowNode, ctx: NodeContext | None
    ) -> list[dict[str, Any]]: ...


@runtime_checkable
class ArgsTransformer(Protocol):
    def transform_inputs_to_args(self, node: FlowNode) -> dict[str, Any]: ...


def normalize_result(node: FlowNode, raw: Any) -> NodeExecutionResult:
    """
    Coerce whatever ``run`` returned into a NodeExecutionResult.

    String content is split on the payload delimiters; sections the node set
    explicitly are kept.
    """
    if isinstance(raw, NodeExecutionResult):
        result = raw
    elif isinstance(raw, dict):
        result = NodeExecutionResult(
            node_id=str(raw.get("id") or node.id),
            name=str(raw.get("name") or node.name),
            input=dict(raw.get("input") or {}),
            output=_coerce_output(raw.get("output")),
            artifacts=raw.get("artifacts"),
            tool_args=raw.get("tool_args", raw.get("toolArgs")),
            source_documents=raw.get("source_documents", raw.get("sourceDocuments")),
            state=dict(raw.get("state") or {}),
            chat_history=list(raw.get("chat_history", raw.get("chatHistory")) or []),
            streamed=bool(raw.get("streamed", False)),
        )
    elif raw is None:
        result = NodeExecutionResult(node_id=node.id, name=node.name)
    else:
        result = NodeExecutionResult(node_id=node.id, name=node.name, output={"content": raw})

    content = result.output.get("content")
    if isinstance(content, str):
        envelope = split_result_payload(content)
        result.output["content"] = envelope.content
        if result.artifacts is None:
            result.artifacts = envelope.artifacts
        if result.tool_args is None:
            result.tool_args = envelope.tool_args
        if result.source_documents is None:
            result.source_documents = envelope.source_documents
    return result


def _coerce_output(output: Any) -> dict[str, Any]:
    if output is None:
        return {}
    if isinstance(output, dict):
        return dict(output)
    return {"content": output}
