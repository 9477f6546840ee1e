"""
Flow Executor - compiles a flow into tiers and runs them.

The executor:
1. Builds forward/reverse adjacency from the flow's nodes and edges
2. Finds the ending nodes and walks back to the starting nodes, assigning
   every reachable node a depth
3. Runs the tiers in ascending depth; within a tier every node sees the
   runtime state and chat history as they were when the tier started
4. Merges state patches and chat-history deltas once a tier completes
5. Streams ending-node output, and on failure the sanitized error
6. Returns an ExecutionResult (failures are reported, not raised)
"""

import asyncio
import copy
import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import ExecutionAborted, ExecutionError, FlowEngineError
from flowengine.graph.builder import construct_graphs
from flowengine.graph.flow import FlowNode, FlowSpec
from flowengine.graph.node import (
    ExecutionContext,
    NodeContext,
    NodeExecutionResult,
    NodeStatus,
    normalize_result,
)
from flowengine.graph.state import RuntimeState
from flowengine.graph.traversal import build_depth_queue, get_ending_nodes, group_tiers
from flowengine.graph.variables import Variable, VariableResolver, replace_inputs_with_config
from flowengine.llm.provider import LLMProvider
from flowengine.observability import sanitize_error_message, set_trace_context, trace_scope
from flowengine.runner.node_registry import NodeRegistry, NodeRuntimeLoader
from flowengine.runtime.cache import TTLCache
from flowengine.runtime.event_bus import EventBus, StreamingSink
from flowengine.runtime.usage import UsageTracker

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Compiled schedule of a flow."""

    ending_node_ids: list[str] = field(default_factory=list)
    starting_node_ids: list[str] = field(default_factory=list)
    depth_queue: dict[str, int] = field(default_factory=dict)
    tiers: list[list[str]] = field(default_factory=list)

    @property
    def node_ids(self) -> list[str]:
        return [node_id for tier in self.tiers for node_id in tier]


@dataclass
class ExecutionResult:
    """Result of executing a flow."""

    success: bool
    execution_id: str = ""
    text: str = ""  # Content of the last ending node
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)  # {ending node id: output}
    executed: list[NodeExecutionResult] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)
    chat_history: list[dict[str, Any]] = field(default_factory=list)
    node_status: dict[str, NodeStatus] = field(default_factory=dict)
    error: str | None = None  # Sanitized, safe to show to users
    error_type: str | None = None
    failed_node_id: str | None = None
    total_tokens: int = 0
    total_latency_ms: int = 0
    exception: BaseException | None = field(default=None, repr=False)

    @property
    def path(self) -> list[str]:
        return [result.node_id for result in self.executed]

    @property
    def aborted(self) -> bool:
        return isinstance(self.exception, ExecutionAborted)

    def raise_for_error(self) -> None:
        """Re-raise the failure that ended the run, if any."""
        if self.exception is not None:
            raise self.exception


def compile_flow(flow: FlowSpec) -> ExecutionPlan:
    """
    Turn a flow into its execution plan.

    Raises:
        ResolutionError: no ending node
        CycleError: the reachable part of the graph has a cycle
    """
    nodes = [node for node in flow.nodes if not node.is_decorative]
    node_ids = {node.id for node in nodes}
    edges = [e for e in flow.edges if e.source in node_ids and e.target in node_ids]

    forward = construct_graphs(nodes, edges)
    reverse = construct_graphs(nodes, edges, reversed=True)
    ending = get_ending_nodes(forward.dependency_counts, forward.graph, nodes)
    ending_ids = [node.id for node in ending]
    queue = build_depth_queue(reverse.graph, ending_ids)

    unreachable = node_ids - set(queue.depth_queue)
    if unreachable:
        logger.debug(f"Nodes not connected to an ending node: {sorted(unreachable)}")

    return ExecutionPlan(
        ending_node_ids=ending_ids,
        starting_node_ids=queue.starting_node_ids,
        depth_queue=queue.depth_queue,
        tiers=group_tiers(queue.depth_queue, flow.node_ids()),
    )


def default_registry() -> NodeRegistry:
    """A registry holding the built-in node types."""
    from flowengine.nodes import register_builtin_nodes

    return register_builtin_nodes(NodeRegistry())


@dataclass
class _Run:
    """Mutable bookkeeping of one execute() call."""

    flow: FlowSpec
    plan: ExecutionPlan
    context: ExecutionContext
    state: RuntimeState
    chat_history: list[dict[str, Any]]
    loader: NodeRuntimeLoader
    resolver: VariableResolver
    predecessors: dict[str, list[str]]
    variable_overrides: dict[str, Any]
    file_attachment: str
    status: dict[str, NodeStatus] = field(default_factory=dict)
    executed: dict[str, NodeExecutionResult] = field(default_factory=dict)
    order: list[NodeExecutionResult] = field(default_factory=list)


class FlowExecutor:
    """
    Executes flows.

    Example:
        executor = FlowExecutor(llm=LiteLLMProvider(model="openai/gpt-4o-mini"))

        result = await executor.execute(
            flow=flow_spec,
            question="What is the capital of France?",
            streamer=QueueStreamer(),
        )
    """

    def __init__(
        self,
        registry: NodeRegistry | None = None,
        config: EngineConfig | None = None,
        llm: LLMProvider | None = None,
        instance_cache: TTLCache | None = None,
        usage_tracker: UsageTracker | None = None,
        event_bus: EventBus | None = None,
        http_client: Any = None,
        available_variables: Iterable[Variable] | None = None,
    ):
        """
        Args:
            registry: Node types; the built-in nodes when omitted
            config: Engine settings; loaded from the configuration file when omitted
            llm: Provider handed to model-invoking nodes instead of building one per node
            instance_cache: Caller-owned cache of init() handles, shared across executions
            usage_tracker: Receives token usage after each model-invoking node
            event_bus: Receives execution/node lifecycle events
            http_client: httpx.AsyncClient used for sub-flow calls
            available_variables: Global variables for ``$vars.<name>`` references
        """
        self.registry = registry or default_registry()
        self.config = config or EngineConfig()
        self.llm = llm
        self.instance_cache = instance_cache
        self.usage_tracker = usage_tracker
        self.event_bus = event_bus
        self.http_client = http_client
        self.available_variables = list(available_variables or [])

    async def execute(
        self,
        flow: FlowSpec | Mapping[str, Any] | str,
        question: str = "",
        *,
        chat_id: str | None = None,
        session_id: str = "",
        org_id: str = "",
        user_id: str = "",
        execution_id: str | None = None,
        streamer: StreamingSink | None = None,
        abort_event: asyncio.Event | None = None,
        state: Mapping[str, Any] | None = None,
        chat_history: Iterable[Mapping[str, Any]] | None = None,
        override_config: Mapping[str, Any] | None = None,
        variable_overrides: Mapping[str, Any] | None = None,
        file_attachment: str = "",
        api_key: str | None = None,
    ) -> ExecutionResult:
        """
        Run a flow to completion.

        Args:
            flow: The flow, or its stored dict/JSON form
            question: The user's input
            chat_id: Conversation id; generated when omitted
            session_id: Session the state and history belong to
            streamer: Sink for ending-node output and the terminal error
            abort_event: Set it to stop the run at the next node boundary
            state: Runtime state carried over from an earlier run
            chat_history: Messages carried over from an earlier run
            override_config: API overrides of node inputs (``vars`` overrides globals)
            variable_overrides: Values for placeholders, keyed by reference path
            api_key: Bearer key forwarded to sub-flow calls

        Returns:
            ExecutionResult; ``success`` is False when any node failed

        Raises:
            pydantic.ValidationError: the flow data cannot be parsed
        """
        execution_id = execution_id or str(uuid.uuid4())
        chat_id = chat_id or str(uuid.uuid4())
        started = time.monotonic()

        if not isinstance(flow, FlowSpec):
            flow = FlowSpec.from_dict(dict(flow) if isinstance(flow, Mapping) else flow)

        with trace_scope(
            flow_id=flow.id,
            execution_id=execution_id,
            chat_id=chat_id,
            session_id=session_id,
            org_id=org_id,
            user_id=user_id,
        ):
            context = ExecutionContext(
                flow_id=flow.id,
                chat_id=chat_id,
                session_id=session_id,
                org_id=org_id,
                user_id=user_id,
                execution_id=execution_id,
                abort_event=abort_event or asyncio.Event(),
                streamer=streamer,
                base_url=self.config.base_url,
                api_key=api_key,
                question=question,
                override_config=dict(override_config or {}),
                flow=flow,
            )
            run: _Run | None = None

            logger.info(f"🚀 Starting execution of flow {flow.name or flow.id}")
            await self._emit(
                "emit_execution_started",
                chat_id=chat_id,
                execution_id=execution_id,
                flow_id=flow.id,
                question=question,
            )

            try:
                plan = compile_flow(flow)
                logger.info(
                    f"   Ending nodes: {plan.ending_node_ids}, "
                    f"starting nodes: {plan.starting_node_ids}, tiers: {len(plan.tiers)}"
                )

                reverse = construct_graphs(
                    [n for n in flow.nodes if n.id in plan.depth_queue],
                    [
                        e
                        for e in flow.edges
                        if e.source in plan.depth_queue and e.target in plan.depth_queue
                    ],
                    reversed=True,
                )
                run = _Run(
                    flow=flow,
                    plan=plan,
                    context=context,
                    state=RuntimeState(state),
                    chat_history=[dict(m) for m in chat_history or []],
                    loader=NodeRuntimeLoader(self.registry, self.instance_cache),
                    resolver=VariableResolver(flow.node_ids()),
                    predecessors=reverse.graph,
                    variable_overrides=dict(variable_overrides or {}),
                    file_attachment=file_attachment,
                    status={node_id: NodeStatus.PENDING for node_id in plan.node_ids},
                )

                for tier_index, tier in enumerate(plan.tiers):
                    await self._run_tier(run, tier_index, tier)

                return await self._finish(run, started)

            except Exception as e:
                return await self._fail(e, run, context, started)

    async def _run_tier(self, run: _Run, tier_index: int, tier: list[str]) -> None:
        state_snapshot = run.state.snapshot()
        history_snapshot = copy.deepcopy(run.chat_history)
        executed_snapshot = dict(run.executed)

        async def run_one(node_id: str) -> NodeExecutionResult:
            return await self._run_node(
                run,
                node_id,
                tier_index,
                copy.deepcopy(state_snapshot),
                copy.deepcopy(history_snapshot),
                executed_snapshot,
            )

        if self.config.parallel_tiers and len(tier) > 1:
            logger.info(f"   ⑂ Tier {tier_index}: running {len(tier)} nodes in parallel")
            tasks = [asyncio.create_task(run_one(n)) for n in tier]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            finally:
                # First failure aborts the tier; siblings still running are cancelled
                unfinished = [task for task in tasks if not task.done()]
                for task in unfinished:
                    task.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)
            for task in tasks:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
            results = [task.result() for task in tasks]
        else:
            results = []
            for node_id in tier:
                results.append(await run_one(node_id))

        # Patches land only after the whole tier ran, in node order
        for result in results:
            changed = run.state.merge(result.state)
            for key in changed:
                await self._emit(
                    "emit_state_changed",
                    chat_id=run.context.chat_id,
                    execution_id=run.context.execution_id,
                    key=key,
                    old_value=state_snapshot.get(key),
                    new_value=run.state.get(key),
                    node_id=result.node_id,
                )
            run.chat_history.extend(result.chat_history)
            run.executed[result.node_id] = result
            run.order.append(result)

    async def _run_node(
        self,
        run: _Run,
        node_id: str,
        tier_index: int,
        state_snapshot: dict[str, Any],
        history_snapshot: list[dict[str, Any]],
        executed_snapshot: dict[str, NodeExecutionResult],
    ) -> NodeExecutionResult:
        context = run.context
        set_trace_context(node_id=node_id)
        try:
            if context.is_aborted:
                raise ExecutionAborted("Execution aborted", node_id=node_id)

            node = run.flow.get_node(node_id)
            if node is None:
                raise ExecutionError(f"Node {node_id} not found in flow", node_id=node_id)

            pending = [
                p
                for p in run.predecessors.get(node_id, [])
                if run.status.get(p) != NodeStatus.SUCCEEDED
            ]
            if pending:
                raise ExecutionError(
                    f"Node {node_id} scheduled before its predecessors {pending}",
                    node_id=node_id,
                )

            resolved = self._resolve_inputs(
                run, node, state_snapshot, history_snapshot, executed_snapshot
            )
            run.status[node_id] = NodeStatus.INPUT_RESOLVED

            loaded = run.loader.load(resolved)
            is_last_node = node_id in run.plan.ending_node_ids
            node_ctx = NodeContext(
                execution=context,
                node=resolved,
                state=state_snapshot,
                chat_history=history_snapshot,
                is_last_node=is_last_node,
                llm=self.llm,
                config=self.config,
                usage_tracker=self.usage_tracker,
                http_client=self.http_client,
            )

            args = loaded.transform_inputs_to_args()
            await run.loader.initialize(loaded, node_ctx)

            run.status[node_id] = NodeStatus.RUNNING
            logger.info(f"▶ Tier {tier_index}: {node.label or node.name} ({node_id})")
            await self._emit(
                "emit_node_started",
                chat_id=context.chat_id,
                node_id=node_id,
                execution_id=context.execution_id,
                node_name=node.name,
                tier=tier_index,
            )

            node_started = time.monotonic()
            try:
                raw = await loaded.run(args if args is not None else context.question, node_ctx)
            except FlowEngineError:
                raise
            except Exception as e:
                raise ExecutionError(
                    f"Node {node_id} failed: {e}",
                    node_id=node_id,
                    public_message=str(e) or type(e).__name__,
                    details={"status_code": getattr(e, "status_code", None)},
                ) from e
            latency_ms = int((time.monotonic() - node_started) * 1000)

            result = normalize_result(resolved, raw)
            result.node_id = node_id
            result.instance = loaded.instance
            run.status[node_id] = NodeStatus.SUCCEEDED
            logger.info(
                f"   ✓ {node_id} completed",
                extra={"event": "node_completed", "node_id": node_id, "latency_ms": latency_ms},
            )

            if is_last_node and context.streamer is not None and not result.streamed:
                content = result.content
                if content not in (None, ""):
                    text = content if isinstance(content, str) else str(content)
                    await context.streamer.stream_token(context.chat_id, text)

            if result.usage is not None:
                node_ctx.record_usage(result.usage)

            await self._emit(
                "emit_node_completed",
                chat_id=context.chat_id,
                node_id=node_id,
                execution_id=context.execution_id,
                output=result.output,
            )
            return result

        except Exception as e:
            run.status[node_id] = NodeStatus.FAILED
            if isinstance(e, FlowEngineError) and e.node_id is None:
                e.node_id = node_id
            await self._emit(
                "emit_node_failed",
                chat_id=context.chat_id,
                node_id=node_id,
                error=sanitize_error_message(e),
                execution_id=context.execution_id,
            )
            raise

    def _resolve_inputs(
        self,
        run: _Run,
        node: FlowNode,
        state_snapshot: dict[str, Any],
        history_snapshot: list[dict[str, Any]],
        executed_snapshot: dict[str, NodeExecutionResult],
    ) -> FlowNode:
        context = run.context
        node = replace_inputs_with_config(
            node,
            context.override_config,
            self.config.node_overrides,
            enabled=self.config.api_override_enabled,
        )
        flow_config = {
            "chatflowId": run.flow.id,
            "chatId": context.chat_id,
            "sessionId": context.session_id,
            "executionId": context.execution_id,
            "state": state_snapshot,
            "runtimeChatHistoryLength": len(history_snapshot),
        }
        return run.resolver.resolve(
            node,
            executed_snapshot,
            question=context.question,
            chat_history=history_snapshot,
            flow_config=flow_config,
            session_id=context.session_id,
            available_variables=self.available_variables,
            variable_overrides=run.variable_overrides,
            file_attachment=run.file_attachment,
            override_vars=context.override_config.get("vars"),
            overrides_enabled=self.config.variable_overrides_enabled,
        )

    async def _finish(self, run: _Run, started: float) -> ExecutionResult:
        context = run.context
        outputs = {
            node_id: run.executed[node_id].output
            for node_id in run.plan.ending_node_ids
            if node_id in run.executed
        }
        text = ""
        for result in reversed(run.order):
            if result.node_id in outputs:
                content = result.content
                text = content if isinstance(content, str) else str(content)
                break

        if context.streamer is not None:
            await context.streamer.stream_end(context.chat_id)

        total_tokens = sum(r.usage.total_tokens for r in run.order if r.usage is not None)
        total_latency = int((time.monotonic() - started) * 1000)

        logger.info("✓ Execution complete!")
        logger.info(f"   Path: {' → '.join(r.node_id for r in run.order)}")
        logger.info(f"   Total tokens: {total_tokens}")
        await self._emit(
            "emit_execution_completed",
            chat_id=context.chat_id,
            execution_id=context.execution_id,
            output={"text": text},
        )

        return ExecutionResult(
            success=True,
            execution_id=context.execution_id,
            text=text,
            outputs=outputs,
            executed=list(run.order),
            state=run.state.to_dict(),
            chat_history=list(run.chat_history),
            node_status=dict(run.status),
            total_tokens=total_tokens,
            total_latency_ms=total_latency,
        )

    async def _fail(
        self,
        error: Exception,
        run: _Run | None,
        context: ExecutionContext,
        started: float,
    ) -> ExecutionResult:
        failed_node_id = getattr(error, "node_id", None)
        where = f" at node {failed_node_id}" if failed_node_id else ""
        logger.exception(
            f"❌ Execution {context.execution_id} of flow {context.flow_id} "
            f"failed{where}: {error}",
            extra={"event": "execution_failed", "node_id": failed_node_id},
        )

        message = sanitize_error_message(error)

        if context.streamer is not None:
            try:
                await context.streamer.stream_error(context.chat_id, message)
                await context.streamer.stream_end(context.chat_id)
            except Exception as stream_error:
                logger.warning(f"Could not deliver error to stream: {stream_error}")

        await self._emit(
            "emit_execution_failed",
            chat_id=context.chat_id,
            execution_id=context.execution_id,
            error=message,
            node_id=failed_node_id,
            aborted=isinstance(error, ExecutionAborted),
        )

        order = list(run.order) if run else []
        return ExecutionResult(
            success=False,
            execution_id=context.execution_id,
            executed=order,
            state=run.state.to_dict() if run else {},
            chat_history=list(run.chat_history) if run else [],
            node_status=dict(run.status) if run else {},
            error=message,
            error_type=type(error).__name__,
            failed_node_id=failed_node_id,
            total_tokens=sum(r.usage.total_tokens for r in order if r.usage is not None),
            total_latency_ms=int((time.monotonic() - started) * 1000),
            exception=error,
        )

    async def _emit(self, method: str, **kwargs: Any) -> None:
        if self.event_bus is not None:
            await getattr(self.event_bus, method)(**kwargs)

