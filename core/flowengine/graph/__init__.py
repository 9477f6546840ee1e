"""Flow graphs: data model, compilation, variable resolution and execution."""

from flowengine.graph.builder import ConstructedGraph, construct_graphs
from flowengine.graph.executor import (
    ExecutionPlan,
    ExecutionResult,
    FlowExecutor,
    compile_flow,
    default_registry,
)
from flowengine.graph.flow import FlowEdge, FlowNode, FlowSpec, InputParam
from flowengine.graph.node import (
    ArgsTransformer,
    ExecutionContext,
    Initializable,
    NodeContext,
    NodeExecutionResult,
    NodeRuntime,
    NodeStatus,
    OptionProvider,
    TokenUsage,
)
from flowengine.graph.payload import ResultEnvelope, parse_escaped_argument, split_result_payload
from flowengine.graph.state import RuntimeState, process_template_variables, update_flow_state
from flowengine.graph.traversal import (
    StartingNodes,
    build_depth_queue,
    get_ending_nodes,
    get_starting_nodes,
    group_tiers,
)
from flowengine.graph.variables import (
    Variable,
    VariableResolver,
    VariableType,
    replace_inputs_with_config,
)

__all__ = [
    # Data model
    "FlowSpec",
    "FlowNode",
    "FlowEdge",
    "InputParam",
    # Compilation
    "ConstructedGraph",
    "construct_graphs",
    "StartingNodes",
    "get_ending_nodes",
    "get_starting_nodes",
    "build_depth_queue",
    "group_tiers",
    "ExecutionPlan",
    "compile_flow",
    # Variables
    "Variable",
    "VariableType",
    "VariableResolver",
    "replace_inputs_with_config",
    # Nodes
    "NodeStatus",
    "NodeContext",
    "ExecutionContext",
    "NodeExecutionResult",
    "TokenUsage",
    "NodeRuntime",
    "Initializable",
    "OptionProvider",
    "ArgsTransformer",
    # Payloads and state
    "ResultEnvelope",
    "split_result_payload",
    "parse_escaped_argument",
    "RuntimeState",
    "update_flow_state",
    "process_template_variables",
    # Execution
    "FlowExecutor",
    "ExecutionResult",
    "default_registry",
]
