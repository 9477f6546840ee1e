"""Built-in node implementations."""

from flowengine.nodes.direct_reply import DirectReplyNode
from flowengine.nodes.execute_flow import ExecuteFlowNode
from flowengine.nodes.llm import LLMNode
from flowengine.nodes.start import StartNode
from flowengine.nodes.sticky_note import StickyNoteNode
from flowengine.nodes.tool import ToolNode
from flowengine.runner.node_registry import NodeDefinition, NodeRegistry
from flowengine.runner.tool_registry import ToolRegistry


def register_builtin_nodes(
    registry: NodeRegistry, tool_registry: ToolRegistry | None = None
) -> NodeRegistry:
    """Register every built-in node type. Returns the registry for chaining."""
    for node_class in (StartNode, DirectReplyNode, LLMNode, ExecuteFlowNode, StickyNoteNode):
        registry.register_class(node_class)

    tools = tool_registry or ToolRegistry()
    registry.register(
        NodeDefinition(
            name=ToolNode.name,
            locator=f"{ToolNode.__module__}:{ToolNode.__qualname__}",
            category=ToolNode.category,
            label=ToolNode.label,
            description=ToolNode.description,
            factory=lambda: ToolNode(tools),
            input_params=list(ToolNode.input_params),
        )
    )
    return registry


__all__ = [
    "DirectReplyNode",
    "ExecuteFlowNode",
    "LLMNode",
    "StartNode",
    "StickyNoteNode",
    "ToolNode",
    "register_builtin_nodes",
]
