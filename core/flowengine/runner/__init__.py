"""Node registry, runtime loader and tool registry."""

from flowengine.runner.node_registry import (
    LoadedNode,
    NodeDefinition,
    NodeRegistry,
    NodeRuntimeLoader,
)
from flowengine.runner.tool_registry import Tool, ToolRegistry

__all__ = [
    "LoadedNode",
    "NodeDefinition",
    "NodeRegistry",
    "NodeRuntimeLoader",
    "Tool",
    "ToolRegistry",
]
