"""Tool node - calls a registered tool with arguments typed into the editor."""

import json
import logging
from typing import Any

from flowengine.errors import ConfigurationError
from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext, NodeExecutionResult
from flowengine.graph.payload import parse_escaped_argument, split_result_payload
from flowengine.nodes.base import BuiltinNode, state_patch
from flowengine.runner.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolNode(BuiltinNode):
    name = "toolAgentflow"
    label = "Tool"
    description = "Tools allow the flow to interact with external systems"
    input_params = [
        InputParam(
            name="selectedTool", label="Tool", type="asyncOptions", load_method="listTools"
        ),
        InputParam(
            name="toolInputArgs",
            label="Tool Input Arguments",
            type="array",
            optional=True,
            accept_variable=True,
        ),
        InputParam(name="toolUpdateState", label="Update Flow State", type="array", optional=True),
    ]

    def __init__(self, tool_registry: ToolRegistry | None = None):
        self.tool_registry = tool_registry or ToolRegistry()

    @staticmethod
    def _selected_tool(node: FlowNode) -> str:
        return node.inputs.get("selectedTool") or node.inputs.get("toolAgentflowSelectedTool") or ""

    def transform_inputs_to_args(self, node: FlowNode) -> dict[str, Any]:
        """``[{inputArgName, inputArgValue}]`` -> keyword arguments, unescaping values."""
        args: dict[str, Any] = {}
        for entry in node.inputs.get("toolInputArgs") or []:
            if not isinstance(entry, dict) or not entry.get("inputArgName"):
                continue
            args[entry["inputArgName"]] = parse_escaped_argument(entry.get("inputArgValue", ""))
        return args

    async def load_options(
        self, method: str, node: FlowNode, ctx: NodeContext | None
    ) -> list[dict[str, Any]]:
        if method != "listTools":
            return []
        return [
            {"label": tool.name, "name": tool.name, "description": tool.description}
            for tool in self.tool_registry.get_tools()
        ]

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> NodeExecutionResult:
        tool_name = self._selected_tool(node)
        if not tool_name:
            raise ConfigurationError("Tool not selected", node_id=node.id)

        args = input if isinstance(input, dict) else self.transform_inputs_to_args(node)
        logger.info(f"🔧 Calling tool {tool_name}")
        raw = await ctx.run_abortable(self.tool_registry.execute(tool_name, args))

        if isinstance(raw, str):
            envelope = split_result_payload(raw)
            content = envelope.content
        else:
            envelope = None
            content = json.dumps(raw, indent=2, default=str)

        return NodeExecutionResult(
            node_id=node.id,
            name=self.name,
            input={
                "toolInputArgs": (envelope.tool_args if envelope else None) or args,
                "selectedTool": tool_name,
            },
            output={"content": content},
            artifacts=envelope.artifacts if envelope else None,
            tool_args=envelope.tool_args if envelope else None,
            source_documents=envelope.source_documents if envelope else None,
            state=state_patch(node, "toolUpdateState", content),
        )
