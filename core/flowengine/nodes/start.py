"""Start node - entry point that seeds the runtime state."""

from typing import Any

from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext, NodeExecutionResult
from flowengine.nodes.base import BuiltinNode


class StartNode(BuiltinNode):
    name = "startAgentflow"
    label = "Start"
    description = "Starting point of the flow"
    input_params = [
        InputParam(name="startInputType", label="Input Type", type="options", default="chatInput"),
        InputParam(name="startState", label="Flow State", type="array", optional=True),
        InputParam(
            name="startPersistState", label="Persist State", type="boolean", optional=True
        ),
    ]

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> NodeExecutionResult:
        """
        Declare the flow state keys with their initial values.

        With ``startPersistState`` set, keys already carried over from an
        earlier session keep their value.
        """
        persist = bool(node.inputs.get("startPersistState"))
        patch: dict[str, Any] = {}
        for entry in node.inputs.get("startState") or []:
            key = entry.get("key") if isinstance(entry, dict) else None
            if not key:
                continue
            if persist and key in ctx.state:
                continue
            patch[key] = entry.get("value", "")

        question = ctx.execution.question
        return NodeExecutionResult(
            node_id=node.id,
            name=self.name,
            input={"question": question},
            output={"content": question, "question": question},
            state=patch,
        )
