"""Sticky note - editor annotation, never executed."""

from typing import Any

from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext
from flowengine.nodes.base import BuiltinNode


class StickyNoteNode(BuiltinNode):
    name = "stickyNoteAgentflow"
    label = "Sticky Note"
    category = "Utilities"
    description = "Add notes to the flow"
    input_params = [InputParam(name="note", label="Note", optional=True)]

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> None:
        return None
