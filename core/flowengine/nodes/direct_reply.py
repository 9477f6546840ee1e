"""Direct reply node - answers with a fixed (variable-resolved) message."""

from typing import Any

from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext, NodeExecutionResult
from flowengine.nodes.base import BuiltinNode


class DirectReplyNode(BuiltinNode):
    name = "directReplyAgentflow"
    label = "Direct Reply"
    description = "Directly reply to the user with a message"
    input_params = [
        InputParam(name="directReplyMessage", label="Message", accept_variable=True),
    ]

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> NodeExecutionResult:
        message = node.inputs.get("directReplyMessage", "")
        if not isinstance(message, str):
            message = str(message)

        streamed = False
        if ctx.can_stream and message:
            await ctx.stream_token(message)
            streamed = True

        return NodeExecutionResult(
            node_id=node.id,
            name=self.name,
            output={"content": message},
            chat_history=[{"role": "assistant", "content": message}],
            streamed=streamed,
        )
