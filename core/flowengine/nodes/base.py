"""Helpers shared by the built-in nodes."""

from typing import Any

from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.state import process_template_variables, update_flow_state

RETURN_AS_USER = "userMessage"
RETURN_AS_ASSISTANT = "assistantMessage"


class BuiltinNode:
    """Declarative metadata common to built-in node classes."""

    name: str = ""
    label: str = ""
    category: str = "Agent Flows"
    description: str = ""
    input_params: list[InputParam] = []


def state_patch(node: FlowNode, input_name: str, content: Any) -> dict[str, Any]:
    """Declared ``[{key, value}]`` updates with ``{{ output }}`` bound to ``content``."""
    updates = node.inputs.get(input_name)
    if not isinstance(updates, list) or not updates:
        return {}
    return process_template_variables(update_flow_state(updates), content)


def history_delta(
    ctx_history: list[dict[str, Any]],
    user_content: str,
    response: str,
    return_as: str | None,
) -> list[dict[str, Any]]:
    """
    Messages a node appends to the runtime chat history.

    The user turn is recorded only by the first node to speak; the response
    role follows the node's "return response as" setting.
    """
    messages = []
    if not ctx_history and user_content:
        messages.append({"role": "user", "content": user_content})
    role = "assistant" if return_as == RETURN_AS_ASSISTANT else "user"
    messages.append({"role": role, "content": response})
    return messages
