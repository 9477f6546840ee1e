"""
Flow data model - nodes and edges as stored by the visual editor.

Flows arrive already deserialized from storage, usually in the React-Flow
shape where node settings live under ``data``:

    {
        "id": "llmAgentflow_0",
        "data": {
            "name": "llmAgentflow",
            "label": "LLM",
            "category": "Agent Flows",
            "inputs": {"llmUserMessage": "{{ question }}"},
            "inputParams": [{"name": "llmUserMessage", "acceptVariable": true}]
        }
    }

``FlowSpec.from_dict`` accepts that shape as well as the flat one.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Purely decorative node types; never executed and never an ending node
DECORATIVE_NODE_NAMES = frozenset({"stickyNote", "stickyNoteAgentflow"})


class InputParam(BaseModel):
    """Declared input field of a node."""

    name: str
    label: str = ""
    type: str = "string"
    optional: bool = False
    accept_variable: bool = Field(default=False, alias="acceptVariable")
    default: Any = None
    load_method: str | None = Field(default=None, alias="loadMethod")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class FlowNode(BaseModel):
    """
    A node of a flow.

    ``name`` is the logical node type used to look up the implementation in
    the node registry; ``id`` is unique within the flow.
    """

    id: str
    name: str = Field(description="Logical node type, e.g. 'llmAgentflow'")
    label: str = ""
    category: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    input_params: list[InputParam] = Field(default_factory=list, alias="inputParams")
    parent_node: str | None = Field(default=None, alias="parentNode")

    # Long-lived handle returned by the node's init(); per execution only
    instance: Any = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="allow", populate_by_name=True, arbitrary_types_allowed=True)

    @property
    def is_decorative(self) -> bool:
        return self.name in DECORATIVE_NODE_NAMES

    def get_input_param(self, name: str) -> InputParam | None:
        for param in self.input_params:
            if param.name == name:
                return param
        return None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FlowNode":
        """Build a node from either the flat or the React-Flow storage shape."""
        if not isinstance(raw, dict):
            raise TypeError(f"Flow node must be an object, got {type(raw).__name__}")
        data = raw.get("data")
        if isinstance(data, dict):
            merged = {**data}
            merged["id"] = raw.get("id") or data.get("id")
            if raw.get("parentNode") and not merged.get("parentNode"):
                merged["parentNode"] = raw["parentNode"]
            if not merged.get("name"):
                merged["name"] = raw.get("type", "")
            return cls.model_validate(merged)
        return cls.model_validate(raw)


class FlowEdge(BaseModel):
    """Connection (source, source anchor) -> (target, target anchor)."""

    source: str
    target: str
    source_handle: str = Field(default="", alias="sourceHandle")
    target_handle: str = Field(default="", alias="targetHandle")
    id: str = ""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class FlowSpec(BaseModel):
    """A complete flow: nodes plus edges."""

    id: str = ""
    name: str = ""
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def get_node(self, node_id: str) -> FlowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | str, flow_id: str = "", name: str = "") -> "FlowSpec":
        """
        Parse stored flow data.

        Accepts a dict with ``nodes``/``edges``, a dict wrapping them in a
        ``flowData`` JSON string, or the JSON string itself.
        """
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise TypeError("Flow data must be a JSON object")

        flow_data = raw.get("flowData")
        body = raw
        if isinstance(flow_data, str):
            body = json.loads(flow_data)
        elif isinstance(flow_data, dict):
            body = flow_data

        nodes = [FlowNode.from_dict(n) for n in body.get("nodes") or []]
        edges = [FlowEdge.model_validate(e) for e in body.get("edges") or []]
        return cls(
            id=flow_id or str(raw.get("id") or raw.get("guid") or ""),
            name=name or str(raw.get("name") or ""),
            nodes=nodes,
            edges=edges,
        )
