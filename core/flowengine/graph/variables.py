"""
Variable resolution - substitutes ``{{ reference }}`` placeholders in node inputs.

Supported references:

    question                 the user's question
    chat_history             the conversation rendered as Human:/Assistant: lines
    file_attachment          text extracted from uploaded files
    current_date_time        ISO-8601 timestamp (UTC)
    runtime_messages_length  number of messages in the runtime chat history
    $flow.<path>             flow configuration, e.g. $flow.state.topic
    $vars.<name>             global variable
    <nodeId>                 output content of an executed node
    <nodeId>.output.<path>   a field of an executed node's output
    <nodeId>.data.instance   the handle an executed node built in init()

An explicit override keyed by the reference path wins over everything else.
Placeholders that match nothing are left in place, so resolving an already
resolved value changes nothing.
"""

import json
import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from flowengine.errors import ResolutionError
from flowengine.graph.flow import FlowNode
from flowengine.graph.node import NodeExecutionResult

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{([^{}]*)\}\}")
_OUTPUT_REF = re.compile(r"^(.+?)\.output\.(.+)$")
_INSTANCE_REF = re.compile(r"^(.+?)\.data\.instance(?:\.(.+))?$")

QUESTION_VAR = "question"
CHAT_HISTORY_VAR = "chat_history"
FILE_ATTACHMENT_VAR = "file_attachment"
CURRENT_DATE_TIME_VAR = "current_date_time"
RUNTIME_MESSAGES_LENGTH_VAR = "runtime_messages_length"
FLOW_PREFIX = "$flow."
VARS_PREFIX = "$vars."

_MISSING = object()


class VariableType(StrEnum):
    STATIC = "static"
    # Read from the process environment at resolution time
    RUNTIME = "runtime"


@dataclass
class Variable:
    """A global variable available to every flow."""

    name: str
    value: Any = ""
    type: VariableType = VariableType.STATIC


def get_global_variables(
    available_variables: Iterable[Variable] | None,
    override_vars: Mapping[str, Any] | None = None,
    overrides_enabled: bool = True,
) -> dict[str, Any]:
    """Map variable names to values, applying ``overrideConfig.vars`` when enabled."""
    values: dict[str, Any] = {}
    for var in available_variables or []:
        if var.type == VariableType.RUNTIME:
            values[var.name] = os.environ.get(var.name, "")
        else:
            values[var.name] = var.value

    if override_vars and overrides_enabled:
        for name, value in override_vars.items():
            values[name] = value
    return values


def lookup_path(data: Any, path: str) -> Any:
    """Dotted/indexed lookup (``a.b[0].c``). Returns the _MISSING sentinel on a miss."""
    current = data
    for part in re.split(r"\.|\[(\d+)\]", path):
        if part is None or part == "":
            continue
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            attr = getattr(current, part, _MISSING)
            if attr is _MISSING:
                return _MISSING
            current = attr
    return current


def convert_chat_history_to_text(chat_history: Iterable[Any] | None) -> str:
    """Render messages as ``Human: ...`` / ``Assistant: ...`` lines."""
    lines = []
    for message in chat_history or []:
        if isinstance(message, Mapping):
            role = str(message.get("role") or message.get("type") or "")
            content = message.get("content") or message.get("message") or ""
        else:
            role = str(getattr(message, "role", ""))
            content = getattr(message, "content", "")
        if role in ("user", "userMessage", "human"):
            lines.append(f"Human: {content}")
        elif role in ("assistant", "apiMessage", "ai"):
            lines.append(f"Assistant: {content}")
        elif role:
            lines.append(f"{role.capitalize()}: {content}")
    return "\n".join(lines)


def _format(value: Any) -> str:
    if isinstance(value, dict | list):
        return json.dumps(value)
    if value is None:
        return ""
    return str(value)


class VariableResolver:
    """
    Resolves the input placeholders of one node.

    ``flow_node_ids`` are the ids of every node in the flow; a bare
    ``{{ nodeId }}`` that names one of them but has no output yet is an
    error rather than literal text.
    """

    def __init__(self, flow_node_ids: Iterable[str] = ()):
        self.flow_node_ids = set(flow_node_ids)

    def resolve(
        self,
        node: FlowNode,
        executed: Mapping[str, NodeExecutionResult],
        question: str = "",
        chat_history: Sequence[Any] | None = None,
        flow_config: Mapping[str, Any] | None = None,
        session_id: str = "",
        available_variables: Iterable[Variable] | None = None,
        variable_overrides: Mapping[str, Any] | None = None,
        file_attachment: str = "",
        override_vars: Mapping[str, Any] | None = None,
        overrides_enabled: bool = True,
    ) -> FlowNode:
        """
        Return a copy of ``node`` with every input placeholder resolved.

        Raises:
            ResolutionError: a reference names an upstream node that has not
                produced output
        """
        flow_config = dict(flow_config or {})
        if session_id:
            flow_config.setdefault("sessionId", session_id)

        scope = _Scope(
            executed=executed,
            question=question,
            chat_history=list(chat_history or []),
            flow_config=flow_config,
            global_vars=get_global_variables(available_variables, override_vars, overrides_enabled),
            overrides=dict(variable_overrides or {}),
            file_attachment=file_attachment,
        )
        try:
            inputs = self._walk(node.inputs, scope)
        except ResolutionError as e:
            e.node_id = e.node_id or node.id
            raise
        return node.model_copy(update={"inputs": inputs})

    def resolve_value(
        self, value: Any, executed: Mapping[str, NodeExecutionResult], **kwargs: Any
    ) -> Any:
        """Resolve a standalone value with the same rules as node inputs."""
        probe = FlowNode(id="", name="", inputs={"value": value})
        return self.resolve(probe, executed, **kwargs).inputs["value"]

    def _walk(self, value: Any, scope: "_Scope") -> Any:
        if isinstance(value, dict):
            return {k: self._walk(v, scope) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, scope) for v in value]
        if isinstance(value, str):
            return self._resolve_string(value, scope)
        return value

    def _resolve_string(self, text: str, scope: "_Scope") -> Any:
        if "{{" not in text:
            return text

        # A value that is exactly one placeholder keeps the raw type
        sole = PLACEHOLDER.fullmatch(text.strip())
        if sole:
            reference = sole.group(1).strip()
            resolved = self._lookup(reference, scope)
            if resolved is _MISSING:
                return text
            if reference == QUESTION_VAR and scope.file_attachment:
                return f"{scope.file_attachment}\n\n{_format(resolved)}"
            return resolved

        used_question = False

        def substitute(match: re.Match) -> str:
            nonlocal used_question
            reference = match.group(1).strip()
            resolved = self._lookup(reference, scope)
            if resolved is _MISSING:
                return match.group(0)
            if reference == QUESTION_VAR:
                used_question = True
            return _format(resolved)

        result = PLACEHOLDER.sub(substitute, text)
        if used_question and scope.file_attachment:
            result = f"{scope.file_attachment}\n\n{result}"
        return result

    def _lookup(self, reference: str, scope: "_Scope") -> Any:
        if not reference:
            return _MISSING
        if reference in scope.overrides:
            return scope.overrides[reference]

        if reference == QUESTION_VAR:
            return scope.question
        if reference == CHAT_HISTORY_VAR:
            return convert_chat_history_to_text(scope.chat_history)
        if reference == FILE_ATTACHMENT_VAR:
            return scope.file_attachment
        if reference == CURRENT_DATE_TIME_VAR:
            return datetime.now(UTC).isoformat()
        if reference == RUNTIME_MESSAGES_LENGTH_VAR:
            return scope.flow_config.get("runtimeChatHistoryLength", len(scope.chat_history))
        if reference.startswith(VARS_PREFIX):
            return lookup_path(scope.global_vars, reference[len(VARS_PREFIX) :])
        if reference.startswith(FLOW_PREFIX):
            return lookup_path(scope.flow_config, reference[len(FLOW_PREFIX) :])

        # Editors sometimes escape underscores in ids (llmAgentflow\_1)
        reference = reference.replace("\\_", "_")

        output_match = _OUTPUT_REF.match(reference)
        if output_match:
            node_id, path = output_match.groups()
            result = self._executed(node_id, reference, scope)
            return lookup_path(result.output, path)

        instance_match = _INSTANCE_REF.match(reference)
        if instance_match:
            node_id, path = instance_match.groups()
            result = self._executed(node_id, reference, scope)
            if path:
                return lookup_path(result.instance, path)
            return result.instance

        if reference in scope.executed:
            output = scope.executed[reference].output
            if "content" in output:
                return output["content"]
            http = output.get("http")
            if isinstance(http, Mapping) and "data" in http:
                return http["data"]
            return output
        if reference in self.flow_node_ids:
            raise ResolutionError(
                f"Reference '{reference}' names node '{reference}' which has not produced output",
                reference=reference,
            )
        return _MISSING

    @staticmethod
    def _executed(node_id: str, reference: str, scope: "_Scope") -> NodeExecutionResult:
        result = scope.executed.get(node_id)
        if result is None:
            raise ResolutionError(
                f"Reference '{reference}' names node '{node_id}' which has not produced output",
                reference=reference,
            )
        return result


@dataclass
class _Scope:
    executed: Mapping[str, NodeExecutionResult]
    question: str
    chat_history: list[Any]
    flow_config: dict[str, Any]
    global_vars: dict[str, Any]
    overrides: dict[str, Any]
    file_attachment: str


def replace_inputs_with_config(
    node: FlowNode,
    override_config: Mapping[str, Any] | None,
    node_overrides: Mapping[str, Sequence[str]] | None = None,
    enabled: bool = True,
) -> FlowNode:
    """
    Apply API-supplied input overrides to a node.

    ``override_config`` maps input names to either a plain value (applied to
    every node that declares the input) or a ``{node_id: value}`` dict
    (applied only to the named node). When ``node_overrides`` is non-empty it
    acts as an allowlist ``{node label: [input names]}``.
    """
    if not enabled or not override_config:
        return node

    inputs = dict(node.inputs)
    changed = False
    for key, value in override_config.items():
        if key == "vars":
            continue
        if key not in inputs:
            continue
        if node_overrides:
            allowed = node_overrides.get(node.label) or node_overrides.get(node.name) or []
            if key not in allowed:
                logger.debug(f"Override of '{key}' on {node.id} not allowed")
                continue

        if isinstance(value, Mapping):
            if node.id in value:
                value = value[node.id]
            elif not isinstance(inputs[key], Mapping):
                # Keyed to other nodes
                continue

        inputs[key] = value
        changed = True

    return node.model_copy(update={"inputs": inputs}) if changed else node
