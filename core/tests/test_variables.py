"""
Tests for placeholder resolution in node inputs.
"""

import pytest

from flowengine.errors import ResolutionError
from flowengine.graph.flow import FlowNode
from flowengine.graph.node import NodeExecutionResult
from flowengine.graph.variables import (
    Variable,
    VariableResolver,
    VariableType,
    convert_chat_history_to_text,
    get_global_variables,
    replace_inputs_with_config,
)


def executed(**outputs):
    return {
        node_id: NodeExecutionResult(node_id=node_id, output=output)
        for node_id, output in outputs.items()
    }


@pytest.fixture
def resolver():
    return VariableResolver(["start", "llm_1", "tool_1", "later"])


def test_question_and_node_output(resolver):
    node = FlowNode(
        id="reply",
        name="directReplyAgentflow",
        inputs={"directReplyMessage": "You asked {{ question }}; the model said {{ llm_1 }}"},
    )

    resolved = resolver.resolve(
        node, executed(llm_1={"content": "Paris"}), question="capital of France?"
    )

    assert resolved.inputs["directReplyMessage"] == (
        "You asked capital of France?; the model said Paris"
    )
    # Resolution returns a copy
    assert node.inputs["directReplyMessage"].startswith("You asked {{")


def test_sole_placeholder_keeps_raw_type(resolver):
    outputs = executed(tool_1={"content": "ok", "items": [1, 2, 3]})

    value = resolver.resolve_value("{{ tool_1.output.items }}", outputs)

    assert value == [1, 2, 3]


def test_embedded_structured_value_is_json(resolver):
    outputs = executed(tool_1={"content": "ok", "meta": {"a": 1}})

    value = resolver.resolve_value("meta={{ tool_1.output.meta }}", outputs)

    assert value == 'meta={"a": 1}'


def test_nested_output_path_with_index(resolver):
    outputs = executed(tool_1={"rows": [{"name": "x"}, {"name": "y"}]})

    assert resolver.resolve_value("{{tool_1.output.rows[1].name}}", outputs) == "y"


def test_reference_to_node_without_output_raises(resolver):
    node = FlowNode(id="reply", name="directReplyAgentflow", inputs={"msg": "{{ later }}"})

    with pytest.raises(ResolutionError) as exc_info:
        resolver.resolve(node, {})

    assert exc_info.value.reference == "later"
    assert exc_info.value.node_id == "reply"


def test_output_reference_to_unexecuted_node_raises(resolver):
    with pytest.raises(ResolutionError):
        resolver.resolve_value("{{ llm_1.output.content }}", {})


def test_unknown_placeholder_is_left_in_place(resolver):
    assert resolver.resolve_value("Hello {{ nobody }}", {}) == "Hello {{ nobody }}"


def test_resolution_is_idempotent(resolver):
    outputs = executed(llm_1={"content": "Paris"})
    kwargs = {"question": "q", "flow_config": {"state": {"topic": "geo"}}}

    text = "{{ llm_1 }} {{ $flow.state.topic }} {{ other }}"

    once = resolver.resolve_value(text, outputs, **kwargs)
    twice = resolver.resolve_value(once, outputs, **kwargs)

    assert once == "Paris geo {{ other }}"
    assert twice == once


def test_override_wins_over_everything(resolver):
    outputs = executed(llm_1={"content": "Paris"})

    value = resolver.resolve_value(
        "{{ llm_1 }} / {{ question }}",
        outputs,
        question="original",
        variable_overrides={"llm_1": "Lyon", "question": "overridden"},
    )

    assert value == "Lyon / overridden"


def test_flow_config_state_reference(resolver):
    value = resolver.resolve_value(
        "{{ $flow.state.count }}", {}, flow_config={"state": {"count": 3}}
    )

    assert value == 3


def test_session_id_exposed_through_flow_config(resolver):
    assert resolver.resolve_value("{{ $flow.sessionId }}", {}, session_id="s-1") == "s-1"


def test_global_variables_static_and_runtime(resolver, monkeypatch):
    monkeypatch.setenv("REGION", "eu-west-1")
    variables = [
        Variable(name="company", value="Acme"),
        Variable(name="REGION", type=VariableType.RUNTIME),
    ]

    value = resolver.resolve_value(
        "{{ $vars.company }} in {{ $vars.REGION }}", {}, available_variables=variables
    )

    assert value == "Acme in eu-west-1"


def test_override_config_vars_replace_globals():
    variables = [Variable(name="tone", value="formal")]

    assert get_global_variables(variables, {"tone": "casual"}) == {"tone": "casual"}
    assert get_global_variables(variables, {"tone": "casual"}, overrides_enabled=False) == {
        "tone": "formal"
    }


def test_chat_history_rendered_as_text(resolver):
    history = [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
    ]

    value = resolver.resolve_value("{{ chat_history }}", {}, chat_history=history)

    assert value == "Human: Hi\nAssistant: Hello!"
    assert resolver.resolve_value("{{ runtime_messages_length }}", {}, chat_history=history) == 2


def test_convert_chat_history_accepts_stored_message_types():
    history = [
        {"type": "userMessage", "message": "ping"},
        {"type": "apiMessage", "message": "pong"},
    ]

    assert convert_chat_history_to_text(history) == "Human: ping\nAssistant: pong"


def test_file_attachment_prepended_to_question(resolver):
    value = resolver.resolve_value(
        "Summarize: {{ question }}", {}, question="this file", file_attachment="FILE TEXT"
    )

    assert value == "FILE TEXT\n\nSummarize: this file"


def test_escaped_underscore_in_node_reference(resolver):
    outputs = executed(llm_1={"content": "Paris"})

    assert resolver.resolve_value("{{ llm\\_1 }}", outputs) == "Paris"


def test_instance_reference(resolver):
    result = NodeExecutionResult(node_id="llm_1", output={"content": "x"})
    result.instance = {"model": "gpt"}

    assert resolver.resolve_value("{{ llm_1.data.instance }}", {"llm_1": result}) == {
        "model": "gpt"
    }
    assert resolver.resolve_value("{{ llm_1.data.instance.model }}", {"llm_1": result}) == "gpt"


def test_nested_inputs_are_walked(resolver):
    node = FlowNode(
        id="llm_2",
        name="llmAgentflow",
        inputs={
            "llmMessages": [{"role": "system", "content": "Topic: {{ $flow.state.topic }}"}],
            "llmTemperature": 0.2,
        },
    )

    resolved = resolver.resolve(node, {}, flow_config={"state": {"topic": "billing"}})

    assert resolved.inputs["llmMessages"][0]["content"] == "Topic: billing"
    assert resolved.inputs["llmTemperature"] == 0.2


# ---- replace_inputs_with_config ----


def test_override_config_replaces_declared_inputs():
    node = FlowNode(id="llm_1", name="llmAgentflow", label="LLM", inputs={"llmTemperature": 0.7})

    updated = replace_inputs_with_config(
        node, {"llmTemperature": 0.1, "unknownInput": 5, "vars": {"a": 1}}
    )

    assert updated.inputs == {"llmTemperature": 0.1}


def test_override_config_keyed_by_node_id():
    a = FlowNode(id="llm_1", name="llmAgentflow", inputs={"llmModel": "m1"})
    b = FlowNode(id="llm_2", name="llmAgentflow", inputs={"llmModel": "m2"})
    overrides = {"llmModel": {"llm_2": "openai/gpt-4o"}}

    assert replace_inputs_with_config(a, overrides).inputs["llmModel"] == "m1"
    assert replace_inputs_with_config(b, overrides).inputs["llmModel"] == "openai/gpt-4o"


def test_override_config_respects_allowlist_and_switch():
    node = FlowNode(
        id="llm_1", name="llmAgentflow", label="LLM", inputs={"llmModel": "m1", "llmMaxTokens": 10}
    )
    overrides = {"llmModel": "m2", "llmMaxTokens": 99}

    updated = replace_inputs_with_config(node, overrides, node_overrides={"LLM": ["llmModel"]})
    disabled = replace_inputs_with_config(node, overrides, enabled=False)

    assert updated.inputs == {"llmModel": "m2", "llmMaxTokens": 10}
    assert disabled is node
