"""
Tests for the execute-flow node against a mocked prediction API.
"""

import json

import httpx
import pytest

from flowengine.config import EngineConfig
from flowengine.errors import ConfigurationError, FlowRecursionError, TransportError
from flowengine.graph.executor import FlowExecutor
from flowengine.graph.flow import FlowNode, FlowSpec
from flowengine.graph.node import ExecutionContext, NodeContext
from flowengine.nodes.execute_flow import ExecuteFlowNode, format_prediction_response
from flowengine.runtime.event_bus import QueueStreamer


class RecordingTransport:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


def make_context(node, client, flow_id="parent", flow=None, **execution):
    return NodeContext(
        execution=ExecutionContext(
            flow_id=flow_id,
            chat_id="chat-1",
            base_url="http://flows.test",
            question="parent question",
            flow=flow,
            **execution,
        ),
        node=node,
        config=EngineConfig(base_url="http://flows.test"),
        http_client=client,
    )


def subflow_node(**inputs):
    return FlowNode(
        id="executeFlow_0",
        name="executeFlowAgentflow",
        inputs={"executeFlowSelectedFlow": "child", **inputs},
    )


# ---- format_prediction_response ----


def test_text_response():
    assert format_prediction_response({"text": "hello", "json": {"a": 1}}) == "hello"


def test_json_response_is_fenced():
    assert format_prediction_response({"json": {"a": 1}}) == '```json\n{\n  "a": 1\n}\n```'


def test_other_response_is_serialized():
    assert format_prediction_response({"foo": "bar"}) == '{\n  "foo": "bar"\n}'
    assert format_prediction_response(["x"]) == '[\n  "x"\n]'


# ---- ExecuteFlowNode.run ----


@pytest.mark.asyncio
async def test_posts_question_headers_and_credentials():
    handler = RecordingTransport(httpx.Response(200, json={"text": "child answer"}))
    parent = FlowSpec(
        id="parent",
        nodes=[
            FlowNode(id="llm_0", name="llmAgentflow", credential="cred-123"),
            FlowNode(id="executeFlow_0", name="executeFlowAgentflow"),
        ],
    )
    node = subflow_node(
        executeFlowInput="child question",
        executeFlowOverrideConfig='{"sessionId": "s1"}',
        executeFlowReturnResponseAs="assistantMessage",
        executeFlowUpdateState=[{"key": "child", "value": "{{ output }}"}],
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ctx = make_context(
            node, client, flow=parent, api_key="secret-key", org_id="org-1", user_id="u-1"
        )
        result = await ExecuteFlowNode().run(node, None, ctx)

    assert len(handler.requests) == 1
    request = handler.requests[0]
    assert str(request.url) == "http://flows.test/api/v1/prediction/child"
    assert request.headers["Authorization"] == "Bearer secret-key"
    assert request.headers["x-org-id"] == "org-1"
    assert request.headers["x-user-id"] == "u-1"
    body = json.loads(request.content)
    assert body == {
        "question": "child question",
        "chatId": "chat-1",
        "overrideConfig": {"sessionId": "s1", "_parentCredentials": {"llm_0": "cred-123"}},
    }
    assert result.content == "child answer"
    assert result.state == {"child": "child answer"}
    assert result.chat_history == [
        {"role": "user", "content": "child question"},
        {"role": "assistant", "content": "child answer"},
    ]
    assert result.streamed is False


@pytest.mark.asyncio
async def test_self_reference_raises_before_any_request():
    handler = RecordingTransport(httpx.Response(200, json={"text": "never"}))
    node = subflow_node(executeFlowSelectedFlow="parent")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(FlowRecursionError) as exc_info:
            await ExecuteFlowNode().run(node, None, make_context(node, client))

    assert handler.requests == []
    assert exc_info.value.public_message == "Cannot call the same flow from within itself."


@pytest.mark.asyncio
async def test_missing_selection_raises():
    node = FlowNode(id="executeFlow_0", name="executeFlowAgentflow", inputs={})

    with pytest.raises(ConfigurationError, match="No flow selected"):
        await ExecuteFlowNode().run(node, None, make_context(node, None))


@pytest.mark.asyncio
async def test_http_error_becomes_transport_error():
    handler = RecordingTransport(httpx.Response(500, text="internal failure"))
    node = subflow_node()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError) as exc_info:
            await ExecuteFlowNode().run(node, None, make_context(node, client))

    assert exc_info.value.status_code == 500
    assert exc_info.value.node_id == "executeFlow_0"


@pytest.mark.asyncio
async def test_non_json_response_becomes_transport_error():
    handler = RecordingTransport(httpx.Response(200, text="<html>oops</html>"))
    node = subflow_node()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError, match="non-JSON"):
            await ExecuteFlowNode().run(node, None, make_context(node, client))


@pytest.mark.asyncio
async def test_subflow_inside_executor_streams_answer(engine_config):
    handler = RecordingTransport(httpx.Response(200, json={"json": {"score": 9}}))
    flow = FlowSpec(
        id="parent",
        nodes=[
            FlowNode(id="start_0", name="startAgentflow"),
            FlowNode(
                id="executeFlow_0",
                name="executeFlowAgentflow",
                inputs={
                    "executeFlowSelectedFlow": "child",
                    "executeFlowInput": "{{ question }}",
                },
            ),
        ],
        edges=[{"source": "start_0", "target": "executeFlow_0"}],
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        executor = FlowExecutor(config=engine_config, http_client=client)
        result = await executor.execute(flow, "rate this")

    assert result.success is True
    assert json.loads(handler.requests[0].content)["question"] == "rate this"
    assert result.text == '```json\n{\n  "score": 9\n}\n```'


@pytest.mark.asyncio
async def test_recursion_inside_executor_is_reported(engine_config):
    handler = RecordingTransport(httpx.Response(200, json={"text": "never"}))
    flow = FlowSpec(
        id="parent",
        nodes=[
            FlowNode(id="start_0", name="startAgentflow"),
            FlowNode(
                id="executeFlow_0",
                name="executeFlowAgentflow",
                inputs={"executeFlowSelectedFlow": "parent"},
            ),
        ],
        edges=[{"source": "start_0", "target": "executeFlow_0"}],
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        executor = FlowExecutor(config=engine_config, http_client=client)
        result = await executor.execute(flow, "loop")

    assert result.success is False
    assert result.error_type == "FlowRecursionError"
    assert result.error == "Cannot call the same flow from within itself."
    assert handler.requests == []


@pytest.mark.asyncio
async def test_subflow_sections_are_split_before_streaming_and_state():
    payload = 'child answer\n\n----ARTIFACTS----\n\n[{"type": "png", "data": "x.png"}]'
    handler = RecordingTransport(httpx.Response(200, json={"text": payload}))
    node = subflow_node(executeFlowUpdateState=[{"key": "answer", "value": "{{ output }}"}])
    streamer = QueueStreamer()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ctx = make_context(node, client, streamer=streamer)
        ctx.is_last_node = True
        result = await ExecuteFlowNode().run(node, None, ctx)
    await streamer.stream_end("chat-1")

    chunks = [chunk.text async for chunk in streamer]
    assert chunks == ["child answer"]
    assert result.content == "child answer"
    assert result.artifacts == [{"type": "png", "data": "x.png"}]
    assert result.state == {"answer": "child answer"}


@pytest.mark.asyncio
async def test_http_error_public_message_omits_response_body():
    handler = RecordingTransport(httpx.Response(502, text="stack trace from upstream"))
    node = subflow_node()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError) as exc_info:
            await ExecuteFlowNode().run(node, None, make_context(node, client))

    assert "stack trace" in str(exc_info.value)
    assert exc_info.value.public_message == "Sub-flow call failed with status 502"
