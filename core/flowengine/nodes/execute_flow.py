"""
Execute-flow node - delegates to another flow hosted behind the prediction API.

The call is a plain HTTP POST to ``{base}/api/v1/prediction/{flowId}``; the
child flow runs in its own execution. A flow may not call itself.
"""

import json
import logging
from typing import Any

import httpx

from flowengine.config import DEFAULT_SUBFLOW_TIMEOUT
from flowengine.errors import ConfigurationError, FlowRecursionError, TransportError
from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import NodeContext, NodeExecutionResult
from flowengine.graph.payload import split_result_payload
from flowengine.nodes.base import RETURN_AS_USER, BuiltinNode, history_delta, state_patch
from flowengine.observability import sanitize_log_context

logger = logging.getLogger(__name__)

PREDICTION_PATH = "/api/v1/prediction/{flow_id}"


def format_prediction_response(data: Any) -> str:
    """Normalize a prediction API response body to text."""
    if isinstance(data, dict):
        if data.get("text"):
            return str(data["text"])
        if data.get("json"):
            return "```json\n" + json.dumps(data["json"], indent=2) + "\n```"
    return json.dumps(data, indent=2)


def collect_parent_credentials(ctx: NodeContext) -> dict[str, str]:
    """Credential ids referenced by the calling flow's nodes, keyed by node id."""
    credentials: dict[str, str] = {}
    if ctx.execution.flow is None:
        return credentials
    for flow_node in ctx.execution.flow.nodes:
        credential = getattr(flow_node, "credential", None)
        if isinstance(credential, str) and credential:
            credentials[flow_node.id] = credential
    return credentials


class ExecuteFlowNode(BuiltinNode):
    name = "executeFlowAgentflow"
    label = "Execute Flow"
    description = "Execute another flow"
    input_params = [
        InputParam(name="executeFlowSelectedFlow", label="Select Flow", type="asyncOptions"),
        InputParam(name="executeFlowInput", label="Input", accept_variable=True),
        InputParam(
            name="executeFlowOverrideConfig", label="Override Config", type="json", optional=True
        ),
        InputParam(name="executeFlowBaseURL", label="Base URL", optional=True),
        InputParam(
            name="executeFlowReturnResponseAs",
            label="Return Response As",
            type="options",
            default=RETURN_AS_USER,
        ),
        InputParam(
            name="executeFlowUpdateState", label="Update Flow State", type="array", optional=True
        ),
    ]

    async def run(self, node: FlowNode, input: Any, ctx: NodeContext) -> NodeExecutionResult:
        """
        Call the selected flow and return its answer.

        Raises:
            FlowRecursionError: the selected flow is the one executing
            ConfigurationError: no flow selected or no base URL available
            TransportError: the HTTP call failed
        """
        flow_id = node.inputs.get("executeFlowSelectedFlow") or ""
        if not flow_id:
            raise ConfigurationError(
                "No flow selected. Please select a flow to execute.", node_id=node.id
            )
        if flow_id == ctx.execution.flow_id:
            raise FlowRecursionError(
                f"Flow {flow_id} cannot execute itself",
                node_id=node.id,
                public_message="Cannot call the same flow from within itself.",
            )

        base_url = (
            node.inputs.get("executeFlowBaseURL")
            or ctx.execution.base_url
            or (ctx.config.base_url if ctx.config else "")
        )
        if not base_url:
            raise ConfigurationError(
                "Base URL is required to execute a sub-flow.", node_id=node.id
            )

        question = node.inputs.get("executeFlowInput") or ctx.execution.question
        if not isinstance(question, str):
            question = json.dumps(question)

        override_config = node.inputs.get("executeFlowOverrideConfig") or {}
        if isinstance(override_config, str):
            try:
                override_config = json.loads(override_config)
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"Override config is not valid JSON: {e}", node_id=node.id
                ) from e
        parent_credentials = collect_parent_credentials(ctx)
        if parent_credentials:
            override_config = {**override_config, "_parentCredentials": parent_credentials}

        headers = {"Content-Type": "application/json"}
        api_key = node.inputs.get("executeFlowApiKey") or ctx.execution.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if ctx.execution.org_id:
            headers["x-org-id"] = str(ctx.execution.org_id)
        if ctx.execution.user_id:
            headers["x-user-id"] = str(ctx.execution.user_id)

        url = str(base_url).rstrip("/") + PREDICTION_PATH.format(flow_id=flow_id)
        body = {
            "question": question,
            "chatId": ctx.execution.chat_id,
            "overrideConfig": override_config,
        }
        logger.info(
            f"↪ Executing sub-flow {flow_id}",
            extra={"event": "subflow_call", "node_id": node.id},
        )
        logger.debug(f"Sub-flow request headers: {sanitize_log_context(headers)}")

        data = await ctx.run_abortable(self._post(ctx, url, headers, body, node.id))
        envelope = split_result_payload(format_prediction_response(data))
        content = envelope.content

        streamed = False
        if ctx.can_stream:
            await ctx.stream_token(content)
            streamed = True

        return NodeExecutionResult(
            node_id=node.id,
            name=self.name,
            input={"messages": [{"role": "user", "content": question}]},
            output={"content": content},
            artifacts=envelope.artifacts,
            tool_args=envelope.tool_args,
            source_documents=envelope.source_documents,
            state=state_patch(node, "executeFlowUpdateState", content),
            chat_history=history_delta(
                ctx.chat_history,
                question,
                content,
                node.inputs.get("executeFlowReturnResponseAs", RETURN_AS_USER),
            ),
            streamed=streamed,
        )

    async def _post(
        self,
        ctx: NodeContext,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        node_id: str,
    ) -> Any:
        timeout = ctx.config.subflow_timeout_seconds if ctx.config else DEFAULT_SUBFLOW_TIMEOUT
        try:
            if ctx.http_client is not None:
                response = await ctx.http_client.post(url, headers=headers, json=body)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, headers=headers, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransportError(
                f"Sub-flow call failed with status {status}: {e.response.text[:500]}",
                node_id=node_id,
                public_message=f"Sub-flow call failed with status {status}",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Sub-flow call failed: {e}", node_id=node_id) from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                "Sub-flow returned a non-JSON response",
                node_id=node_id,
                status_code=response.status_code,
            ) from e
