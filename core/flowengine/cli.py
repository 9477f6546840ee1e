"""
Command-line interface for flowengine.

Usage:
    flowengine run flows/support.json "How do I reset my password?"
    flowengine run flows/support.json "Hi" --stream --var TOPIC=billing
    flowengine run flows/support.json "Hi" --state '{"topic": "sales"}' --json
    flowengine inspect flows/support.json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _load_flow(path: str):
    from flowengine.graph.flow import FlowSpec

    flow_path = Path(path)
    with open(flow_path, encoding="utf-8-sig") as f:
        raw = json.load(f)
    return FlowSpec.from_dict(raw, flow_id=raw.get("id") or flow_path.stem)


def _parse_state(value: str | None) -> dict[str, Any]:
    """Inline JSON or the path of a JSON file."""
    if not value:
        return {}
    candidate = Path(value)
    text = candidate.read_text(encoding="utf-8") if candidate.is_file() else value
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("--state must be a JSON object")
    return data


def _parse_vars(pairs: list[str] | None) -> dict[str, str]:
    values = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"--var expects NAME=VALUE, got '{pair}'")
        values[name] = value
    return values


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Execute a flow")
    run_parser.add_argument("flow", help="Path to the flow JSON file")
    run_parser.add_argument("question", nargs="?", default="", help="User input")
    run_parser.add_argument("--stream", action="store_true", help="Stream output as it arrives")
    run_parser.add_argument(
        "--state", default=None, help="Initial runtime state (JSON object or file)"
    )
    run_parser.add_argument(
        "--var",
        action="append",
        metavar="NAME=VALUE",
        help="Override a global variable (repeatable)",
    )
    run_parser.add_argument("--chat-id", default=None, help="Conversation id")
    run_parser.add_argument("--session-id", default="", help="Session id")
    run_parser.add_argument("--parallel", action="store_true", help="Run tier nodes concurrently")
    run_parser.add_argument(
        "--mock", action="store_true", help="Use the mock LLM instead of a real provider"
    )
    run_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    run_parser.set_defaults(func=cmd_run)

    inspect_parser = subparsers.add_parser(
        "inspect", help="Show ending nodes, starting nodes and tiers of a flow"
    )
    inspect_parser.add_argument("flow", help="Path to the flow JSON file")
    inspect_parser.set_defaults(func=cmd_inspect)


def cmd_inspect(args: argparse.Namespace) -> int:
    from flowengine.errors import FlowEngineError
    from flowengine.graph.executor import compile_flow

    flow = _load_flow(args.flow)
    try:
        plan = compile_flow(flow)
    except FlowEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Flow: {flow.name or flow.id}")
    print(f"Ending nodes:   {', '.join(plan.ending_node_ids)}")
    print(f"Starting nodes: {', '.join(plan.starting_node_ids)}")
    for index, tier in enumerate(plan.tiers):
        labels = []
        for node_id in tier:
            node = flow.get_node(node_id)
            labels.append(f"{node_id} ({node.name})" if node else node_id)
        print(f"  Tier {index}: {', '.join(labels)}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    from flowengine.config import EngineConfig
    from flowengine.graph.executor import FlowExecutor
    from flowengine.llm.mock import MockLLMProvider
    from flowengine.runtime.event_bus import QueueStreamer
    from flowengine.runtime.usage import InMemoryUsageSink, UsageTracker

    try:
        flow = _load_flow(args.flow)
        state = _parse_state(args.state)
        variables = _parse_vars(args.var)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    config = EngineConfig()
    if args.parallel:
        config.parallel_tiers = True

    usage_sink = InMemoryUsageSink()
    tracker = UsageTracker(usage_sink)
    executor = FlowExecutor(
        config=config,
        llm=MockLLMProvider() if args.mock else None,
        usage_tracker=tracker,
    )
    override_config = {"vars": variables} if variables else None

    async def run():
        streamer = QueueStreamer() if args.stream else None
        task = asyncio.create_task(
            executor.execute(
                flow,
                args.question,
                chat_id=args.chat_id,
                session_id=args.session_id,
                streamer=streamer,
                state=state,
                override_config=override_config,
            )
        )
        if streamer is not None:
            async for chunk in streamer:
                stream = sys.stderr if chunk.is_error else sys.stdout
                print(chunk.text, end="", file=stream, flush=True)
            print()
        result = await task
        await tracker.drain()
        return result

    result = asyncio.run(run())

    if args.json:
        payload = {
            "success": result.success,
            "text": result.text,
            "executionId": result.execution_id,
            "state": result.state,
            "chatHistory": result.chat_history,
            "nodes": [r.to_dict() for r in result.executed],
            "error": result.error,
            "usage": [record.to_dict() for record in usage_sink.records],
        }
        print(json.dumps(payload, indent=2, default=str))
    elif not args.stream:
        if result.success:
            print(result.text)
        else:
            print(f"Error: {result.error}", file=sys.stderr)

    return 0 if result.success else 1


def main():
    from flowengine.observability import configure_logging

    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="flowengine - compile and run flows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
