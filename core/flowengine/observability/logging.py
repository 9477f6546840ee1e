"""
Logging for flow executions with the trace context attached to every record.

``FlowExecutor.execute`` opens a trace scope holding flow_id, execution_id,
chat_id, session_id, org_id and user_id; each node adds its node_id. Any
``logger.info(...)`` issued while the scope is open, including from node
code and from tasks spawned inside it, is tagged with those fields by the
formatters below.

Two output modes:
    json   one JSON object per line (log shippers, production)
    human  colored level, short context prefix (terminals)
"""

import json
import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Attributes passed through ``extra=`` that are copied into JSON entries
_EXTRA_FIELDS = ("event", "latency_ms", "tokens_used", "node_id", "node_name", "model")

_THIRD_PARTY_LOGGERS = ("LiteLLM", "httpcore", "httpx", "openai")


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, trace fields, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[INFO    ] [flow:support | chat:4f2a9c1e | node:llm_0] message [event]``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _prefix(self, context: dict[str, Any]) -> str:
        parts = []
        if context.get("flow_id"):
            parts.append(f"flow:{str(context['flow_id'])[:12]}")
        if context.get("chat_id"):
            parts.append(f"chat:{str(context['chat_id'])[:8]}")
        if context.get("node_id"):
            parts.append(f"node:{context['node_id']}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:<8}]"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        message = f"{level} {self._prefix(trace_context.get() or {})}{record.getMessage()}"
        event = getattr(record, "event", None)
        if event is not None:
            message += f" [{event}]"
        latency_ms = getattr(record, "latency_ms", None)
        if latency_ms is not None:
            message += f" ({latency_ms}ms)"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def configure_logging(
    level: str | int = "INFO",
    format: str = "auto",
    stream: TextIO | None = None,
) -> logging.Handler:
    """
    Install a single root handler. Call once at startup (CLI, service bootstrap).

    Args:
        level: Root log level
        format: "json", "human", or "auto" (json when LOG_FORMAT=json or
            ENV=production, human otherwise)
        stream: Where records go; stderr by default so stdout stays free for
            flow output

    Returns:
        The installed handler
    """
    if format == "auto":
        wants_json = os.getenv("LOG_FORMAT", "").lower() == "json"
        format = "json" if wants_json or os.getenv("ENV", "").lower() == "production" else "human"

    handler = logging.StreamHandler(stream or sys.stderr)
    if format == "json":
        _disable_third_party_colors()
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(use_color=not os.getenv("NO_COLOR")))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)

    if format == "json":
        # Send third-party records through the JSON handler too
        for name in _THIRD_PARTY_LOGGERS:
            third_party = logging.getLogger(name)
            third_party.handlers.clear()
            third_party.propagate = True
    return handler


def _disable_third_party_colors() -> None:
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    import litellm

    litellm.suppress_debug_info = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the trace context of the current task."""
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)


@contextmanager
def trace_scope(**kwargs: Any) -> Iterator[dict[str, Any]]:
    """Merge fields into the trace context and restore the previous context on exit."""
    token = trace_context.set({**(trace_context.get() or {}), **kwargs})
    try:
        yield get_trace_context()
    finally:
        trace_context.reset(token)
