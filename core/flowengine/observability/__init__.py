"""
Trace correlation and structured logging for flow executions, plus the
sanitizers applied to user-facing errors and logged request metadata.
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_scope,
)
from flowengine.observability.sanitize import (
    get_error_message,
    sanitize_error_message,
    sanitize_log_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "trace_scope",
    "get_error_message",
    "sanitize_error_message",
    "sanitize_log_context",
]
