"""
Error taxonomy for flow compilation and execution.

Every error raised by the engine is fatal to the current run; nothing here is
retried automatically. ``public_message`` is what callers may show to users,
``str(err)`` keeps the full internal detail for logs.
"""

from typing import Any


class FlowEngineError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        public_message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.public_message = public_message or message
        self.details = details or {}


class ConfigurationError(FlowEngineError):
    """A required selection or setting is missing (no flow selected, unknown node type...)."""


class ResolutionError(FlowEngineError):
    """A variable reference could not be resolved, or no ending node exists."""

    def __init__(self, message: str, *, reference: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reference = reference


class CycleError(FlowEngineError):
    """The flow graph is not acyclic."""

    def __init__(self, message: str, *, cycle: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.cycle = cycle or []


class FlowRecursionError(FlowEngineError):
    """A sub-flow node targets the flow that is currently executing."""


class ExecutionError(FlowEngineError):
    """Node logic raised."""


class ExecutionAborted(ExecutionError):
    """The abort signal was set while the run was in progress."""


class TransportError(FlowEngineError):
    """A sub-flow RPC call failed."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
