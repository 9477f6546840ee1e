"""
flowengine - compiles visually composed flows into tiers and executes them.

    from flowengine import FlowExecutor, FlowSpec

    flow = FlowSpec.from_dict(stored_flow)
    result = await FlowExecutor().execute(flow, question="Hello")
"""

from flowengine.config import EngineConfig
from flowengine.errors import (
    ConfigurationError,
    CycleError,
    ExecutionAborted,
    ExecutionError,
    FlowEngineError,
    FlowRecursionError,
    ResolutionError,
    TransportError,
)
from flowengine.graph import ExecutionResult, FlowExecutor, FlowSpec, compile_flow

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "ExecutionResult",
    "FlowExecutor",
    "FlowSpec",
    "compile_flow",
    "FlowEngineError",
    "ConfigurationError",
    "ResolutionError",
    "CycleError",
    "FlowRecursionError",
    "ExecutionError",
    "ExecutionAborted",
    "TransportError",
]
