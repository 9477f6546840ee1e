"""Tool registration for the tool node."""

import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowengine.errors import ConfigurationError

logger = logging.getLogger(__name__)

_JSON_TYPES = {int: "integer", float: "number", bool: "boolean", dict: "object", list: "array"}


@dataclass
class Tool:
    """A callable tool a flow can invoke."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: Tool
    executor: Callable[..., Any]


class ToolRegistry:
    """
    Name -> tool lookup for ``toolAgentflow`` nodes.

    Tools are plain functions (sync or async). Registering a function derives
    a JSON-schema parameter block from its signature so option lists can show
    the expected arguments.
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, name: str, tool: Tool, executor: Callable[..., Any]) -> None:
        self._tools[name] = RegisteredTool(tool=tool, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register ``func`` under ``name`` (its __name__ by default).

        The description falls back to the docstring. Each parameter becomes a
        schema property typed from its annotation (string when unannotated or
        not a JSON scalar, list or dict); parameters without defaults are
        required.
        """
        tool_name = name or func.__name__
        properties: dict[str, dict[str, str]] = {}
        required: list[str] = []
        for param in inspect.signature(func).parameters.values():
            if param.name in ("self", "cls"):
                continue
            properties[param.name] = {"type": _JSON_TYPES.get(param.annotation, "string")}
            if param.default is inspect.Parameter.empty:
                required.append(param.name)

        tool = Tool(
            name=tool_name,
            description=description or inspect.getdoc(func) or f"Execute {tool_name}",
            parameters={"type": "object", "properties": properties, "required": required},
        )
        self.register(tool_name, tool, func)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Register every public function of a Python file listed in its TOOLS.

        The module declares ``TOOLS = [func, ...]``. Returns the number of
        tools registered.
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("flow_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for func in getattr(module, "TOOLS", []):
            if callable(func):
                self.register_function(func)
                count += 1
        logger.info(f"Discovered {count} tools in {module_path.name}")
        return count

    def get(self, name: str) -> RegisteredTool:
        registered = self._tools.get(name)
        if registered is None:
            raise ConfigurationError(f"Tool '{name}' is not registered")
        return registered

    def get_tools(self) -> list[Tool]:
        return [registered.tool for registered in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Call a tool with keyword arguments, awaiting it when it is async."""
        result = self.get(name).executor(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result
