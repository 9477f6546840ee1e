"""
Node registry and runtime loader.

The registry maps a node's logical name (``llmAgentflow``) to a definition
holding either a factory or an import locator (``package.module:ClassName``).
The loader turns flow nodes into runtime handles, one per node per
execution, and exposes their optional capabilities.
"""

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowengine.errors import ConfigurationError
from flowengine.graph.flow import FlowNode, InputParam
from flowengine.graph.node import (
    ArgsTransformer,
    Initializable,
    NodeContext,
    NodeRuntime,
    OptionProvider,
)
from flowengine.runtime.cache import TTLCache, inputs_digest

logger = logging.getLogger(__name__)


@dataclass
class NodeDefinition:
    """Registry entry for one node type."""

    name: str
    locator: str = ""
    category: str = ""
    label: str = ""
    description: str = ""
    factory: Callable[[], Any] | None = None
    input_params: list[InputParam] = field(default_factory=list)

    def instantiate(self) -> Any:
        if self.factory is not None:
            return self.factory()
        if not self.locator:
            raise ConfigurationError(f"Node '{self.name}' has neither a factory nor a locator")
        module_name, _, attr = self.locator.partition(":")
        if not attr:
            raise ConfigurationError(
                f"Invalid locator '{self.locator}' for node '{self.name}' (expected module:Class)"
            )
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import node module '{module_name}': {e}") from e
        node_class = getattr(module, attr, None)
        if node_class is None:
            raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'")
        return node_class()


class NodeRegistry:
    """Compile-time map of logical node names to definitions."""

    def __init__(self):
        self._definitions: dict[str, NodeDefinition] = {}

    def register(self, definition: NodeDefinition) -> None:
        if definition.name in self._definitions:
            logger.debug(f"Replacing node definition '{definition.name}'")
        self._definitions[definition.name] = definition

    def register_class(
        self,
        node_class: type,
        name: str | None = None,
        category: str = "",
        label: str = "",
    ) -> NodeDefinition:
        """Register a node class by its ``name`` attribute (or an explicit name)."""
        node_name = name or getattr(node_class, "name", None) or node_class.__name__
        definition = NodeDefinition(
            name=node_name,
            locator=f"{node_class.__module__}:{node_class.__qualname__}",
            category=category or getattr(node_class, "category", ""),
            label=label or getattr(node_class, "label", node_name),
            description=getattr(node_class, "description", "") or "",
            factory=node_class,
            input_params=list(getattr(node_class, "input_params", [])),
        )
        self.register(definition)
        return definition

    def get(self, name: str) -> NodeDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise ConfigurationError(f"Unknown node type '{name}'")
        return definition

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def list_definitions(self) -> list[NodeDefinition]:
        return [self._definitions[n] for n in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


@dataclass
class LoadedNode:
    """A flow node bound to its runtime handle."""

    node: FlowNode
    definition: NodeDefinition
    handle: Any
    instance: Any = None
    initialized: bool = False

    @property
    def can_init(self) -> bool:
        return isinstance(self.handle, Initializable)

    @property
    def can_load_options(self) -> bool:
        return isinstance(self.handle, OptionProvider)

    @property
    def can_transform_args(self) -> bool:
        return isinstance(self.handle, ArgsTransformer)

    def transform_inputs_to_args(self) -> dict[str, Any] | None:
        if not self.can_transform_args:
            return None
        return self.handle.transform_inputs_to_args(self.node)

    async def run(self, input: Any, ctx: NodeContext) -> Any:
        return await self.handle.run(self.node, input, ctx)


class NodeRuntimeLoader:
    """
    Resolves flow nodes to runtime handles for one execution.

    ``instance_cache`` is owned by the caller and may outlive the loader;
    init() handles are stored there keyed by locator and a digest of the
    node's resolved inputs.
    """

    def __init__(self, registry: NodeRegistry, instance_cache: TTLCache | None = None):
        self.registry = registry
        self.instance_cache = instance_cache
        self._handles: dict[str, Any] = {}

    def load(self, node: FlowNode) -> LoadedNode:
        """
        Bind a node to its handle, creating the handle on first use.

        Raises:
            ConfigurationError: unknown node type or a handle without run()
        """
        definition = self.registry.get(node.name)
        handle = self._handles.get(node.id)
        if handle is None:
            handle = definition.instantiate()
            if not isinstance(handle, NodeRuntime):
                raise ConfigurationError(
                    f"Node type '{node.name}' does not implement run()", node_id=node.id
                )
            self._handles[node.id] = handle
            logger.debug(f"Instantiated {definition.locator or node.name} for {node.id}")
        return LoadedNode(node=node, definition=definition, handle=handle)

    async def initialize(self, loaded: LoadedNode, ctx: NodeContext) -> Any:
        """Run init() once, caching the handle on the node and in the instance cache."""
        if not loaded.can_init:
            return None
        if loaded.initialized:
            return loaded.instance

        cache_key = None
        if self.instance_cache is not None:
            locator = loaded.definition.locator or loaded.definition.name
            cache_key = f"{locator}:{inputs_digest(loaded.node.inputs)}"
            cached = self.instance_cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Reusing cached instance for {loaded.node.id}")
                return self._bind(loaded, cached)

        instance = await loaded.handle.init(loaded.node, ctx)
        if cache_key is not None and instance is not None:
            self.instance_cache.set(cache_key, instance)
        return self._bind(loaded, instance)

    @staticmethod
    def _bind(loaded: LoadedNode, instance: Any) -> Any:
        loaded.instance = instance
        loaded.initialized = True
        loaded.node.instance = instance
        return instance

    async def load_options(
        self,
        name: str,
        method: str,
        node: FlowNode | None = None,
        ctx: NodeContext | None = None,
    ) -> list[dict[str, Any]]:
        """Serve an option list for an editor dropdown; [] when unsupported."""
        definition = self.registry.get(name)
        handle = definition.instantiate()
        if not isinstance(handle, OptionProvider):
            logger.debug(f"Node type '{name}' provides no options")
            return []
        target = node or FlowNode(id=f"{name}_options", name=name)
        return await handle.load_options(method, target, ctx)
