"""Adjacency construction for flow graphs."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from flowengine.graph.flow import FlowEdge, FlowNode

logger = logging.getLogger(__name__)

# node id -> ids of neighbours (dependents, or predecessors when reversed)
Graph = dict[str, list[str]]


@dataclass
class ConstructedGraph:
    """Adjacency map plus per-node incoming edge counts."""

    graph: Graph = field(default_factory=dict)
    dependency_counts: dict[str, int] = field(default_factory=dict)


def construct_graphs(
    nodes: Iterable[FlowNode],
    edges: Iterable[FlowEdge],
    reversed: bool = False,
) -> ConstructedGraph:
    """
    Build the adjacency map of a flow in O(V+E).

    Forward: ``graph[source]`` lists the nodes that depend on ``source``.
    Reversed: ``graph[target]`` lists the nodes ``target`` depends on.
    ``dependency_counts[n]`` is the number of incoming edges of ``n`` in both
    modes. Cycles are not detected here.
    """
    constructed = ConstructedGraph()
    for node in nodes:
        constructed.graph[node.id] = []
        constructed.dependency_counts[node.id] = 0

    for edge in edges:
        source, target = edge.source, edge.target
        if source not in constructed.graph or target not in constructed.graph:
            logger.warning(f"Ignoring edge {source} -> {target}: unknown node")
            continue

        key, neighbour = (target, source) if reversed else (source, target)
        if neighbour not in constructed.graph[key]:
            constructed.graph[key].append(neighbour)
        constructed.dependency_counts[target] += 1

    return constructed
