"""
Ending/starting node resolution and depth scheduling.

The executor runs a flow tier by tier. Tiers come from the depth queue: a
starting node (no predecessors) sits at depth 0 and every other node sits one
past the deepest of its predecessors, so a node's depth always exceeds the
depth of everything it depends on.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from flowengine.errors import CycleError, ResolutionError
from flowengine.graph.builder import Graph
from flowengine.graph.flow import FlowNode

logger = logging.getLogger(__name__)

DepthQueue = dict[str, int]


@dataclass
class StartingNodes:
    """Starting node ids and depth assignments reachable from one ending node."""

    starting_node_ids: list[str] = field(default_factory=list)
    depth_queue: DepthQueue = field(default_factory=dict)


def get_ending_nodes(
    dependency_counts: dict[str, int],
    graph: Graph,
    nodes: Sequence[FlowNode],
) -> list[FlowNode]:
    """
    Return the terminal nodes of a flow.

    A node is terminal when nothing depends on it (no outgoing edge) and it
    is connected (at least one incoming edge). A flow with a single real node
    has that node as its ending node. Decorative nodes never qualify.

    Raises:
        ResolutionError: no ending node exists
    """
    executable = [n for n in nodes if not n.is_decorative]

    if len(executable) == 1:
        return executable

    ending = [
        node
        for node in executable
        if not graph.get(node.id) and dependency_counts.get(node.id, 0) > 0
    ]
    if not ending:
        raise ResolutionError("Ending nodes not found")
    return ending


def get_starting_nodes(reversed_graph: Graph, ending_node_id: str) -> StartingNodes:
    """
    Walk the reversed graph back from an ending node.

    Visited nodes without predecessors are starting nodes (depth 0); every
    other visited node gets ``1 + max(depth of its predecessors)``.

    Raises:
        ResolutionError: the ending node is not part of the graph
        CycleError: the walk re-enters a node that is still being resolved
    """
    if ending_node_id not in reversed_graph:
        raise ResolutionError(
            f"Ending node '{ending_node_id}' not found in graph", reference=ending_node_id
        )

    depth_queue: DepthQueue = {}
    starting: list[str] = []
    on_stack: list[str] = []
    on_stack_set: set[str] = set()

    # Iterative post-order DFS so deep flows do not hit the interpreter's recursion limit
    stack: list[tuple[str, int]] = [(ending_node_id, 0)]
    while stack:
        node_id, child_index = stack.pop()
        predecessors = reversed_graph.get(node_id, [])

        if child_index == 0:
            if node_id in depth_queue:
                continue
            on_stack.append(node_id)
            on_stack_set.add(node_id)

        if child_index < len(predecessors):
            stack.append((node_id, child_index + 1))
            pred = predecessors[child_index]
            if pred in on_stack_set:
                cycle = on_stack[on_stack.index(pred) :] + [pred]
                raise CycleError(
                    f"Flow contains a cycle: {' -> '.join(reversed(cycle))}",
                    cycle=list(reversed(cycle)),
                )
            if pred not in depth_queue:
                stack.append((pred, 0))
            continue

        # All predecessors resolved
        on_stack.pop()
        on_stack_set.discard(node_id)
        if predecessors:
            depth_queue[node_id] = 1 + max(depth_queue[p] for p in predecessors)
        else:
            depth_queue[node_id] = 0
            starting.append(node_id)

    return StartingNodes(starting_node_ids=starting, depth_queue=depth_queue)


def build_depth_queue(
    reversed_graph: Graph,
    ending_node_ids: Iterable[str],
) -> StartingNodes:
    """
    Union the traversals of several ending nodes.

    Starting node ids are deduplicated in first-seen order; when two walks
    assign a depth to the same node the maximum wins.
    """
    merged = StartingNodes()
    seen: set[str] = set()
    for ending_node_id in ending_node_ids:
        result = get_starting_nodes(reversed_graph, ending_node_id)
        for node_id in result.starting_node_ids:
            if node_id not in seen:
                seen.add(node_id)
                merged.starting_node_ids.append(node_id)
        for node_id, depth in result.depth_queue.items():
            merged.depth_queue[node_id] = max(merged.depth_queue.get(node_id, depth), depth)
    return merged


def group_tiers(
    depth_queue: DepthQueue, node_order: Sequence[str] | None = None
) -> list[list[str]]:
    """
    Group node ids by depth, ascending.

    Within a tier nodes keep their position in ``node_order`` (the flow's
    node list) so sequential execution is deterministic.
    """
    position = {node_id: i for i, node_id in enumerate(node_order or [])}
    tiers: dict[int, list[str]] = {}
    for node_id, depth in depth_queue.items():
        tiers.setdefault(depth, []).append(node_id)
    return [
        sorted(tiers[depth], key=lambda n: (position.get(n, len(position)), n))
        for depth in sorted(tiers)
    ]
