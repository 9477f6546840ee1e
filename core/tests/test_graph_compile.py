"""
Tests for graph construction, ending/starting node resolution and tiers.
"""

import pytest

from flowengine.errors import CycleError, ResolutionError
from flowengine.graph.builder import construct_graphs
from flowengine.graph.executor import compile_flow
from flowengine.graph.flow import FlowEdge, FlowNode, FlowSpec
from flowengine.graph.traversal import (
    build_depth_queue,
    get_ending_nodes,
    get_starting_nodes,
    group_tiers,
)


def make_nodes(*ids, name="echoNode"):
    return [FlowNode(id=node_id, name=name) for node_id in ids]


def make_edges(*pairs):
    return [FlowEdge(source=s, target=t) for s, t in pairs]


# ---- construct_graphs ----


def test_forward_graph_lists_dependents():
    nodes = make_nodes("A", "B", "C")
    edges = make_edges(("A", "B"), ("B", "C"))

    constructed = construct_graphs(nodes, edges)

    assert constructed.graph == {"A": ["B"], "B": ["C"], "C": []}
    assert constructed.dependency_counts == {"A": 0, "B": 1, "C": 1}


def test_reversed_graph_lists_predecessors():
    nodes = make_nodes("A", "B", "C")
    edges = make_edges(("A", "C"), ("B", "C"))

    constructed = construct_graphs(nodes, edges, reversed=True)

    assert constructed.graph == {"A": [], "B": [], "C": ["A", "B"]}
    assert constructed.dependency_counts["C"] == 2


def test_edges_to_unknown_nodes_are_ignored():
    nodes = make_nodes("A", "B")
    edges = make_edges(("A", "B"), ("A", "ghost"))

    constructed = construct_graphs(nodes, edges)

    assert constructed.graph == {"A": ["B"], "B": []}


def test_parallel_edges_do_not_duplicate_neighbours():
    nodes = make_nodes("A", "B")
    edges = make_edges(("A", "B"), ("A", "B"))

    constructed = construct_graphs(nodes, edges)

    assert constructed.graph["A"] == ["B"]
    assert constructed.dependency_counts["B"] == 2


# ---- ending nodes ----


def test_ending_node_of_chain():
    nodes = make_nodes("A", "B", "C")
    forward = construct_graphs(nodes, make_edges(("A", "B"), ("B", "C")))

    ending = get_ending_nodes(forward.dependency_counts, forward.graph, nodes)

    assert [n.id for n in ending] == ["C"]


def test_single_node_flow_is_its_own_ending_node():
    nodes = make_nodes("A")
    forward = construct_graphs(nodes, [])

    ending = get_ending_nodes(forward.dependency_counts, forward.graph, nodes)

    assert [n.id for n in ending] == ["A"]


def test_no_ending_node_raises():
    nodes = make_nodes("A", "B")
    forward = construct_graphs(nodes, [])

    with pytest.raises(ResolutionError, match="Ending nodes not found"):
        get_ending_nodes(forward.dependency_counts, forward.graph, nodes)


def test_decorative_nodes_never_end_a_flow():
    nodes = make_nodes("A", "B") + [FlowNode(id="note", name="stickyNoteAgentflow")]
    forward = construct_graphs(nodes, make_edges(("A", "B")))

    ending = get_ending_nodes(forward.dependency_counts, forward.graph, nodes)

    assert [n.id for n in ending] == ["B"]


# ---- starting nodes and depths ----


def test_chain_depths():
    nodes = make_nodes("A", "B", "C")
    reverse = construct_graphs(nodes, make_edges(("A", "B"), ("B", "C")), reversed=True)

    result = get_starting_nodes(reverse.graph, "C")

    assert result.starting_node_ids == ["A"]
    assert result.depth_queue == {"A": 0, "B": 1, "C": 2}


def test_diamond_depth_is_one_past_deepest_predecessor():
    # A -> B -> D, A -> C -> E -> D
    nodes = make_nodes("A", "B", "C", "D", "E")
    edges = make_edges(("A", "B"), ("A", "C"), ("C", "E"), ("B", "D"), ("E", "D"))
    reverse = construct_graphs(nodes, edges, reversed=True)

    result = get_starting_nodes(reverse.graph, "D")

    assert result.starting_node_ids == ["A"]
    assert result.depth_queue == {"A": 0, "B": 1, "C": 1, "E": 2, "D": 3}


def test_cycle_raises_cycle_error():
    nodes = make_nodes("A", "B", "C", "D")
    edges = make_edges(("A", "B"), ("B", "C"), ("C", "B"), ("C", "D"))
    reverse = construct_graphs(nodes, edges, reversed=True)

    with pytest.raises(CycleError) as exc_info:
        get_starting_nodes(reverse.graph, "D")

    assert set(exc_info.value.cycle) == {"B", "C"}
    assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]


def test_unknown_ending_node_raises():
    with pytest.raises(ResolutionError):
        get_starting_nodes({"A": []}, "missing")


def test_deep_chain_does_not_recurse():
    ids = [f"n{i}" for i in range(3000)]
    nodes = make_nodes(*ids)
    edges = make_edges(*zip(ids, ids[1:], strict=False))
    reverse = construct_graphs(nodes, edges, reversed=True)

    result = get_starting_nodes(reverse.graph, ids[-1])

    assert result.depth_queue[ids[-1]] == 2999


def test_multiple_ending_nodes_union_with_max_depth():
    # S -> A -> B (end), S -> B2 (end) where B2 also needs A
    nodes = make_nodes("S", "A", "B", "B2")
    edges = make_edges(("S", "A"), ("A", "B"), ("S", "B2"), ("A", "B2"))
    reverse = construct_graphs(nodes, edges, reversed=True)

    merged = build_depth_queue(reverse.graph, ["B", "B2"])

    assert merged.starting_node_ids == ["S"]
    assert merged.depth_queue == {"S": 0, "A": 1, "B": 2, "B2": 2}


def test_group_tiers_keeps_flow_order():
    tiers = group_tiers({"C": 1, "A": 0, "B": 1}, ["A", "C", "B"])

    assert tiers == [["A"], ["C", "B"]]


# ---- compile_flow ----


def test_compile_flow_skips_sticky_notes():
    flow = FlowSpec(
        id="f1",
        nodes=[
            FlowNode(id="start", name="startAgentflow"),
            FlowNode(id="reply", name="directReplyAgentflow"),
            FlowNode(id="note", name="stickyNoteAgentflow"),
        ],
        edges=make_edges(("start", "reply")),
    )

    plan = compile_flow(flow)

    assert plan.ending_node_ids == ["reply"]
    assert plan.starting_node_ids == ["start"]
    assert plan.tiers == [["start"], ["reply"]]
    assert "note" not in plan.node_ids


def test_compile_flow_from_react_flow_shape():
    flow = FlowSpec.from_dict(
        {
            "id": "f2",
            "flowData": (
                '{"nodes": ['
                '{"id": "startAgentflow_0", "data": {"name": "startAgentflow", "label": "Start"}},'
                '{"id": "llmAgentflow_0", "data": {"name": "llmAgentflow", "label": "LLM"}}'
                '], "edges": [{"source": "startAgentflow_0", "target": "llmAgentflow_0"}]}'
            ),
        }
    )

    plan = compile_flow(flow)

    assert flow.id == "f2"
    assert flow.get_node("llmAgentflow_0").label == "LLM"
    assert plan.tiers == [["startAgentflow_0"], ["llmAgentflow_0"]]
