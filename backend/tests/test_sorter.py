"""Tests for deterministic topological ordering."""

import pytest

from core.exceptions import GraphInvalidError
from workflow.models import Edge, Node
from workflow.sorter import topological_sort


def _nodes(*ids):
    return [Node(id=i, type="run_code") for i in ids]


def _edges(*pairs):
    return [Edge(source=s, target=t) for s, t in pairs]


def _ids(nodes):
    return [n.id for n in nodes]


@pytest.mark.unit
class TestTopologicalSort:
    def test_chain(self):
        order = topological_sort(_nodes("C", "B", "A"), _edges(("A", "B"), ("B", "C")))
        assert _ids(order) == ["A", "B", "C"]

    def test_no_edges_keeps_submitted_order(self):
        order = topological_sort(_nodes("x", "a", "m"), [])
        assert _ids(order) == ["x", "a", "m"]

    def test_ties_broken_by_submitted_order(self):
        # B and C both depend only on A
        nodes = _nodes("A", "C", "B", "D")
        edges = _edges(("A", "B"), ("A", "C"), ("B", "D"), ("C", "D"))
        assert _ids(topological_sort(nodes, edges)) == ["A", "C", "B", "D"]

    def test_independent_root_before_dependent(self):
        nodes = _nodes("late", "root", "child")
        edges = _edges(("root", "child"))
        assert _ids(topological_sort(nodes, edges)) == ["late", "root", "child"]

    def test_every_node_appears_once(self):
        nodes = _nodes("a", "b", "c", "d", "e")
        edges = _edges(("a", "c"), ("b", "c"), ("c", "d"))
        order = _ids(topological_sort(nodes, edges))
        assert sorted(order) == ["a", "b", "c", "d", "e"]
        assert len(order) == len(set(order))

    def test_edges_respected(self):
        nodes = _nodes("e", "d", "c", "b", "a")
        edges = _edges(("a", "b"), ("b", "d"), ("c", "d"), ("d", "e"))
        order = _ids(topological_sort(nodes, edges))
        for edge in edges:
            assert order.index(edge.source) < order.index(edge.target)

    def test_deterministic(self):
        nodes = _nodes("n1", "n2", "n3", "n4")
        edges = _edges(("n3", "n1"), ("n4", "n2"))
        first = _ids(topological_sort(nodes, edges))
        for _ in range(5):
            assert _ids(topological_sort(nodes, edges)) == first

    def test_parallel_edges_allowed(self):
        order = topological_sort(_nodes("A", "B"), _edges(("A", "B"), ("A", "B")))
        assert _ids(order) == ["A", "B"]

    def test_empty_graph(self):
        assert topological_sort([], []) == []


@pytest.mark.unit
class TestTopologicalSortErrors:
    def test_cycle(self):
        with pytest.raises(GraphInvalidError) as exc:
            topological_sort(_nodes("A", "B", "C"), _edges(("A", "B"), ("B", "C"), ("C", "A")))
        assert exc.value.code == "CYCLE_DETECTED"
        assert "A" in exc.value.message

    def test_self_loop(self):
        with pytest.raises(GraphInvalidError) as exc:
            topological_sort(_nodes("A"), _edges(("A", "A")))
        assert exc.value.code == "CYCLE_DETECTED"

    def test_dangling_edge(self):
        with pytest.raises(GraphInvalidError) as exc:
            topological_sort(_nodes("A"), _edges(("A", "ghost")))
        assert exc.value.code == "DANGLING_EDGE"
        assert "ghost" in exc.value.message

    def test_duplicate_node_id(self):
        with pytest.raises(GraphInvalidError) as exc:
            topological_sort(_nodes("A", "A"), [])
        assert exc.value.code == "DUPLICATE_NODE_ID"
        assert exc.value.message == 'Duplicate node ID detected: "A"'

    def test_errors_are_not_retryable(self):
        with pytest.raises(GraphInvalidError) as exc:
            topological_sort(_nodes("A", "A"), [])
        assert exc.value.retryable is False
