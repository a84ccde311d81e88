# tests/test_unlock.py

import pytest

from skill_system.models import SkillEdge


def test_root_node_can_be_activated(graph_factory):
    graph = graph_factory([("a", False)])
    assert graph.unlock_engine.activate("a") is True
    assert graph.nodes["a"].unlocked is True


def test_activation_blocked_by_locked_prerequisite(graph_factory):
    graph = graph_factory([("a", False), ("b", False)], [("a", "b")])
    assert graph.unlock_engine.activate("b") is False
    assert graph.nodes["b"].unlocked is False


def test_activation_needs_every_prerequisite(graph_factory):
    graph = graph_factory([("a", True), ("b", False), ("c", False)], [("a", "c"), ("b", "c")])
    assert graph.unlock_engine.activate("c") is False
    graph.unlock_engine.activate("b")
    assert graph.unlock_engine.activate("c") is True


def test_activation_with_missing_prerequisite_node(graph_factory):
    graph = graph_factory([("b", False)])
    graph.insert_edge(SkillEdge(id="ghost-b", source="ghost", target="b"))
    assert graph.unlock_engine.activate("b") is False


@pytest.mark.parametrize("node_id", ["a", "unknown"])
def test_activate_is_a_silent_noop(graph_factory, node_id):
    graph = graph_factory([("a", True)])
    events = []
    graph.add_listener(lambda event, nid: events.append(event))
    assert graph.unlock_engine.activate(node_id) is False
    assert events == []


def test_reset_always_allowed(graph_factory):
    graph = graph_factory([("a", True), ("b", True)], [("a", "b")])
    assert graph.unlock_engine.reset("a") is True
    assert graph.nodes["a"].unlocked is False
    # Resetting a prerequisite does not walk forward to dependents
    assert graph.nodes["b"].unlocked is True


def test_reset_locked_node_is_noop(graph_factory):
    graph = graph_factory([("a", False)])
    assert graph.unlock_engine.reset("a") is False


def test_relock_ignores_nodes_without_incoming_edges(graph_factory):
    graph = graph_factory([("a", True)])
    assert graph.unlock_engine.relock_if_prerequisites_missing("a") is False
    assert graph.nodes["a"].unlocked is True


def test_relock_against_supplied_edge_set(graph_factory):
    graph = graph_factory([("a", False), ("b", True)])
    incoming = [SkillEdge(id="x", source="a", target="b")]
    assert graph.unlock_engine.relock_if_prerequisites_missing("b", incoming) is True
    assert graph.nodes["b"].unlocked is False


def test_relock_emits_event(graph_factory):
    graph = graph_factory([("a", False), ("b", True)])
    events = []
    graph.add_listener(lambda event, nid: events.append((event, nid)))
    graph.add_edge("a", "b")
    assert events == [("relocked", "b")]
