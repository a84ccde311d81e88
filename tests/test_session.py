# tests/test_session.py

import asyncio

import pytest

from skill_system.errors import CYCLE_ERROR_MESSAGE
from skill_system.session import TreeSession, parse_number


class FakeStorage:
    """In-memory TreeStorage; `fail` makes every write raise."""

    def __init__(self, nodes=None, edges=None):
        self.nodes = {row["id"]: dict(row) for row in nodes or []}
        self.edges = {row["id"]: dict(row) for row in edges or []}
        self.fail = False
        self.calls = []

    def _write(self, name):
        self.calls.append(name)
        if self.fail:
            raise ConnectionError("storage offline")

    async def select_nodes(self, tree_id):
        return [dict(row) for row in self.nodes.values()]

    async def select_edges(self, tree_id):
        return [dict(row) for row in self.edges.values()]

    async def insert_nodes(self, tree_id, rows):
        self._write("insert_nodes")
        for row in rows:
            self.nodes[row["id"]] = dict(row)

    async def insert_edges(self, tree_id, rows):
        self._write("insert_edges")
        for row in rows:
            self.edges[row["id"]] = dict(row)

    async def update_node(self, node_id, changes):
        self._write("update_node")
        self.nodes[node_id].update(changes)

    async def update_edge(self, edge_id, changes):
        self._write("update_edge")
        self.edges[edge_id].update(changes)

    async def delete_nodes(self, node_ids):
        self._write("delete_nodes")
        for node_id in node_ids:
            self.nodes.pop(node_id, None)

    async def delete_edges(self, edge_ids):
        self._write("delete_edges")
        for edge_id in edge_ids:
            self.edges.pop(edge_id, None)

    async def delete_edges_touching(self, node_ids):
        self._write("delete_edges_touching")
        for edge_id, row in list(self.edges.items()):
            if row["source"] in node_ids or row["target"] in node_ids:
                del self.edges[edge_id]

    async def delete_tree_contents(self, tree_id):
        self._write("delete_tree_contents")
        self.nodes.clear()
        self.edges.clear()


class FakeBroadcast:
    def __init__(self):
        self.sent = []

    async def send(self, event, payload):
        self.sent.append((event, payload))

    def messages(self):
        return [payload.get("message") for event, payload in self.sent if event == "action"]


def node(node_id, unlocked=False):
    return {"id": node_id, "name": node_id.upper(), "unlocked": unlocked, "position": {"x": 0, "y": 0}}


def edge(source, target):
    return {"id": f"{source}-{target}", "source": source, "target": target, "animated": True}


@pytest.fixture
def storage():
    return FakeStorage(
        nodes=[node("html", True), node("css"), node("js")],
        edges=[edge("html", "css")],
    )


@pytest.fixture
async def session(storage):
    notes = []
    broadcast = FakeBroadcast()
    tree_session = TreeSession(
        "tree-1", storage, broadcast=broadcast, client_id="client-0001", notify=notes.append, retry_delay=0
    )
    tree_session.notes = notes
    tree_session.sent = broadcast
    await tree_session.load()
    yield tree_session
    await tree_session.close()


def test_parse_number():
    assert parse_number("  ") is None
    assert parse_number("2.5") == 2.5
    assert parse_number("abc", 7) == 7
    assert parse_number("nan", 1) == 1


async def test_load_replaces_graph(session):
    assert sorted(session.graph.nodes) == ["css", "html", "js"]
    assert session.graph.prerequisites("css") == ["html"]


async def test_add_node_persists_and_announces(session, storage):
    created = session.add_node("  Go  ", position=(5, 6), cost="3")
    await session.outbox.join()

    assert created.name == "Go"
    assert created.cost == 3.0
    assert storage.nodes[created.id]["unlocked"] is False
    assert session.sent.messages() == ['Added "Go"']


async def test_add_node_connected_from_existing(session, storage):
    created = session.add_node("Sass", connect_from="css")
    await session.outbox.join()

    assert f"ecss-{created.id}" in storage.edges
    assert "Created a connection" in session.sent.messages()


async def test_blank_name_gets_generated_label(session):
    created = session.add_node("   ")
    assert created.name == f"Skill {created.id}"


async def test_cycle_is_reported_and_nothing_is_written(session, storage):
    assert session.connect("css", "html") is None
    await session.outbox.join()

    assert session.notes == [CYCLE_ERROR_MESSAGE]
    assert "insert_edges" not in storage.calls
    assert "css-html" not in session.graph.edges


async def test_connect_relocks_target_and_persists_it(session, storage):
    session.activate("js")
    session.reset("html")
    await session.outbox.join()
    assert storage.nodes["js"]["unlocked"] is True

    session.connect("html", "js")
    await session.outbox.join()

    assert session.graph.nodes["js"].unlocked is False
    assert storage.nodes["js"]["unlocked"] is False


async def test_activate_respects_prerequisites(session, storage):
    session.reset("html")
    assert session.activate("css") is False
    session.activate("html")
    assert session.activate("css") is True
    await session.outbox.join()

    assert storage.nodes["css"]["unlocked"] is True
    assert 'Unlocked "CSS"' in session.sent.messages()


async def test_silent_reset_does_not_announce(session):
    session.reset("html", silent=True)
    await session.outbox.join()
    assert session.sent.messages() == []


async def test_edit_node_form_semantics(session, storage):
    session.graph.nodes["css"].cost = 4
    session.edit_node("css", name="  ", description="  ", cost="oops", level="2")
    await session.outbox.join()

    css = session.graph.nodes["css"]
    assert css.name == "CSS"
    assert css.description is None
    assert css.cost == 4
    assert css.level == 2.0
    assert storage.nodes["css"]["level"] == 2.0


async def test_move_node_while_dragging_only_broadcasts(session, storage):
    session.move_node("css", (10, 10), dragging=True)
    session.move_node("css", (11, 11), dragging=True)
    await session.outbox.join()

    positions = [payload for event, payload in session.sent.sent if event == "node-position"]
    assert len(positions) == 1
    assert "update_node" not in storage.calls

    session.move_node("css", (12, 12))
    await session.outbox.join()
    assert storage.nodes["css"]["position"] == {"x": 12.0, "y": 12.0}


async def test_delete_selection_cascades(session, storage):
    assert session.delete(node_ids=["html"]) is True
    await session.outbox.join()

    assert "html" not in storage.nodes
    assert storage.edges == {}
    assert session.sent.sent[-1][1]["refetch"] is True


async def test_delete_empty_selection_is_noop(session):
    assert session.delete(node_ids=["nope"]) is False


async def test_detach_keeps_nodes(session, storage):
    removed = session.detach(["css"])
    await session.outbox.join()
    assert removed == ["html-css"]
    assert "css" in storage.nodes
    assert storage.edges == {}


async def test_reset_tree_reseeds(session, storage):
    session.reset_tree()
    await session.outbox.join()

    names = sorted(row["name"] for row in storage.nodes.values())
    assert names == ["CSS", "HTML"]
    assert len(storage.edges) == 1
    assert sorted(n.name for n in session.graph.iter_nodes()) == ["CSS", "HTML"]


async def test_persistence_failure_notifies_and_keeps_local_state(session, storage):
    storage.fail = True
    created = session.add_node("Rust")
    await session.outbox.join()

    assert created.id in session.graph.nodes
    assert session.notes == ["Failed to save node"]
    assert storage.calls.count("insert_nodes") == 3


async def test_dispatch(session):
    form = session.dispatch("html", "edit")
    assert form == {"name": "HTML", "description": "", "cost": "", "level": ""}
    assert session.dispatch("html", "reset") is True
    with pytest.raises(ValueError):
        session.dispatch("html", "explode")


async def test_search_uses_current_graph(session):
    info = session.search("css")
    assert info.path_node_ids == {"css", "html"}


async def test_inbound_changes_and_broadcasts(session, storage):
    session.receive({"type": "change", "entity_type": "node", "event_type": "insert", "row": node("go")})
    session.receive({"type": "broadcast", "event": "cursor-move", "payload": {"id": "peer", "flow_x": 1, "flow_y": 2}})
    session.receive({"type": "broadcast", "event": "node-position", "payload": {"id": "peer", "node_id": "css", "position": {"x": 9, "y": 9}}})

    assert await session.process_pending() == 3
    assert "go" in session.graph.nodes
    assert "peer" in session.presence.cursors
    assert "css" in session.presence.live_positions

    # A stored update supersedes the live drag position
    session.receive({"type": "change", "entity_type": "node", "event_type": "update", "row": {"id": "css", "position": {"x": 1, "y": 1}}})
    await session.process_pending()
    assert "css" not in session.presence.live_positions

    session.receive({"type": "broadcast", "event": "leave", "payload": {"id": "peer"}})
    await session.process_pending()
    assert session.presence.cursors == {}


async def test_refetch_action_reloads_from_storage(session, storage):
    storage.nodes["extra"] = node("extra")
    await session.handle({"type": "broadcast", "event": "action", "payload": {"id": "peer", "message": "Deleted selection", "refetch": True}})
    assert "extra" in session.graph.nodes


async def test_cursor_send_is_throttled(session):
    assert session.send_cursor(1, 1) is True
    assert session.send_cursor(2, 2) is False
    session.hide_cursor()
    await session.outbox.join()
    cursor_events = [payload for event, payload in session.sent.sent if event == "cursor-move"]
    assert cursor_events[0]["name"] == "User 0001"
    assert cursor_events[-1] == {"id": "client-0001", "hidden": True}


async def test_failed_refetch_notifies_and_consumer_keeps_running(session, storage):
    async def offline(tree_id):
        raise ConnectionError("storage offline")

    storage.select_nodes = offline
    session.start()
    session.receive({"type": "broadcast", "event": "action", "payload": {"id": "peer", "message": "Deleted selection", "refetch": True}})
    session.receive({"type": "change", "entity_type": "node", "event_type": "insert", "row": node("late")})
    while not session.inbox.empty():
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)

    assert not session._consumer.done()
    assert "late" in session.graph.nodes
    assert session.notes == ["Failed to refresh tree"]


async def test_malformed_change_is_skipped(session):
    session.receive({"type": "change", "entity_type": "edge", "event_type": "insert", "row": {"id": "broken"}})
    session.receive({"type": "change", "entity_type": "node", "event_type": "insert", "row": node("next")})

    assert await session.process_pending() == 2
    assert "broken" not in session.graph.edges
    assert "next" in session.graph.nodes
