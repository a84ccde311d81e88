# tests/test_storage.py

import asyncio

import pytest

from api import crud
from api.database import init_db, make_engine
from api.realtime import RESYNC_MESSAGE, RealtimeHub, Subscriber
from api.storage import SqlTreeStorage, TreeStore, open_session
from skill_system.session import TreeSession


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    with engine.connect() as conn:
        crud.create_tree(conn, "t1", "Tree")
    return engine


def node_row(node_id, unlocked=False):
    return {"id": node_id, "name": node_id, "unlocked": unlocked, "position": {"x": 1, "y": 2}}


def test_crud_update_returns_old_and_new(engine):
    with engine.connect() as conn:
        crud.insert_nodes(conn, "t1", [node_row("a")])
        old, new = crud.update_node(conn, "a", {"unlocked": True, "tree_id": "other"})
        assert old["unlocked"] is False
        assert new["unlocked"] is True
        assert new["tree_id"] == "t1"
        assert crud.update_node(conn, "missing", {"name": "x"}) == (None, None)


def test_delete_edges_touching(engine):
    with engine.connect() as conn:
        crud.insert_edges(conn, "t1", [
            {"id": "ab", "source": "a", "target": "b", "animated": True},
            {"id": "bc", "source": "b", "target": "c", "animated": True},
            {"id": "cd", "source": "c", "target": "d", "animated": True},
        ])
        deleted = crud.delete_edges_touching(conn, ["b"])
        assert sorted(row["id"] for row in deleted) == ["ab", "bc"]
        assert [row["id"] for row in crud.select_edges(conn, "t1")] == ["cd"]


def test_tree_store_publishes_changes(engine, mocker):
    hub = mocker.Mock(spec=RealtimeHub)
    with engine.connect() as conn:
        store = TreeStore(conn, hub)
        store.insert_nodes("t1", [node_row("a")])
        store.update_node("a", {"name": "A2"})
        store.delete_nodes(["a"])

    hub.publish_changes.assert_any_call("t1", "node", "insert", mocker.ANY)
    hub.publish_change.assert_called_once()
    args = hub.publish_change.call_args.args
    assert args[:3] == ("t1", "node", "update")
    assert args[3]["name"] == "A2"
    assert args[4]["name"] == "a"
    hub.publish_changes.assert_any_call("t1", "node", "delete", [mocker.ANY])


def test_load_graph_maps_rows(engine):
    with engine.connect() as conn:
        store = TreeStore(conn)
        store.insert_nodes("t1", [node_row("a", True), node_row("b")])
        store.insert_edges("t1", [{"id": "ab", "source": "a", "target": "b", "animated": None}])
        graph = store.load_graph("t1")

    assert graph.nodes["a"].unlocked is True
    assert graph.nodes["b"].position.y == 2.0
    assert graph.edges["ab"].animated is True


async def test_session_over_sql_storage_reaches_hub_subscribers(engine, monkeypatch):
    monkeypatch.setenv("OUTBOX_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("OUTBOX_RETRY_DELAY", "0")
    hub = RealtimeHub()
    watcher = hub.subscribe("t1", "watcher")
    session = open_session("t1", engine=engine, hub=hub, client_id="writer")
    assert session.outbox.max_attempts == 5
    assert session.outbox.retry_delay == 0.0
    await session.load()

    created = session.add_node("Go")
    await session.outbox.join()

    messages = []
    while len(messages) < 2:
        messages.append(await asyncio.wait_for(watcher.queue.get(), timeout=2))
    kinds = {(m["type"], m.get("entity_type") or m.get("event")) for m in messages}
    assert kinds == {("change", "node"), ("broadcast", "action")}

    # A second client converges by applying the change feed
    reader = TreeSession("t1", SqlTreeStorage(engine, hub), client_id="reader")
    for message in messages:
        reader.receive(message)
    await reader.process_pending()
    assert created.id in reader.graph.nodes


async def test_lagging_subscriber_drops_presence_and_is_told_to_refetch():
    hub = RealtimeHub()
    subscriber = Subscriber("t1", "slow", max_pending=2)
    hub._subscribers["t1"].add(subscriber)

    hub.publish_change("t1", "node", "insert", {"id": "a"})
    hub.broadcast("t1", "cursor-move", {"id": "peer", "flow_x": 1, "flow_y": 1})
    hub.broadcast("t1", "cursor-move", {"id": "peer", "flow_x": 2, "flow_y": 2})
    await asyncio.sleep(0)
    assert subscriber.queue.qsize() == 2
    assert subscriber.stale is False

    hub.publish_change("t1", "node", "insert", {"id": "b"})
    await asyncio.sleep(0)
    assert subscriber.stale is True

    received = [await subscriber.get() for _ in range(3)]
    assert received[0]["row"] == {"id": "a"}
    assert received[1]["event"] == "cursor-move"
    assert received[2] == RESYNC_MESSAGE
    assert subscriber.stale is False
