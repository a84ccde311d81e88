# api/storage.py

import os
from typing import Any, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Connection, Engine

from skill_system.models import SkillGraph, generate_id
from skill_system.rows import map_edge_row, map_node_row
from skill_system.session import TreeSession

from . import crud
from .database import get_engine
from .realtime import HubBroadcast, RealtimeHub, get_hub


class TreeStore:
    """
    Row storage for one connection. Every write is followed by change
    messages on the realtime hub, the way a database change feed would
    report it.
    """

    def __init__(self, conn: Connection, hub: Optional[RealtimeHub] = None):
        self.conn = conn
        self.hub = hub

    def _publish(self, tree_id: str, entity_type: str, event_type: str, rows: List[Dict[str, Any]]):
        if self.hub is not None and rows:
            self.hub.publish_changes(tree_id, entity_type, event_type, rows)

    # --- Reads ---

    def select_nodes(self, tree_id: str) -> List[Dict[str, Any]]:
        return crud.select_nodes(self.conn, tree_id)

    def select_edges(self, tree_id: str) -> List[Dict[str, Any]]:
        return crud.select_edges(self.conn, tree_id)

    def load_graph(self, tree_id: str) -> SkillGraph:
        """Builds a SkillGraph from everything stored for the tree."""
        return SkillGraph.from_rows(
            [map_node_row(row) for row in self.select_nodes(tree_id)],
            [map_edge_row(row) for row in self.select_edges(tree_id)],
        )

    # --- Writes ---

    def insert_nodes(self, tree_id: str, rows: List[Dict[str, Any]]):
        stored = crud.insert_nodes(self.conn, tree_id, rows)
        self._publish(tree_id, "node", "insert", stored)
        return stored

    def insert_edges(self, tree_id: str, rows: List[Dict[str, Any]]):
        stored = crud.insert_edges(self.conn, tree_id, rows)
        self._publish(tree_id, "edge", "insert", stored)
        return stored

    def update_node(self, node_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        old, new = crud.update_node(self.conn, node_id, changes)
        if new is not None and self.hub is not None:
            self.hub.publish_change(new["tree_id"], "node", "update", new, old)
        return new

    def update_edge(self, edge_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        old, new = crud.update_edge(self.conn, edge_id, changes)
        if new is not None and self.hub is not None:
            self.hub.publish_change(new["tree_id"], "edge", "update", new, old)
        return new

    def _publish_deleted(self, entity_type: str, rows: List[Dict[str, Any]]):
        for row in rows:
            self._publish(row["tree_id"], entity_type, "delete", [row])

    def delete_nodes(self, node_ids: List[str]) -> List[Dict[str, Any]]:
        rows = crud.delete_nodes(self.conn, node_ids)
        self._publish_deleted("node", rows)
        return rows

    def delete_edges(self, edge_ids: List[str]) -> List[Dict[str, Any]]:
        rows = crud.delete_edges(self.conn, edge_ids)
        self._publish_deleted("edge", rows)
        return rows

    def delete_edges_touching(self, node_ids: List[str]) -> List[Dict[str, Any]]:
        rows = crud.delete_edges_touching(self.conn, node_ids)
        self._publish_deleted("edge", rows)
        return rows

    def delete_tree_contents(self, tree_id: str):
        nodes, edges = crud.delete_tree_contents(self.conn, tree_id)
        self._publish(tree_id, "edge", "delete", edges)
        self._publish(tree_id, "node", "delete", nodes)
        return nodes, edges


class SqlTreeStorage:
    """
    Async storage for a TreeSession running in the service process.
    Each call opens its own connection and runs in the threadpool.
    """

    def __init__(self, engine: Engine, hub: Optional[RealtimeHub] = None):
        self.engine = engine
        self.hub = hub

    async def _call(self, method: str, *args):
        def work():
            with self.engine.connect() as conn:
                return getattr(TreeStore(conn, self.hub), method)(*args)

        return await run_in_threadpool(work)

    async def select_nodes(self, tree_id: str):
        return await self._call("select_nodes", tree_id)

    async def select_edges(self, tree_id: str):
        return await self._call("select_edges", tree_id)

    async def insert_nodes(self, tree_id: str, rows):
        await self._call("insert_nodes", tree_id, rows)

    async def insert_edges(self, tree_id: str, rows):
        await self._call("insert_edges", tree_id, rows)

    async def update_node(self, node_id: str, changes):
        await self._call("update_node", node_id, changes)

    async def update_edge(self, edge_id: str, changes):
        await self._call("update_edge", edge_id, changes)

    async def delete_nodes(self, node_ids):
        await self._call("delete_nodes", list(node_ids))

    async def delete_edges(self, edge_ids):
        await self._call("delete_edges", list(edge_ids))

    async def delete_edges_touching(self, node_ids):
        await self._call("delete_edges_touching", list(node_ids))

    async def delete_tree_contents(self, tree_id: str):
        await self._call("delete_tree_contents", tree_id)


def open_session(tree_id: str, engine: Optional[Engine] = None, hub: Optional[RealtimeHub] = None, **kwargs) -> TreeSession:
    """
    Builds a TreeSession wired to SQL storage and the realtime hub.
    Retry settings come from OUTBOX_MAX_ATTEMPTS / OUTBOX_RETRY_DELAY.
    """
    hub = hub or get_hub()
    client_id = kwargs.pop("client_id", None) or generate_id()
    kwargs.setdefault("max_attempts", int(os.getenv("OUTBOX_MAX_ATTEMPTS", 3)))
    kwargs.setdefault("retry_delay", float(os.getenv("OUTBOX_RETRY_DELAY", 0.5)))
    return TreeSession(
        tree_id,
        SqlTreeStorage(engine or get_engine(), hub),
        broadcast=HubBroadcast(hub, tree_id, client_id),
        client_id=client_id,
        **kwargs,
    )
