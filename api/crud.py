# api/crud.py

from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Connection

from . import database

# We use the SQLAlchemy table objects defined in database.py.
# Write operations commit their own transaction.


def _as_dict(row) -> Dict[str, Any]:
    return dict(row._mapping)


# --- Trees ---


def create_tree(conn: Connection, tree_id: str, title: str, password_hash: Optional[str] = None):
    """Creates a new tree row and returns it."""
    conn.execute(insert(database.trees).values(id=tree_id, title=title, password_hash=password_hash))
    conn.commit()
    return get_tree(conn, tree_id)


def get_tree(conn: Connection, tree_id: str):
    """Fetches a single tree by id."""
    query = select(database.trees).where(database.trees.c.id == tree_id)
    return conn.execute(query).first()


def update_tree(conn: Connection, tree_id: str, **values):
    """Updates title and/or password_hash of a tree."""
    stmt = update(database.trees).where(database.trees.c.id == tree_id).values(**values)
    conn.execute(stmt)
    conn.commit()
    return get_tree(conn, tree_id)


# --- Nodes ---


def select_nodes(conn: Connection, tree_id: str) -> List[Dict[str, Any]]:
    query = select(database.skill_nodes).where(database.skill_nodes.c.tree_id == tree_id)
    return [_as_dict(row) for row in conn.execute(query)]


def get_node(conn: Connection, node_id: str) -> Optional[Dict[str, Any]]:
    query = select(database.skill_nodes).where(database.skill_nodes.c.id == node_id)
    row = conn.execute(query).first()
    return _as_dict(row) if row else None


def insert_nodes(conn: Connection, tree_id: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Inserts node rows for a tree and returns them as stored."""
    values = [{**row, "tree_id": tree_id} for row in rows]
    if not values:
        return []
    conn.execute(insert(database.skill_nodes), values)
    conn.commit()
    return values


def update_node(conn: Connection, node_id: str, changes: Dict[str, Any]) -> Tuple[Optional[Dict], Optional[Dict]]:
    """
    Applies `changes` to one node.
    Returns (old row, new row); both None if the node does not exist.
    """
    old = get_node(conn, node_id)
    if old is None:
        return None, None
    changes = {key: value for key, value in changes.items() if key not in ("id", "tree_id")}
    if changes:
        stmt = update(database.skill_nodes).where(database.skill_nodes.c.id == node_id).values(**changes)
        conn.execute(stmt)
        conn.commit()
    return old, get_node(conn, node_id)


def delete_nodes(conn: Connection, node_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Deletes nodes by id and returns the deleted rows."""
    node_ids = list(node_ids)
    if not node_ids:
        return []
    query = select(database.skill_nodes).where(database.skill_nodes.c.id.in_(node_ids))
    doomed = [_as_dict(row) for row in conn.execute(query)]
    conn.execute(delete(database.skill_nodes).where(database.skill_nodes.c.id.in_(node_ids)))
    conn.commit()
    return doomed


# --- Edges ---


def select_edges(conn: Connection, tree_id: str) -> List[Dict[str, Any]]:
    query = select(database.skill_edges).where(database.skill_edges.c.tree_id == tree_id)
    return [_as_dict(row) for row in conn.execute(query)]


def get_edge(conn: Connection, edge_id: str) -> Optional[Dict[str, Any]]:
    query = select(database.skill_edges).where(database.skill_edges.c.id == edge_id)
    row = conn.execute(query).first()
    return _as_dict(row) if row else None


def insert_edges(conn: Connection, tree_id: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    values = [{**row, "tree_id": tree_id} for row in rows]
    if not values:
        return []
    conn.execute(insert(database.skill_edges), values)
    conn.commit()
    return values


def update_edge(conn: Connection, edge_id: str, changes: Dict[str, Any]) -> Tuple[Optional[Dict], Optional[Dict]]:
    old = get_edge(conn, edge_id)
    if old is None:
        return None, None
    changes = {key: value for key, value in changes.items() if key not in ("id", "tree_id")}
    if changes:
        stmt = update(database.skill_edges).where(database.skill_edges.c.id == edge_id).values(**changes)
        conn.execute(stmt)
        conn.commit()
    return old, get_edge(conn, edge_id)


def _delete_edges_where(conn: Connection, condition) -> List[Dict[str, Any]]:
    doomed = [_as_dict(row) for row in conn.execute(select(database.skill_edges).where(condition))]
    if doomed:
        conn.execute(delete(database.skill_edges).where(condition))
        conn.commit()
    return doomed


def delete_edges(conn: Connection, edge_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Deletes edges by id and returns the deleted rows."""
    edge_ids = list(edge_ids)
    if not edge_ids:
        return []
    return _delete_edges_where(conn, database.skill_edges.c.id.in_(edge_ids))


def delete_edges_touching(conn: Connection, node_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Deletes every edge whose source or target is one of `node_ids`."""
    node_ids = list(node_ids)
    if not node_ids:
        return []
    condition = or_(
        database.skill_edges.c.source.in_(node_ids),
        database.skill_edges.c.target.in_(node_ids),
    )
    return _delete_edges_where(conn, condition)


def delete_tree_contents(conn: Connection, tree_id: str) -> Tuple[List[Dict], List[Dict]]:
    """Deletes all edges, then all nodes, of a tree."""
    edges = _delete_edges_where(conn, database.skill_edges.c.tree_id == tree_id)
    nodes = [_as_dict(row) for row in conn.execute(
        select(database.skill_nodes).where(database.skill_nodes.c.tree_id == tree_id)
    )]
    if nodes:
        conn.execute(delete(database.skill_nodes).where(database.skill_nodes.c.tree_id == tree_id))
        conn.commit()
    return nodes, edges
