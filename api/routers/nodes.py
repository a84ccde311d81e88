# api/routers/nodes.py

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.engine import Connection

from skill_system.models import SkillGraph, generate_id
from skill_system.rows import edge_to_row, node_to_row

from .. import schemas
from ..database import get_db
from ..realtime import RealtimeHub, get_hub
from ..storage import TreeStore
from .auth import require_tree_access

router = APIRouter(
    prefix="/trees/{tree_id}/nodes",
    tags=["nodes"],
    responses={404: {"description": "Not found"}},
)


def track_relocks(graph: SkillGraph) -> List[str]:
    """Collects the ids of nodes the graph relocks while a request runs."""
    relocked: List[str] = []

    def listener(event: str, node_id: str):
        if event == "relocked" and node_id not in relocked:
            relocked.append(node_id)

    graph.add_listener(listener)
    return relocked


def persist_relocks(store: TreeStore, graph: SkillGraph, relocked: List[str]):
    for node_id in relocked:
        if graph.has_node(node_id):
            store.update_node(node_id, {"unlocked": False})


def announce(hub: RealtimeHub, tree_id: str, message: str, refetch: bool = False):
    hub.broadcast(tree_id, "action", {"id": None, "message": message, "refetch": refetch})


def load_node(store: TreeStore, tree_id: str, node_id: str):
    graph = store.load_graph(tree_id)
    if not graph.has_node(node_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Node not found")
    return graph


@router.post("", response_model=schemas.Node, status_code=status.HTTP_201_CREATED)
def create_node(
    tree_id: str,
    node: schemas.NodeCreate,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """
    Adds a locked node. With `connect_from`, the new node is also wired as a
    dependent of that node.
    """
    store = TreeStore(conn, hub)
    graph = store.load_graph(tree_id)
    if node.connect_from and not graph.has_node(node.connect_from):
        raise HTTPException(status_code=404, detail="Prerequisite node not found")

    node_id = generate_id()
    created = graph.add_node(
        name=node.name.strip() or f"Skill {node_id}",
        position=node.position.model_dump(),
        description=(node.description or "").strip() or None,
        cost=node.cost,
        level=node.level,
        node_id=node_id,
    )
    store.insert_nodes(tree_id, [node_to_row(created)])
    announce(hub, tree_id, f'Added "{created.name}"')

    if node.connect_from:
        edge = graph.add_edge(node.connect_from, created.id, edge_id=f"e{node.connect_from}-{created.id}")
        store.insert_edges(tree_id, [edge_to_row(edge)])
    return node_to_row(created)


@router.patch("/{node_id}", response_model=schemas.Node)
def update_node(
    tree_id: str,
    node_id: str,
    update: schemas.NodeUpdate,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Edits a node's name, description, cost, level or position."""
    store = TreeStore(conn, hub)
    graph = load_node(store, tree_id, node_id)
    changes = update.model_dump(exclude_unset=True)
    if "name" in changes and not (changes["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Name must not be empty")
    if "position" in changes and changes["position"] is None:
        raise HTTPException(status_code=422, detail="Position must not be null")

    updated = graph.update_node(node_id, **changes)
    row = node_to_row(updated)
    store.update_node(node_id, {key: row[key] for key in changes})
    if set(changes) - {"position"}:
        announce(hub, tree_id, f'Updated "{updated.name}"')
    return row


@router.post("/{node_id}/activate", response_model=schemas.NodeTransition)
def activate_node(
    tree_id: str,
    node_id: str,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """
    Unlocks a node when all of its prerequisites are unlocked.
    Otherwise nothing changes and `changed` is False.
    """
    store = TreeStore(conn, hub)
    graph = load_node(store, tree_id, node_id)
    changed = graph.unlock_engine.activate(node_id)
    node = graph.get_node(node_id)
    if changed:
        store.update_node(node_id, {"unlocked": True})
        announce(hub, tree_id, f'Unlocked "{node.name}"')
    return {"changed": changed, "node": node_to_row(node)}


@router.post("/{node_id}/reset", response_model=schemas.NodeTransition)
def reset_node(
    tree_id: str,
    node_id: str,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Locks a node again. Its dependents are left as they are."""
    store = TreeStore(conn, hub)
    graph = load_node(store, tree_id, node_id)
    changed = graph.unlock_engine.reset(node_id)
    node = graph.get_node(node_id)
    if changed:
        store.update_node(node_id, {"unlocked": False})
        announce(hub, tree_id, f'Locked "{node.name}"')
    return {"changed": changed, "node": node_to_row(node)}


@router.post("/delete", response_model=schemas.Graph)
def delete_selection(
    tree_id: str,
    selection: schemas.Selection,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """
    Deletes the selected nodes and edges. Edges touching a deleted node go
    with it, and nodes that lose a prerequisite are re-checked.
    """
    store = TreeStore(conn, hub)
    graph = store.load_graph(tree_id)
    relocked = track_relocks(graph)

    removed_edges = graph.remove_edges(selection.edge_ids)
    removed_nodes, cascaded = graph.remove_nodes(selection.node_ids)
    store.delete_edges(removed_edges + cascaded)
    store.delete_nodes(removed_nodes)
    persist_relocks(store, graph, relocked)

    if removed_nodes or removed_edges or cascaded:
        announce(hub, tree_id, "Deleted selection", refetch=True)
    return {
        "nodes": [node_to_row(node) for node in graph.iter_nodes()],
        "edges": [edge_to_row(edge) for edge in graph.iter_edges()],
    }


@router.post("/detach", response_model=schemas.Graph)
def detach_selection(
    tree_id: str,
    selection: schemas.Selection,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Removes every edge touching the selected nodes but keeps the nodes."""
    store = TreeStore(conn, hub)
    graph = store.load_graph(tree_id)
    relocked = track_relocks(graph)

    removed = graph.detach_nodes(selection.node_ids)
    store.delete_edges(removed)
    persist_relocks(store, graph, relocked)

    if removed:
        announce(hub, tree_id, "Detached selected nodes", refetch=True)
    return {
        "nodes": [node_to_row(node) for node in graph.iter_nodes()],
        "edges": [edge_to_row(edge) for edge in graph.iter_edges()],
    }
