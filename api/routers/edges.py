# api/routers/edges.py

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.engine import Connection

from skill_system.errors import CYCLE_ERROR_MESSAGE, CycleError
from skill_system.rows import edge_to_row, node_to_row

from .. import schemas
from ..database import get_db
from ..realtime import RealtimeHub, get_hub
from ..storage import TreeStore
from .auth import require_tree_access
from .nodes import announce, persist_relocks, track_relocks

router = APIRouter(
    prefix="/trees/{tree_id}/edges",
    tags=["edges"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.Edge, status_code=status.HTTP_201_CREATED)
def create_edge(
    tree_id: str,
    edge: schemas.EdgeCreate,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """
    Makes `source` a prerequisite of `target`. Loops are refused with 409.
    An unlocked target whose new prerequisite is locked goes back to locked.
    """
    store = TreeStore(conn, hub)
    graph = store.load_graph(tree_id)
    for node_id in (edge.source, edge.target):
        if not graph.has_node(node_id):
            raise HTTPException(status_code=404, detail=f"Node {node_id} not found")
    if edge.id and graph.has_edge(edge.id):
        raise HTTPException(status_code=409, detail="Edge already exists")

    relocked = track_relocks(graph)
    try:
        created = graph.add_edge(edge.source, edge.target, edge_id=edge.id, animated=edge.animated)
    except CycleError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=CYCLE_ERROR_MESSAGE)

    store.insert_edges(tree_id, [edge_to_row(created)])
    persist_relocks(store, graph, relocked)
    announce(hub, tree_id, "Created a connection")
    return edge_to_row(created)


@router.post("/delete", response_model=schemas.Graph)
def delete_edges(
    tree_id: str,
    selection: schemas.Selection,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Deletes the selected edges; their targets are re-checked."""
    store = TreeStore(conn, hub)
    graph = store.load_graph(tree_id)
    relocked = track_relocks(graph)

    removed = graph.remove_edges(selection.edge_ids)
    store.delete_edges(removed)
    persist_relocks(store, graph, relocked)

    if removed:
        announce(hub, tree_id, "Deleted selection", refetch=True)
    return {
        "nodes": [node_to_row(node) for node in graph.iter_nodes()],
        "edges": [edge_to_row(edge) for edge in graph.iter_edges()],
    }
