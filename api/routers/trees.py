# api/routers/trees.py

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.engine import Connection

from skill_system.errors import NodeNotFoundError
from skill_system.rows import edge_to_row, node_to_row
from skill_system.search import compute_search_info
from skill_system.seed import build_seed_graph

from .. import crud, schemas, security
from ..database import get_db
from ..realtime import RealtimeHub, get_hub
from ..storage import TreeStore
from .auth import get_tree_or_404, require_tree_access

DEFAULT_TITLE = "Skill Tree"
UNTITLED = "Untitled Skill Tree"

router = APIRouter(
    prefix="/trees",
    tags=["trees"],
    responses={404: {"description": "Not found"}},
)


def tree_meta(tree) -> dict:
    return {"id": tree.id, "title": tree.title, "password_protected": bool(tree.password_hash)}


def graph_out(store: TreeStore, tree_id: str) -> dict:
    graph = store.load_graph(tree_id)
    return {
        "nodes": [node_to_row(node) for node in graph.iter_nodes()],
        "edges": [edge_to_row(edge) for edge in graph.iter_edges()],
    }


def seed_tree(store: TreeStore, tree_id: str):
    nodes, edges = build_seed_graph()
    store.insert_nodes(tree_id, [node_to_row(node) for node in nodes])
    store.insert_edges(tree_id, [edge_to_row(edge) for edge in edges])


@router.post("", response_model=schemas.TreeCreated, status_code=status.HTTP_201_CREATED)
def create_tree(
    tree: schemas.TreeCreate,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    """
    Create a new tree, optionally password protected and seeded with the
    default template. Protected trees come back with an access token.
    """
    tree_id = str(uuid.uuid4())
    title = (tree.title or "").strip() or UNTITLED
    password_hash = security.get_password_hash(tree.password) if tree.password else None
    created = crud.create_tree(conn, tree_id, title, password_hash)
    if tree.seed:
        seed_tree(TreeStore(conn, hub), tree_id)

    response = tree_meta(created)
    if password_hash:
        response["access_token"] = security.create_tree_access_token(tree_id)
    return response


@router.get("/{tree_id}", response_model=schemas.TreeMeta)
def get_tree(tree_id: str, conn: Connection = Depends(get_db)):
    """
    Tree metadata. Readable without the password so clients know whether
    to ask for one.
    """
    return tree_meta(get_tree_or_404(conn, tree_id))


@router.patch("/{tree_id}", response_model=schemas.TreeMeta)
def rename_tree(
    tree_id: str,
    update: schemas.TreeUpdate,
    conn: Connection = Depends(get_db),
    tree=Depends(require_tree_access),
):
    """Rename a tree. A blank title falls back to the default."""
    updated = crud.update_tree(conn, tree_id, title=update.title.strip() or DEFAULT_TITLE)
    return tree_meta(updated)


@router.put("/{tree_id}/password", response_model=schemas.Token)
def set_tree_password(
    tree_id: str,
    update: schemas.PasswordUpdate,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Set or change the tree password. Returns a fresh token for the caller."""
    crud.update_tree(conn, tree_id, password_hash=security.get_password_hash(update.new_password))
    hub.broadcast(tree_id, "action", {"id": None, "message": "Updated tree password", "refetch": False})
    return {"access_token": security.create_tree_access_token(tree_id), "token_type": "bearer"}


@router.delete("/{tree_id}/password", response_model=schemas.TreeMeta)
def remove_tree_password(
    tree_id: str,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Remove the password; the tree becomes public."""
    updated = crud.update_tree(conn, tree_id, password_hash=None)
    hub.broadcast(tree_id, "action", {"id": None, "message": "Removed tree password", "refetch": False})
    return tree_meta(updated)


@router.get("/{tree_id}/graph", response_model=schemas.Graph)
def get_graph(
    tree_id: str,
    conn: Connection = Depends(get_db),
    tree=Depends(require_tree_access),
):
    """All nodes and edges of the tree."""
    return graph_out(TreeStore(conn), tree_id)


@router.post("/{tree_id}/reset", response_model=schemas.Graph)
def reset_tree(
    tree_id: str,
    conn: Connection = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
    tree=Depends(require_tree_access),
):
    """Wipe the tree and reseed it from the default template."""
    store = TreeStore(conn, hub)
    store.delete_tree_contents(tree_id)
    seed_tree(store, tree_id)
    hub.broadcast(tree_id, "action", {"id": None, "message": "Reset tree to default nodes", "refetch": True})
    return graph_out(store, tree_id)


@router.get("/{tree_id}/search", response_model=schemas.SearchResult)
def search_tree(
    tree_id: str,
    q: str = Query(""),
    conn: Connection = Depends(get_db),
    tree=Depends(require_tree_access),
):
    """
    Nodes matching `q` by name or description, plus every prerequisite
    node and edge leading to them.
    """
    graph = TreeStore(conn).load_graph(tree_id)
    info = compute_search_info(graph.iter_nodes(), graph.iter_edges(), q)
    return {
        "query": info.query,
        "matched_node_ids": sorted(info.matched_node_ids),
        "path_node_ids": sorted(info.path_node_ids),
        "path_edge_ids": sorted(info.path_edge_ids),
    }


@router.get("/{tree_id}/nodes/{node_id}/path", response_model=schemas.LearningPath)
def get_learning_path(
    tree_id: str,
    node_id: str,
    conn: Connection = Depends(get_db),
    tree=Depends(require_tree_access),
):
    """
    Finds a single, consolidated learning path for the target skill:
    every prerequisite, most fundamental first, ending at the skill itself.
    """
    graph = TreeStore(conn).load_graph(tree_id)
    try:
        path = graph.get_learning_path(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    return {"node_id": node_id, "path": path}
