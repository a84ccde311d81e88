from typing import Any, Dict, Mapping, Optional

from .models import Position, SkillEdge, SkillNode

# Conversion between storage rows and in-memory entities.
# Rows are plain mappings shaped like the skill_nodes / skill_edges tables.


def _position_or(value, fallback) -> Position:
    if value is not None:
        return Position.coerce(value)
    if fallback is not None:
        return Position.coerce(fallback)
    return Position()


def map_node_row(row: Mapping[str, Any], fallback_position=None) -> SkillNode:
    """Builds a node from a row; a missing position falls back to `fallback_position`."""
    return SkillNode(
        id=row["id"],
        name=row.get("name") or "",
        description=row.get("description"),
        cost=row.get("cost"),
        level=row.get("level"),
        unlocked=bool(row.get("unlocked", False)),
        position=_position_or(row.get("position"), fallback_position),
    )


def merge_node_row(node: SkillNode, row: Mapping[str, Any], fallback_position=None) -> SkillNode:
    """
    Folds a row into an existing node. Every field the row carries wins; the
    position falls back to `fallback_position`, then to the node's own.
    """
    node.name = row.get("name", node.name)
    node.description = row.get("description", node.description)
    node.cost = row.get("cost", node.cost)
    node.level = row.get("level", node.level)
    if "unlocked" in row:
        node.unlocked = bool(row["unlocked"])
    node.position = _position_or(row.get("position"), fallback_position or node.position)
    return node


def map_edge_row(row: Mapping[str, Any]) -> SkillEdge:
    animated = row.get("animated")
    return SkillEdge(
        id=row["id"],
        source=row["source"],
        target=row["target"],
        animated=True if animated is None else bool(animated),
    )


def node_to_row(node: SkillNode, tree_id: Optional[str] = None) -> Dict[str, Any]:
    row = {
        "id": node.id,
        "name": node.name,
        "description": node.description,
        "cost": node.cost,
        "level": node.level,
        "unlocked": node.unlocked,
        "position": Position.coerce(node.position).to_dict(),
    }
    if tree_id is not None:
        row["tree_id"] = tree_id
    return row


def edge_to_row(edge: SkillEdge, tree_id: Optional[str] = None) -> Dict[str, Any]:
    row = {
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "animated": edge.animated,
    }
    if tree_id is not None:
        row["tree_id"] = tree_id
    return row
