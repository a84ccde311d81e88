import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .rows import map_edge_row, map_node_row, merge_node_row

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("node", "edge")
EVENT_TYPES = ("insert", "update", "delete")


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change delivered by the realtime feed."""

    entity_type: str
    event_type: str
    row: Mapping[str, Any]
    old_row: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        if self.entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {self.entity_type!r}")
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type!r}")

    @property
    def entity_id(self) -> Optional[str]:
        row = self.row or self.old_row or {}
        return row.get("id")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        """Parses the wire form sent by the change feed."""
        return cls(
            entity_type=payload["entity_type"],
            event_type=payload["event_type"],
            row=payload.get("row") or {},
            old_row=payload.get("old_row"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "event_type": self.event_type,
            "row": dict(self.row) if self.row else {},
            "old_row": dict(self.old_row) if self.old_row else None,
        }


class SyncReconciler:
    """
    Folds remote change events into a SkillGraph.

    Delivery may be duplicated, late or out of order, and the node and edge
    streams are not ordered relative to each other. Every handler is
    idempotent; events naming unknown ids are dropped.
    """

    def __init__(self, graph):
        self.graph = graph
        self._handlers = {
            ("node", "insert"): self._insert_node,
            ("node", "update"): self._update_node,
            ("node", "delete"): self._delete_node,
            ("edge", "insert"): self._insert_edge,
            ("edge", "update"): self._update_edge,
            ("edge", "delete"): self._delete_edge,
        }

    def apply(self, event: ChangeEvent) -> bool:
        """Applies one event. Returns True if the graph changed."""
        handler = self._handlers[(event.entity_type, event.event_type)]
        return handler(event)

    # --- Nodes ---

    def _insert_node(self, event: ChangeEvent) -> bool:
        node_id = event.entity_id
        if self.graph.has_node(node_id):
            return False
        return self.graph.insert_node(map_node_row(event.row))

    def _update_node(self, event: ChangeEvent) -> bool:
        node = self.graph.nodes.get(event.entity_id)
        if node is None:
            # Presumably deleted since; nothing to merge into
            logger.debug("Dropped update for unknown node %s", event.entity_id)
            return False
        fallback = (event.old_row or {}).get("position")
        merge_node_row(node, event.row, fallback)
        return True

    def _delete_node(self, event: ChangeEvent) -> bool:
        node_id = event.entity_id
        if not self.graph.has_node(node_id):
            return False
        self.graph.remove_nodes([node_id])
        return True

    # --- Edges ---

    def _insert_edge(self, event: ChangeEvent) -> bool:
        edge = map_edge_row(event.row)
        if not self.graph.insert_edge(edge):
            return False
        if edge.source not in self.graph or edge.target not in self.graph:
            logger.debug("Stored edge %s with an endpoint not yet known locally", edge.id)
        # Evaluate against the edge set right after this insertion
        incoming = self.graph.incoming_edges(edge.target)
        self.graph.unlock_engine.relock_if_prerequisites_missing(edge.target, incoming)
        return True

    def _update_edge(self, event: ChangeEvent) -> bool:
        edge_id = event.entity_id
        if not self.graph.has_edge(edge_id):
            logger.debug("Dropped update for unknown edge %s", edge_id)
            return False
        self.graph.edges[edge_id] = map_edge_row(event.row)
        return True

    def _delete_edge(self, event: ChangeEvent) -> bool:
        edge_id = event.entity_id
        if not self.graph.has_edge(edge_id):
            return False
        self.graph.remove_edges([edge_id])
        return True
