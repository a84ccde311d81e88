import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class UnlockEngine:
    """
    Owns the locked/unlocked transitions of one graph's nodes.

    A node may be unlocked only by an explicit activation while every direct
    prerequisite is unlocked. Edge changes re-check the affected target and
    force it back to locked when a prerequisite is missing or locked.
    Changing a prerequisite's own state does not walk forward to its
    dependents; only edge events trigger re-evaluation.
    """

    def __init__(self, graph):
        self.graph = graph

    def _is_unlocked(self, node_id: str) -> bool:
        node = self.graph.nodes.get(node_id)
        return node.unlocked if node is not None else False

    def prerequisites_met(self, node_id: str, incoming: Optional[Iterable] = None) -> bool:
        """
        True when the node has no incoming edges or every source of its
        incoming edges exists and is unlocked.
        """
        if incoming is None:
            incoming = self.graph.incoming_edges(node_id)
        return all(self._is_unlocked(edge.source) for edge in incoming)

    def activate(self, node_id: str) -> bool:
        """
        locked -> unlocked, guarded by the prerequisites.
        Unknown nodes, unlocked nodes and unmet prerequisites are silent no-ops.
        """
        node = self.graph.nodes.get(node_id)
        if node is None or node.unlocked:
            return False
        if not self.prerequisites_met(node_id):
            logger.debug("Activation of %s ignored: prerequisites not met", node_id)
            return False

        node.unlocked = True
        self.graph.emit("unlocked", node_id)
        return True

    def reset(self, node_id: str) -> bool:
        """unlocked -> locked on explicit request. Always allowed."""
        node = self.graph.nodes.get(node_id)
        if node is None or not node.unlocked:
            return False

        node.unlocked = False
        self.graph.emit("locked", node_id)
        return True

    def relock_if_prerequisites_missing(self, node_id: str, incoming: Optional[Iterable] = None) -> bool:
        """
        Forces an unlocked node back to locked when at least one of its
        (possibly just changed) prerequisites is missing or locked.
        `incoming` overrides the edge set the check runs against.
        """
        node = self.graph.nodes.get(node_id)
        if node is None or not node.unlocked:
            return False

        if incoming is None:
            incoming = self.graph.incoming_edges(node_id)
        incoming = list(incoming)
        if not incoming:
            return False
        if self.prerequisites_met(node_id, incoming):
            return False

        node.unlocked = False
        logger.info("Relocked %s: a prerequisite is locked", node_id)
        self.graph.emit("relocked", node_id)
        return True
