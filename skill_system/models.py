import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace as dc_replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .cycle_guard import find_cycle, would_create_cycle
from .errors import CycleError, NodeNotFoundError
from .unlock import UnlockEngine

logger = logging.getLogger(__name__)

EDITABLE_NODE_FIELDS = ("name", "description", "cost", "level", "position")


def generate_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0

    @classmethod
    def coerce(cls, value) -> "Position":
        """Accepts a Position, an {x, y} mapping or an (x, y) pair."""
        if isinstance(value, Position):
            return Position(value.x, value.y)
        if isinstance(value, dict):
            return cls(float(value.get("x", 0)), float(value.get("y", 0)))
        x, y = value
        return cls(float(x), float(y))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class SkillNode:
    """Represents a single skill node in the tree."""

    id: str
    name: str
    description: Optional[str] = None
    cost: Optional[float] = None
    level: Optional[float] = None
    # true = unlocked, false = locked
    unlocked: bool = False
    position: Position = field(default_factory=Position)


@dataclass
class SkillEdge:
    """`source` is a prerequisite of `target`."""

    id: str
    source: str
    target: str
    animated: bool = True


class SkillGraph:
    """
    Authoritative in-memory set of nodes and edges for one tree.

    Mutators either leave the graph valid or reject the change. Edge changes
    hand the affected targets to the UnlockEngine. The graph does no I/O;
    callers mirror committed changes to storage themselves.
    """

    def __init__(self):
        self.nodes: Dict[str, SkillNode] = {}  # Maps node id -> SkillNode
        self.edges: Dict[str, SkillEdge] = {}  # Maps edge id -> SkillEdge
        self._listeners: List[Callable[[str, str], None]] = []
        self.unlock_engine = UnlockEngine(self)

    # --- Listeners ---

    def add_listener(self, listener: Callable[[str, str], None]):
        """Registers `listener(event, node_id)` for lock state changes."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: str, node_id: str):
        for listener in list(self._listeners):
            listener(event, node_id)

    # --- Reads ---

    def __len__(self):
        return len(self.nodes)

    def __contains__(self, node_id):
        return node_id in self.nodes

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self.edges

    def get_node(self, node_id: str) -> SkillNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def get_edge(self, edge_id: str) -> Optional[SkillEdge]:
        return self.edges.get(edge_id)

    def iter_nodes(self) -> Iterator[SkillNode]:
        return iter(list(self.nodes.values()))

    def iter_edges(self) -> Iterator[SkillEdge]:
        return iter(list(self.edges.values()))

    def incoming_edges(self, node_id: str) -> List[SkillEdge]:
        """Edges that point into `node_id`."""
        return [edge for edge in self.edges.values() if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[SkillEdge]:
        return [edge for edge in self.edges.values() if edge.source == node_id]

    def prerequisites(self, node_id: str) -> List[str]:
        """Direct prerequisite ids of a node (sources of its incoming edges)."""
        return [edge.source for edge in self.incoming_edges(node_id)]

    def export(self) -> Tuple[List[SkillNode], List[SkillEdge]]:
        """Returns independent copies of every node and edge."""
        nodes = [dc_replace(node, position=Position.coerce(node.position)) for node in self.nodes.values()]
        edges = [dc_replace(edge) for edge in self.edges.values()]
        return nodes, edges

    # --- Bulk loading ---

    @classmethod
    def from_rows(cls, nodes: Iterable[SkillNode], edges: Iterable[SkillEdge]) -> "SkillGraph":
        """Builds a graph from stored entities as-is, without invariant checks."""
        graph = cls()
        graph.replace(nodes, edges)
        return graph

    def replace(self, nodes: Iterable[SkillNode], edges: Iterable[SkillEdge]):
        """Swaps in a full refetch of the tree."""
        self.nodes = {node.id: node for node in nodes}
        self.edges = {edge.id: edge for edge in edges}
        cycle = find_cycle(self.edges.values())
        if cycle:
            logger.warning("Loaded edges contain a cycle through %s", ", ".join(cycle))
        logger.debug("Graph replaced: %d nodes, %d edges", len(self.nodes), len(self.edges))

    def clear(self):
        self.nodes = {}
        self.edges = {}

    # --- Mutators ---

    def add_node(
        self,
        name: str,
        position=None,
        description: Optional[str] = None,
        cost: Optional[float] = None,
        level: Optional[float] = None,
        unlocked: bool = False,
        node_id: Optional[str] = None,
    ) -> SkillNode:
        """
        Creates a node with a fresh id. New nodes start locked unless seeded.
        Raises ValueError if an explicit `node_id` is already taken.
        """
        if node_id is not None and node_id in self.nodes:
            raise ValueError(f"Node {node_id} already exists")
        node = SkillNode(
            id=node_id or generate_id(),
            name=name,
            description=description,
            cost=cost,
            level=level,
            unlocked=unlocked,
            position=Position.coerce(position) if position is not None else Position(),
        )
        self.nodes[node.id] = node
        logger.debug("Added node %s (%s)", node.id, node.name)
        return node

    def insert_node(self, node: SkillNode) -> bool:
        """Inserts an existing node object. Returns False if the id is taken."""
        if node.id in self.nodes:
            return False
        self.nodes[node.id] = node
        return True

    def add_edge(
        self,
        source: str,
        target: str,
        edge_id: Optional[str] = None,
        animated: bool = True,
    ) -> SkillEdge:
        """
        Adds `source -> target` unless it would close a loop.
        Raises CycleError and leaves the graph untouched on rejection.
        Raises ValueError if an explicit `edge_id` is already taken.
        """
        if edge_id is not None and edge_id in self.edges:
            raise ValueError(f"Edge {edge_id} already exists")
        if would_create_cycle(self.edges.values(), source, target):
            logger.info("Rejected edge %s -> %s: would create a cycle", source, target)
            raise CycleError(source, target)

        edge = SkillEdge(id=edge_id or generate_id(), source=source, target=target, animated=animated)
        self.edges[edge.id] = edge
        logger.debug("Added edge %s: %s -> %s", edge.id, source, target)
        # Re-check the target against the edge set as it stands now
        self.unlock_engine.relock_if_prerequisites_missing(target)
        return edge

    def insert_edge(self, edge: SkillEdge) -> bool:
        """
        Stores an edge without the cycle check (remote rows, seed data).
        Returns False if the id is taken.
        """
        if edge.id in self.edges:
            return False
        self.edges[edge.id] = edge
        return True

    def update_node(self, node_id: str, **fields) -> SkillNode:
        """
        Merges editable fields into a node. The lock state is owned by the
        UnlockEngine and cannot be set here.
        """
        if "unlocked" in fields:
            raise ValueError("Lock state changes go through the UnlockEngine")
        unknown = set(fields) - set(EDITABLE_NODE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown node fields: {', '.join(sorted(unknown))}")

        node = self.get_node(node_id)
        for key, value in fields.items():
            if key == "position":
                value = Position.coerce(value)
            setattr(node, key, value)
        return node

    def remove_edges(self, edge_ids: Iterable[str]) -> List[str]:
        """Removes edges by id and re-evaluates the targets left behind."""
        removed = []
        for edge_id in edge_ids:
            edge = self.edges.pop(edge_id, None)
            if edge is not None:
                removed.append(edge)
        self._reevaluate_targets(removed)
        return [edge.id for edge in removed]

    def remove_nodes(self, node_ids: Iterable[str]) -> Tuple[List[str], List[str]]:
        """
        Removes nodes and, with them, every edge touching them.
        Returns (removed node ids, removed edge ids).
        """
        doomed = set(node_ids)
        removed_nodes = [node_id for node_id in doomed if self.nodes.pop(node_id, None) is not None]
        touching = [
            edge for edge in self.edges.values() if edge.source in doomed or edge.target in doomed
        ]
        for edge in touching:
            del self.edges[edge.id]
        self._reevaluate_targets(touching)
        return removed_nodes, [edge.id for edge in touching]

    def detach_nodes(self, node_ids: Iterable[str]) -> List[str]:
        """Removes every edge touching `node_ids` but keeps the nodes."""
        ids = set(node_ids)
        touching = [edge.id for edge in self.edges.values() if edge.source in ids or edge.target in ids]
        return self.remove_edges(touching)

    def _reevaluate_targets(self, removed_edges: List[SkillEdge]):
        for target in {edge.target for edge in removed_edges}:
            if target in self.nodes:
                self.unlock_engine.relock_if_prerequisites_missing(target)

    # --- Traversals ---

    def get_prerequisites(self, node_id: str) -> List[str]:
        """
        Walks backwards along incoming edges (iterative DFS) and returns every
        direct and indirect prerequisite of `node_id`.
        """
        incoming: Dict[str, List[str]] = {}
        for edge in self.edges.values():
            incoming.setdefault(edge.target, []).append(edge.source)

        visited = set()
        stack = list(incoming.get(node_id, []))
        res = []
        while stack:
            curr = stack.pop()
            if curr in visited or curr == node_id:
                continue
            visited.add(curr)
            res.append(curr)
            for prereq in incoming.get(curr, []):
                if prereq not in visited:
                    stack.append(prereq)
        return res

    def get_skills_unlocked_by(self, node_id: str) -> List[str]:
        """BFS forward along outgoing edges: every skill that depends on `node_id`."""
        outgoing: Dict[str, List[str]] = {}
        for edge in self.edges.values():
            outgoing.setdefault(edge.source, []).append(edge.target)

        visited = {node_id}
        q = deque([node_id])
        res = []
        while q:
            curr = q.popleft()
            for dependent in outgoing.get(curr, []):
                if dependent not in visited:
                    visited.add(dependent)
                    res.append(dependent)
                    q.append(dependent)
        return res

    def get_learning_path(self, target_id: str) -> List[str]:
        """
        Every prerequisite of `target_id` plus the target itself, ordered so
        that each skill comes after all of its own prerequisites.
        """
        if target_id not in self.nodes:
            raise NodeNotFoundError(target_id)

        members = set(self.get_prerequisites(target_id))
        members.add(target_id)
        # Node insertion order breaks ties so the result is stable
        order = {node_id: i for i, node_id in enumerate(self.nodes)}

        in_degree = {node_id: 0 for node_id in members}
        outgoing: Dict[str, List[str]] = {}
        for edge in self.edges.values():
            if edge.source in members and edge.target in members:
                in_degree[edge.target] += 1
                outgoing.setdefault(edge.source, []).append(edge.target)

        ready = sorted((n for n, d in in_degree.items() if d == 0), key=lambda n: order.get(n, len(order)))
        path = []
        while ready:
            curr = ready.pop(0)
            path.append(curr)
            for nxt in outgoing.get(curr, []):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    ready.append(nxt)
            ready.sort(key=lambda n: order.get(n, len(order)))
        return path

    def __repr__(self):
        return f"SkillGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"
