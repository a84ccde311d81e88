import asyncio
import logging
import random
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import CYCLE_ERROR_MESSAGE, CycleError, PersistenceError
from .models import Position, SkillEdge, SkillGraph, SkillNode, generate_id
from .outbox import Outbox
from .presence import (
    CURSOR_COLORS,
    CURSOR_INTERVAL,
    NODE_POSITION_INTERVAL,
    PresenceTracker,
    Throttle,
    default_label,
)
from .reconciler import ChangeEvent, SyncReconciler
from .rows import edge_to_row, map_edge_row, map_node_row, node_to_row
from .search import SearchInfo, compute_search_info
from .seed import build_seed_graph

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = "Failed to refresh tree"


class TreeStorage(Protocol):
    """Row-oriented storage for one deployment. Writes are not atomic across rows."""

    async def select_nodes(self, tree_id: str) -> List[Dict[str, Any]]: ...

    async def select_edges(self, tree_id: str) -> List[Dict[str, Any]]: ...

    async def insert_nodes(self, tree_id: str, rows: List[Dict[str, Any]]) -> None: ...

    async def insert_edges(self, tree_id: str, rows: List[Dict[str, Any]]) -> None: ...

    async def update_node(self, node_id: str, changes: Dict[str, Any]) -> None: ...

    async def update_edge(self, edge_id: str, changes: Dict[str, Any]) -> None: ...

    async def delete_nodes(self, node_ids: List[str]) -> None: ...

    async def delete_edges(self, edge_ids: List[str]) -> None: ...

    async def delete_edges_touching(self, node_ids: List[str]) -> None: ...

    async def delete_tree_contents(self, tree_id: str) -> None: ...


class BroadcastChannel(Protocol):
    """Fire-and-forget messages to the other clients of a tree."""

    async def send(self, event: str, payload: Dict[str, Any]) -> None: ...


def parse_number(text: Optional[str], fallback: Optional[float] = None) -> Optional[float]:
    """
    Form helper: blank input clears the value, unparseable input keeps
    `fallback`.
    """
    if text is None:
        return None
    trimmed = str(text).strip()
    if trimmed == "":
        return None
    try:
        value = float(trimmed)
    except ValueError:
        return fallback
    if value != value or value in (float("inf"), float("-inf")):
        return fallback
    return value


class TreeSession:
    """
    The single owner of one tree's SkillGraph on a client.

    Local actions commit to the graph first and then queue their storage and
    broadcast effects on the outbox. Remote change events and broadcast
    messages are queued on the inbox and applied one at a time.
    """

    def __init__(
        self,
        tree_id: str,
        storage: TreeStorage,
        broadcast: Optional[BroadcastChannel] = None,
        client_id: Optional[str] = None,
        display_name: Optional[str] = None,
        color: Optional[str] = None,
        notify: Optional[Callable[[str], None]] = None,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        self.tree_id = tree_id
        self.storage = storage
        self.broadcast = broadcast
        self.client_id = client_id or generate_id()
        self.display_name = display_name or default_label(self.client_id)
        self.color = color or random.choice(CURSOR_COLORS)
        self.notify = notify or (lambda message: logger.info("Notification: %s", message))

        self.graph = SkillGraph()
        self.reconciler = SyncReconciler(self.graph)
        self.outbox = Outbox(max_attempts=max_attempts, retry_delay=retry_delay, on_failure=self._on_persist_failure)
        self.presence = PresenceTracker(self.client_id)
        self.cursor_throttle = Throttle(CURSOR_INTERVAL)
        self.node_position_throttle = Throttle(NODE_POSITION_INTERVAL)
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

        self.graph.add_listener(self._on_lock_change)

    # --- Lifecycle ---

    async def load(self):
        """Fetches every node and edge of the tree and replaces the local graph."""
        node_rows = await self.storage.select_nodes(self.tree_id)
        edge_rows = await self.storage.select_edges(self.tree_id)
        self.graph.replace(
            [map_node_row(row) for row in node_rows],
            [map_edge_row(row) for row in edge_rows],
        )
        self.presence.live_positions.clear()
        logger.info("Loaded tree %s: %d nodes, %d edges", self.tree_id, len(node_rows), len(edge_rows))

    def start(self):
        """Starts the outbox worker and the inbox consumer on the running loop."""
        self.outbox.start()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume_forever())

    async def close(self):
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        await self.outbox.close()

    # --- Effects ---

    def _on_persist_failure(self, error: PersistenceError):
        self.notify(error.message)

    def _send_later(self, event: str, payload: Dict[str, Any]):
        if self.broadcast is None:
            return
        broadcast = self.broadcast

        async def send():
            await broadcast.send(event, payload)

        self.outbox.enqueue(f"broadcast {event}", send)

    def broadcast_action(self, message: str, refetch: bool = False):
        """Tells collaborators what happened; `refetch` asks them to reload."""
        self._send_later("action", {"id": self.client_id, "message": message, "refetch": refetch})

    def _persist(self, label: str, run, failure_message: str, then_announce: Optional[str] = None):
        broadcast = self.broadcast
        client_id = self.client_id

        async def effect():
            await run()
            # Announce only once the write went through
            if then_announce and broadcast is not None:
                await broadcast.send("action", {"id": client_id, "message": then_announce, "refetch": False})

        self.outbox.enqueue(label, effect, failure_message)

    def _persist_node_update(self, node_id: str, changes: Dict[str, Any], failure_message: str, announce=None):
        node = self.graph.nodes.get(node_id)
        payload = dict(changes)
        # Keep the stored position unless this update sets one
        if "position" not in payload and node is not None:
            payload["position"] = Position.coerce(node.position).to_dict()
        storage = self.storage

        async def run():
            await storage.update_node(node_id, payload)

        self._persist(f"update node {node_id}", run, failure_message, announce)

    def _on_lock_change(self, event: str, node_id: str):
        # Cascade relocks are persisted silently; explicit transitions are
        # persisted by activate()/reset()
        if event == "relocked":
            self._persist_node_update(node_id, {"unlocked": False}, "Failed to update node")

    # --- Local actions ---

    def add_node(
        self,
        name: str = "",
        position=None,
        description: Optional[str] = None,
        cost=None,
        level=None,
        connect_from: Optional[str] = None,
    ) -> SkillNode:
        """Creates a locked node, optionally wired from `connect_from`."""
        node_id = generate_id()
        description = (description or "").strip() or None
        node = self.graph.add_node(
            name=(name or "").strip() or f"Skill {node_id}",
            position=position,
            description=description,
            cost=parse_number(cost) if isinstance(cost, str) else cost,
            level=parse_number(level) if isinstance(level, str) else level,
            node_id=node_id,
        )
        storage, tree_id, row = self.storage, self.tree_id, node_to_row(node)

        async def run():
            await storage.insert_nodes(tree_id, [row])

        self._persist(f"insert node {node.id}", run, "Failed to save node")
        self.broadcast_action(f'Added "{node.name}"')

        if connect_from:
            self.connect(connect_from, node.id, edge_id=f"e{connect_from}-{node.id}")
        return node

    def connect(self, source: str, target: str, edge_id: Optional[str] = None, animated: bool = True) -> Optional[SkillEdge]:
        """
        Adds a prerequisite edge. A cycle is reported through `notify` and
        leaves everything untouched; returns None in that case.
        """
        try:
            edge = self.graph.add_edge(source, target, edge_id=edge_id or generate_id(), animated=animated)
        except CycleError:
            self.notify(CYCLE_ERROR_MESSAGE)
            return None

        storage, tree_id, row = self.storage, self.tree_id, edge_to_row(edge)

        async def run():
            await storage.insert_edges(tree_id, [row])

        self._persist(f"insert edge {edge.id}", run, "Failed to save edge", "Created a connection")
        return edge

    def activate(self, node_id: str) -> bool:
        """Unlocks a node if its prerequisites allow it. Silent otherwise."""
        if not self.graph.unlock_engine.activate(node_id):
            return False
        name = self.graph.nodes[node_id].name
        self._persist_node_update(node_id, {"unlocked": True}, "Failed to update node", f'Unlocked "{name}"')
        return True

    def reset(self, node_id: str, silent: bool = False, reason: Optional[str] = None) -> bool:
        """Locks a node again."""
        if not self.graph.unlock_engine.reset(node_id):
            return False
        name = self.graph.nodes[node_id].name
        self._persist_node_update(node_id, {"unlocked": False}, "Failed to update node")
        if not silent:
            self.broadcast_action(reason or f'Locked "{name}"')
        return True

    def edit_node(
        self,
        node_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        cost: Optional[str] = None,
        level: Optional[str] = None,
    ) -> Optional[SkillNode]:
        """
        Applies the edit form. A blank name keeps the current one, a blank
        description clears it, numbers go through parse_number().
        """
        node = self.graph.nodes.get(node_id)
        if node is None:
            return None
        fields = {
            "name": (name or "").strip() or node.name,
            "description": (description or "").strip() or None,
            "cost": parse_number(cost, node.cost),
            "level": parse_number(level, node.level),
        }
        self.graph.update_node(node_id, **fields)
        self.broadcast_action(f'Updated "{node.name}"')
        self._persist_node_update(node_id, fields, "Failed to update node")
        return node

    def move_node(self, node_id: str, position, dragging: bool = False) -> bool:
        """
        Moves a node. While dragging, the position is only broadcast
        (throttled); the final position is persisted.
        """
        if node_id not in self.graph:
            return False
        position = Position.coerce(position)
        self.graph.update_node(node_id, position=position)
        if dragging:
            if self.node_position_throttle.allow(node_id):
                self._send_later(
                    "node-position",
                    {"id": self.client_id, "node_id": node_id, "position": position.to_dict()},
                )
            return True
        self._persist_node_update(node_id, {"position": position.to_dict()}, "Failed to update node")
        return True

    def delete(self, node_ids: Iterable[str] = (), edge_ids: Iterable[str] = ()) -> bool:
        """Deletes the selection; edges touching removed nodes go with them."""
        node_ids = [node_id for node_id in node_ids if node_id in self.graph]
        edge_ids = [edge_id for edge_id in edge_ids if self.graph.has_edge(edge_id)]
        if not node_ids and not edge_ids:
            return False

        removed_edges = self.graph.remove_edges(edge_ids)
        removed_nodes, cascaded_edges = self.graph.remove_nodes(node_ids)
        for node_id in removed_nodes:
            self.presence.live_positions.pop(node_id, None)
        storage = self.storage
        all_edges = removed_edges + cascaded_edges

        if removed_nodes:
            async def drop_nodes():
                await storage.delete_nodes(removed_nodes)

            self._persist("delete nodes", drop_nodes, "Failed to delete nodes")
        if all_edges:
            async def drop_edges():
                await storage.delete_edges(all_edges)

            self._persist("delete edges", drop_edges, "Failed to delete edges")
        self.broadcast_action("Deleted selection", refetch=True)
        return True

    def detach(self, node_ids: Iterable[str]) -> List[str]:
        """Removes every connection of the given nodes."""
        node_ids = list(node_ids)
        if not node_ids:
            return []
        removed = self.graph.detach_nodes(node_ids)
        storage = self.storage

        async def run():
            await storage.delete_edges_touching(node_ids)

        self._persist("detach nodes", run, "Failed to detach nodes")
        self.broadcast_action("Detached selected nodes")
        return removed

    def reset_tree(self):
        """Wipes the tree and reseeds it from the default template."""
        nodes, edges = build_seed_graph()
        self.graph.replace(nodes, edges)
        self.presence.live_positions.clear()
        storage, tree_id = self.storage, self.tree_id
        node_rows = [node_to_row(node) for node in nodes]
        edge_rows = [edge_to_row(edge) for edge in edges]

        async def run():
            await storage.delete_tree_contents(tree_id)
            if node_rows:
                await storage.insert_nodes(tree_id, node_rows)
            if edge_rows:
                await storage.insert_edges(tree_id, edge_rows)

        self._persist("reset tree", run, "Failed to reset tree", None)
        self.broadcast_action("Reset tree to default nodes", refetch=True)

    def search(self, query: str) -> SearchInfo:
        return compute_search_info(self.graph.iter_nodes(), self.graph.iter_edges(), query)

    def dispatch(self, node_id: str, action: str):
        """
        Resolves a node action by id for the presentation layer.
        "edit" returns the current field values for the edit form.
        """
        if action == "activate":
            return self.activate(node_id)
        if action == "reset":
            return self.reset(node_id)
        if action == "edit":
            node = self.graph.nodes.get(node_id)
            if node is None:
                return None
            return {
                "name": node.name,
                "description": node.description or "",
                "cost": "" if node.cost is None else str(node.cost),
                "level": "" if node.level is None else str(node.level),
            }
        raise ValueError(f"Unknown node action: {action!r}")

    # --- Presence ---

    def send_cursor(self, flow_x: float, flow_y: float) -> bool:
        if not self.cursor_throttle.allow(self.client_id):
            return False
        self._send_later(
            "cursor-move",
            {"id": self.client_id, "flow_x": flow_x, "flow_y": flow_y, "color": self.color, "name": self.display_name},
        )
        return True

    def hide_cursor(self):
        self._send_later("cursor-move", {"id": self.client_id, "hidden": True})

    # --- Inbound ---

    def receive(self, message: Mapping[str, Any]):
        """
        Queues one message from the realtime hub:
        {"type": "change", ...ChangeEvent payload} or
        {"type": "broadcast", "event": ..., "payload": {...}}.
        """
        self.inbox.put_nowait(message)

    async def process_pending(self) -> int:
        """Applies every queued inbound message in order."""
        count = 0
        while not self.inbox.empty():
            await self._handle_safely(self.inbox.get_nowait())
            count += 1
        return count

    async def _consume_forever(self):
        while True:
            await self._handle_safely(await self.inbox.get())

    async def _handle_safely(self, message: Mapping[str, Any]) -> bool:
        try:
            return await self.handle(message)
        except Exception:
            # One bad message must not stop the feed; a refetch recovers
            logger.exception("Failed to apply inbound message of type %r", message.get("type"))
            return False

    async def handle(self, message: Mapping[str, Any]) -> bool:
        kind = message.get("type")
        if kind == "change":
            return self.apply_change(ChangeEvent.from_payload(message))
        if kind == "broadcast":
            return await self.apply_broadcast(message.get("event"), message.get("payload") or {})
        logger.debug("Ignored inbound message of type %r", kind)
        return False

    def apply_change(self, event: ChangeEvent) -> bool:
        changed = self.reconciler.apply(event)
        if changed and event.entity_type == "node" and event.event_type != "insert":
            # Stored state supersedes any live drag overlay
            self.presence.live_positions.pop(event.entity_id, None)
        return changed

    async def apply_broadcast(self, event: str, payload: Mapping[str, Any]) -> bool:
        if event == "cursor-move":
            return self.presence.apply_cursor(payload)
        if event == "node-position":
            return self.presence.apply_node_position(payload)
        if event == "action":
            if not self.presence.apply_action(payload):
                return False
            try:
                await self.load()
            except Exception:
                logger.exception("Refetch of tree %s failed", self.tree_id)
                self.notify(REFRESH_FAILED_MESSAGE)
                return False
            return True
        if event == "leave":
            self.presence.leave(payload.get("id"))
            return True
        logger.debug("Ignored broadcast event %r", event)
        return False
