# api/realtime.py

"""
Per-tree realtime hub.

Carries two kinds of traffic to the clients of a tree:
- change messages, published after every storage write (the change feed);
- broadcast messages relayed from one client to all the others (cursor
  moves, live drag positions, action notices).

Publishing is safe from any thread: messages are handed to each
subscriber's own event loop.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)

MAX_PENDING_MESSAGES = 1000
PRESENCE_EVENTS = ("cursor-move", "node-position")
RESYNC_MESSAGE = {
    "type": "broadcast",
    "event": "action",
    "payload": {"id": None, "message": "Reloaded after falling behind", "refetch": True},
}


class Subscriber:
    """
    One client of a tree. Its queue is bounded: when full, presence traffic
    is dropped, and a dropped change or action marks the subscriber stale so
    that it is told to refetch once it has caught up.
    """

    def __init__(self, tree_id: str, client_id: str, max_pending: int = MAX_PENDING_MESSAGES):
        self.tree_id = tree_id
        self.client_id = client_id
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.stale = False

    def deliver(self, message: Dict[str, Any]):
        try:
            self.loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            # The subscriber's loop has shut down; it will be unsubscribed
            logger.debug("Dropped message for closed subscriber %s", self.client_id)

    def _put(self, message: Dict[str, Any]):
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            if message.get("type") == "broadcast" and message.get("event") in PRESENCE_EVENTS:
                logger.debug("Dropped %s for lagging subscriber %s", message["event"], self.client_id)
                return
            if not self.stale:
                logger.warning("Subscriber %s fell behind on tree %s; it will refetch", self.client_id, self.tree_id)
            self.stale = True

    async def get(self) -> Dict[str, Any]:
        """Next message for the client; a refetch request once a stale queue has drained."""
        if self.stale and self.queue.empty():
            self.stale = False
            return RESYNC_MESSAGE
        return await self.queue.get()


class RealtimeHub:
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscriber]] = defaultdict(set)

    def subscribe(self, tree_id: str, client_id: str) -> Subscriber:
        """Registers a subscriber. Must be called from a running event loop."""
        subscriber = Subscriber(tree_id, client_id)
        self._subscribers[tree_id].add(subscriber)
        logger.debug("Client %s joined tree %s", client_id, tree_id)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        subscribers = self._subscribers.get(subscriber.tree_id)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._subscribers[subscriber.tree_id]

    def subscriber_count(self, tree_id: str) -> int:
        return len(self._subscribers.get(tree_id, ()))

    def publish_change(
        self,
        tree_id: str,
        entity_type: str,
        event_type: str,
        row: Optional[Mapping[str, Any]] = None,
        old_row: Optional[Mapping[str, Any]] = None,
    ):
        """Sends a row-level change to every client of the tree."""
        message = {
            "type": "change",
            "entity_type": entity_type,
            "event_type": event_type,
            "row": _jsonable(row) or {},
            "old_row": _jsonable(old_row),
        }
        for subscriber in list(self._subscribers.get(tree_id, ())):
            subscriber.deliver(message)

    def publish_changes(self, tree_id: str, entity_type: str, event_type: str, rows: List[Mapping[str, Any]]):
        for row in rows:
            if event_type == "delete":
                self.publish_change(tree_id, entity_type, event_type, None, row)
            else:
                self.publish_change(tree_id, entity_type, event_type, row)

    def broadcast(self, tree_id: str, event: str, payload: Mapping[str, Any], sender: Optional[str] = None):
        """Relays a broadcast message to every client of the tree except `sender`."""
        message = {"type": "broadcast", "event": event, "payload": dict(payload)}
        for subscriber in list(self._subscribers.get(tree_id, ())):
            if sender is not None and subscriber.client_id == sender:
                continue
            subscriber.deliver(message)


def _jsonable(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    out = {}
    for key, value in row.items():
        # created_at and friends
        out[key] = value.isoformat() if hasattr(value, "isoformat") else value
    return out


class HubBroadcast:
    """BroadcastChannel implementation for sessions running in the same process as the hub."""

    def __init__(self, hub: RealtimeHub, tree_id: str, client_id: str):
        self.hub = hub
        self.tree_id = tree_id
        self.client_id = client_id

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        self.hub.broadcast(self.tree_id, event, payload, sender=self.client_id)


# Create a single instance of the hub for the application's lifecycle
realtime_hub = RealtimeHub()


def get_hub() -> RealtimeHub:
    return realtime_hub
