import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from .models import Position

# Presence traffic (cursors, live drag positions) is presentation-only.
# It is throttled on send and never goes through the SkillGraph.

CURSOR_INTERVAL = 0.040  # ~25 messages per second
NODE_POSITION_INTERVAL = 0.060  # ~16 messages per second
CURSOR_STALE_AFTER = 5.0
CURSOR_COLORS = ["#f97316", "#22d3ee", "#a855f7", "#facc15", "#34d399", "#fb7185", "#60a5fa"]
DEFAULT_CURSOR_COLOR = CURSOR_COLORS[0]


def default_label(client_id: str) -> str:
    return f"User {client_id[-4:]}"


class Throttle:
    """Allows at most one event per `interval` seconds for each key."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last: Dict[str, float] = {}

    def allow(self, key: str = "", now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        last = self._last.get(key)
        if last is not None and now - last < self.interval:
            return False
        self._last[key] = now
        return True

    def reset(self, key: str = ""):
        self._last.pop(key, None)


@dataclass
class RemoteCursor:
    id: str
    color: str
    label: str
    last_updated: float
    flow_x: Optional[float] = None
    flow_y: Optional[float] = None
    action: Optional[str] = None


class PresenceTracker:
    """Tracks collaborators' cursors, last actions and live drag positions."""

    def __init__(self, client_id: str, clock: Callable[[], float] = time.monotonic):
        self.client_id = client_id
        self.clock = clock
        self.cursors: Dict[str, RemoteCursor] = {}
        self.live_positions: Dict[str, Position] = {}

    def apply_cursor(self, payload: Mapping) -> bool:
        """Applies a `cursor-move` message. Own echoes are ignored."""
        sender = payload.get("id")
        if not sender or sender == self.client_id:
            return False
        if payload.get("hidden"):
            return self.cursors.pop(sender, None) is not None

        now = self.clock()
        cursor = self.cursors.get(sender)
        if cursor is None:
            cursor = RemoteCursor(
                id=sender,
                color=payload.get("color") or DEFAULT_CURSOR_COLOR,
                label=payload.get("name") or default_label(sender),
                last_updated=now,
            )
            self.cursors[sender] = cursor
        if payload.get("flow_x") is not None:
            cursor.flow_x = payload["flow_x"]
        if payload.get("flow_y") is not None:
            cursor.flow_y = payload["flow_y"]
        if payload.get("action"):
            cursor.action = payload["action"]
        cursor.last_updated = now
        return True

    def apply_action(self, payload: Mapping) -> bool:
        """
        Records a collaborator's `action` message on their cursor.
        Returns True when the sender asked everyone to refetch.
        """
        sender = payload.get("id")
        if sender == self.client_id:
            return False
        # Server-side actions carry no sender id
        cursor = self.cursors.get(sender) if sender else None
        if cursor is not None:
            cursor.action = payload.get("message")
            cursor.last_updated = self.clock()
        return bool(payload.get("refetch"))

    def apply_node_position(self, payload: Mapping) -> bool:
        sender = payload.get("id")
        node_id = payload.get("node_id")
        position = payload.get("position")
        if sender == self.client_id or not node_id or not position:
            return False
        self.live_positions[node_id] = Position.coerce(position)
        return True

    def leave(self, client_id: str):
        self.cursors.pop(client_id, None)

    def prune(self, max_age: float = CURSOR_STALE_AFTER) -> int:
        """Drops cursors not updated within `max_age` seconds."""
        now = self.clock()
        stale = [key for key, cursor in self.cursors.items() if now - cursor.last_updated > max_age]
        for key in stale:
            del self.cursors[key]
        return len(stale)
