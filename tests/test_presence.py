# tests/test_presence.py

from skill_system.models import Position
from skill_system.presence import CURSOR_INTERVAL, PresenceTracker, Throttle, default_label


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def test_throttle_limits_per_key():
    throttle = Throttle(CURSOR_INTERVAL)
    assert throttle.allow("a", now=1.0) is True
    assert throttle.allow("a", now=1.02) is False
    assert throttle.allow("b", now=1.02) is True
    assert throttle.allow("a", now=1.05) is True


def test_throttle_reset():
    throttle = Throttle(10, clock=FakeClock())
    assert throttle.allow()
    assert not throttle.allow()
    throttle.reset()
    assert throttle.allow()


def test_default_label_uses_last_four_characters():
    assert default_label("abcdef123456") == "User 3456"


def test_cursor_messages_create_and_update_cursor():
    clock = FakeClock()
    tracker = PresenceTracker("me", clock=clock)

    assert tracker.apply_cursor({"id": "me", "flow_x": 1, "flow_y": 1}) is False
    assert tracker.apply_cursor({"id": "peer-0001", "flow_x": 10, "flow_y": 20, "color": "#fff"})

    cursor = tracker.cursors["peer-0001"]
    assert (cursor.flow_x, cursor.flow_y) == (10, 20)
    assert cursor.label == "User 0001"
    assert cursor.color == "#fff"


def test_hidden_cursor_is_removed():
    tracker = PresenceTracker("me", clock=FakeClock())
    tracker.apply_cursor({"id": "peer", "flow_x": 1, "flow_y": 2})
    assert tracker.apply_cursor({"id": "peer", "hidden": True}) is True
    assert "peer" not in tracker.cursors


def test_stale_cursors_are_pruned():
    clock = FakeClock()
    tracker = PresenceTracker("me", clock=clock)
    tracker.apply_cursor({"id": "old", "flow_x": 0, "flow_y": 0})
    clock.now += 3
    tracker.apply_cursor({"id": "fresh", "flow_x": 0, "flow_y": 0})
    clock.now += 2.5

    assert tracker.prune() == 1
    assert list(tracker.cursors) == ["fresh"]


def test_action_records_message_and_reports_refetch():
    tracker = PresenceTracker("me", clock=FakeClock())
    tracker.apply_cursor({"id": "peer", "flow_x": 0, "flow_y": 0})

    assert tracker.apply_action({"id": "peer", "message": 'Added "Go"', "refetch": False}) is False
    assert tracker.cursors["peer"].action == 'Added "Go"'
    assert tracker.apply_action({"id": "peer", "message": "Deleted selection", "refetch": True}) is True
    # Own echoes never trigger a refetch
    assert tracker.apply_action({"id": "me", "message": "Deleted selection", "refetch": True}) is False


def test_server_action_without_sender_can_request_refetch():
    tracker = PresenceTracker("me", clock=FakeClock())
    assert tracker.apply_action({"id": None, "message": "Reset tree to default nodes", "refetch": True}) is True


def test_live_node_positions():
    tracker = PresenceTracker("me", clock=FakeClock())
    assert tracker.apply_node_position({"id": "peer", "node_id": "n1", "position": {"x": 4, "y": 5}})
    assert tracker.live_positions["n1"] == Position(4.0, 5.0)
    assert tracker.apply_node_position({"id": "me", "node_id": "n1", "position": {"x": 0, "y": 0}}) is False


def test_leave_drops_cursor():
    tracker = PresenceTracker("me", clock=FakeClock())
    tracker.apply_cursor({"id": "peer", "flow_x": 0, "flow_y": 0})
    tracker.leave("peer")
    assert tracker.cursors == {}
