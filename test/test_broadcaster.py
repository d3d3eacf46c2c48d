from conftest import RecordingConnection

from festival.broadcaster import NotificationBroadcaster
from festival.connection_registry import ConnectedClient
from festival.event_catalog import DomainEvent, resolve_deliveries


class StubRegistry:
    """Fixed room membership, no locking."""

    def __init__(self, rooms: dict[str, list[str]]):
        self.connections: dict[str, RecordingConnection] = {}
        self.rooms = rooms
        for members in rooms.values():
            for cid in members:
                self.connections.setdefault(cid, RecordingConnection())

    def add(self, connection_id: str, connection) -> None:
        self.connections[connection_id] = connection

    def _client(self, cid: str) -> ConnectedClient:
        return ConnectedClient(connection_id=cid, connection=self.connections[cid])

    def all(self):
        return [self._client(cid) for cid in sorted(self.connections)]

    def members_of(self, rooms):
        ids = sorted({cid for room in rooms for cid in self.rooms.get(room, [])})
        return [self._client(cid) for cid in ids]

    def get(self, connection_id):
        if connection_id not in self.connections:
            return None
        return self._client(connection_id)


class FailingConnection:
    def deliver(self, message):
        raise RuntimeError("socket closed")


class FakeRelay:
    def __init__(self, available=True):
        self.available = available
        self.envelopes = []

    def publish(self, envelope):
        if not self.available:
            return False
        self.envelopes.append(envelope)
        return True


def stub_registry() -> StubRegistry:
    return StubRegistry({
        "kitchen": ["k1"],
        "pickup": ["p1"],
        "cashier": ["c1"],
        "customer": ["u1"],
        "admin": ["a1"],
    })


def test_order_placed_reaches_everyone_and_kitchen_gets_extra():
    registry = stub_registry()
    broadcaster = NotificationBroadcaster(registry)

    broadcaster.publish(DomainEvent.order_placed, {"order_id": 1, "order_number": "1200-001"})

    assert registry.connections["k1"].events() == ["new-order-notification", "kitchen-new-order"]
    for cid in ("p1", "c1", "u1", "a1"):
        assert registry.connections[cid].events() == ["new-order-notification"]


def test_ready_notifies_pickup_and_cashier_only():
    registry = stub_registry()
    broadcaster = NotificationBroadcaster(registry)

    broadcaster.publish(DomainEvent.order_status_changed, {"order_id": 1, "status": "ready"})

    assert "pickup-ready-notification" in registry.connections["p1"].events()
    assert "payment-ready-notification" in registry.connections["c1"].events()
    assert registry.connections["k1"].events() == ["order-status-changed"]
    assert registry.connections["u1"].events() == ["order-status-changed"]


def test_stock_alert_goes_to_admin_and_kitchen():
    registry = stub_registry()
    broadcaster = NotificationBroadcaster(registry)

    broadcaster.publish(DomainEvent.stock_alert, {"product_id": 1, "severity": "critical"})

    assert registry.connections["a1"].events() == ["stock-alert-notification"]
    assert registry.connections["k1"].events() == ["stock-alert-notification"]
    assert registry.connections["u1"].messages == []
    assert registry.connections["p1"].messages == []


def test_message_shape_carries_payload_and_timestamp():
    registry = stub_registry()
    NotificationBroadcaster(registry).publish(DomainEvent.emergency_started, {"reason": "fire"})

    message = registry.connections["u1"].messages[0]
    assert message["event"] == "emergency-alert"
    assert message["data"]["reason"] == "fire"
    assert "timestamp" in message["data"]


def test_room_notice_excludes_sender():
    registry = StubRegistry({"vip": ["x1", "x2"]})
    broadcaster = NotificationBroadcaster(registry)

    broadcaster.publish(DomainEvent.room_member_joined, {"room": "vip"}, exclude="x1")

    assert registry.connections["x1"].messages == []
    assert registry.connections["x2"].events() == ["user-joined-room"]


def test_failed_delivery_does_not_stop_fan_out():
    registry = StubRegistry({"kitchen": ["k1", "k3"]})
    registry.add("k2", FailingConnection())
    registry.rooms["kitchen"].append("k2")
    broadcaster = NotificationBroadcaster(registry)

    broadcaster.publish(DomainEvent.cooking_progress, {"order_id": 1, "progress": 50})

    assert registry.connections["k1"].events() == ["cooking-timer-update"]
    assert registry.connections["k3"].events() == ["cooking-timer-update"]


def test_relay_receives_envelopes_instead_of_local_delivery():
    registry = stub_registry()
    relay = FakeRelay()
    broadcaster = NotificationBroadcaster(registry, relay=relay)

    broadcaster.publish(DomainEvent.order_placed, {"order_id": 1})

    assert registry.connections["k1"].messages == []
    assert [e["rooms"] for e in relay.envelopes] == [None, ["kitchen"]]
    # What the listener in each process does with an envelope
    broadcaster.deliver_local(relay.envelopes[1])
    assert registry.connections["k1"].events() == ["kitchen-new-order"]


def test_unreachable_relay_falls_back_to_local_delivery():
    registry = stub_registry()
    broadcaster = NotificationBroadcaster(registry, relay=FakeRelay(available=False))

    broadcaster.publish(DomainEvent.stock_updated, {"product_id": 1})

    assert registry.connections["u1"].events() == ["stock-updated-notification"]


def test_send_to_targets_one_connection():
    registry = stub_registry()
    broadcaster = NotificationBroadcaster(registry)

    assert broadcaster.send_to("u1", "heartbeat-ack", {}) is True
    assert broadcaster.send_to("nobody", "heartbeat-ack", {}) is False
    assert registry.connections["u1"].events() == ["heartbeat-ack"]
    assert registry.connections["k1"].messages == []


def test_conditional_deliveries_follow_payload():
    picked_up = resolve_deliveries(DomainEvent.order_status_changed, {"status": "picked-up"})
    assert picked_up == [
        ("order-status-changed", None),
        ("order-completed-notification", None),
    ]

    paid = resolve_deliveries(DomainEvent.payment_status_changed, {"payment_status": "paid"})
    assert ("payment-completed-notification", frozenset({"pickup"})) in paid
    unpaid = resolve_deliveries(DomainEvent.payment_status_changed, {"payment_status": "unpaid"})
    assert unpaid == [("payment-status-changed", None)]


def test_redis_relay_reports_unreachable_server():
    from festival.redis_relay import RedisRelay

    registry = stub_registry()
    relay = RedisRelay("redis://127.0.0.1:1/0")
    broadcaster = NotificationBroadcaster(registry, relay=relay)

    assert relay.publish({"rooms": None, "exclude": None, "message": {}}) is False
    broadcaster.publish(DomainEvent.stats_updated, {"pending_orders": 3})
    assert registry.connections["a1"].events() == ["stats-update"]
