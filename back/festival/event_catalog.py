"""
Fixed catalog: domain event -> deliveries (client event name + audience).

An audience is either global (every connection), a fixed set of rooms, or a
set of rooms computed from the payload.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .connection_registry import ClientRole
from .models import OrderStatus, PaymentStatus


class DomainEvent(str, Enum):
    order_placed = "order_placed"
    order_status_changed = "order_status_changed"
    payment_status_changed = "payment_status_changed"
    cooking_started = "cooking_started"
    cooking_completed = "cooking_completed"
    cooking_progress = "cooking_progress"
    stock_updated = "stock_updated"
    stock_alert = "stock_alert"
    emergency_started = "emergency_started"
    emergency_resolved = "emergency_resolved"
    stats_updated = "stats_updated"
    room_member_joined = "room_member_joined"
    room_member_left = "room_member_left"


class Audience:
    """Resolves to None (everyone) or a frozenset of room names."""

    def __init__(
        self,
        rooms: tuple[str, ...] | None = None,
        resolver: Callable[[dict], set[str]] | None = None,
    ):
        self.rooms = rooms
        self.resolver = resolver

    def resolve(self, payload: dict) -> frozenset[str] | None:
        if self.resolver is not None:
            return frozenset(self.resolver(payload))
        if self.rooms is None:
            return None
        return frozenset(self.rooms)


GLOBAL = Audience()


def rooms(*names: str) -> Audience:
    return Audience(rooms=names)


def dynamic(resolver: Callable[[dict], set[str]]) -> Audience:
    return Audience(resolver=resolver)


@dataclass(frozen=True)
class Delivery:
    event_name: str
    audience: Audience
    when: Callable[[dict], bool] | None = None


def _status_is(status: OrderStatus) -> Callable[[dict], bool]:
    return lambda payload: payload.get("status") == status.value


def _payload_room(payload: dict) -> set[str]:
    return {payload["room"]} if payload.get("room") else set()


KITCHEN = ClientRole.kitchen.value
PICKUP = ClientRole.pickup.value
CASHIER = ClientRole.cashier.value
ADMIN = ClientRole.admin.value
MONITORING = ClientRole.monitoring.value


EVENT_CATALOG: dict[DomainEvent, tuple[Delivery, ...]] = {
    DomainEvent.order_placed: (
        Delivery("new-order-notification", GLOBAL),
        Delivery("kitchen-new-order", rooms(KITCHEN)),
    ),
    DomainEvent.order_status_changed: (
        Delivery("order-status-changed", GLOBAL),
        Delivery("cooking-start-notification", rooms(KITCHEN), when=_status_is(OrderStatus.cooking)),
        Delivery("pickup-ready-notification", rooms(PICKUP), when=_status_is(OrderStatus.ready)),
        Delivery("payment-ready-notification", rooms(CASHIER), when=_status_is(OrderStatus.ready)),
        Delivery("order-completed-notification", GLOBAL, when=_status_is(OrderStatus.picked_up)),
    ),
    DomainEvent.payment_status_changed: (
        Delivery("payment-status-changed", GLOBAL),
        Delivery(
            "payment-completed-notification",
            rooms(PICKUP),
            when=lambda payload: payload.get("payment_status") == PaymentStatus.paid.value,
        ),
    ),
    DomainEvent.cooking_started: (
        Delivery("cooking-started-notification", GLOBAL),
        Delivery("cooking-progress-update", rooms(MONITORING)),
    ),
    DomainEvent.cooking_completed: (
        Delivery("cooking-completed-notification", GLOBAL),
        Delivery("order-ready-for-pickup", rooms(PICKUP)),
    ),
    DomainEvent.cooking_progress: (
        Delivery("cooking-progress-update", rooms(MONITORING)),
        Delivery("cooking-timer-update", rooms(KITCHEN)),
    ),
    DomainEvent.stock_updated: (
        Delivery("stock-updated-notification", GLOBAL),
    ),
    DomainEvent.stock_alert: (
        Delivery("stock-alert-notification", dynamic(lambda payload: {ADMIN, KITCHEN})),
    ),
    DomainEvent.emergency_started: (
        Delivery("emergency-alert", GLOBAL),
    ),
    DomainEvent.emergency_resolved: (
        Delivery("emergency-resolved", GLOBAL),
    ),
    DomainEvent.stats_updated: (
        Delivery("stats-update", GLOBAL),
    ),
    DomainEvent.room_member_joined: (
        Delivery("user-joined-room", dynamic(_payload_room)),
    ),
    DomainEvent.room_member_left: (
        Delivery("user-left-room", dynamic(_payload_room)),
    ),
}


def resolve_deliveries(
    event: DomainEvent,
    payload: dict,
    catalog: dict[DomainEvent, tuple[Delivery, ...]] = EVENT_CATALOG,
) -> list[tuple[str, frozenset[str] | None]]:
    """(client event name, rooms or None for global) for each applicable delivery."""
    resolved = []
    for delivery in catalog.get(event, ()):
        if delivery.when is not None and not delivery.when(payload):
            continue
        resolved.append((delivery.event_name, delivery.audience.resolve(payload)))
    return resolved
