"""
Socket dispatch table.

Each client event maps to a payload schema and a handler. Handlers return the
replies for the sending connection as (event, data) pairs; broadcasts go
through the NotificationBroadcaster. Handlers that hit the database run in the
thread pool.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError as PayloadError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel
from starlette.concurrency import run_in_threadpool

from .connection_registry import ClientRole
from .errors import FestivalError, NotFound
from .event_catalog import DomainEvent
from .models import (
    EmergencyResolve,
    EmergencyStart,
    OrderCreate,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    StockChangeType,
    emergency_to_dict,
    order_to_read,
    utcnow,
)
from .services import Services
from .stats import live_snapshot

logger = logging.getLogger(__name__)

Reply = tuple[str, dict]


# ============ PAYLOADS ============

class EmptyPayload(SQLModel):
    pass


class AuthenticatePayload(SQLModel):
    role: ClientRole


class RoomPayload(SQLModel):
    name: str


class OrderStatusPayload(SQLModel):
    order_id: int
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    cancel_reason: str | None = None


class OrderPaymentPayload(SQLModel):
    order_id: int
    payment_method: PaymentMethod | None = None


class CookingStartPayload(SQLModel):
    order_id: int
    estimated_time: int | None = None  # Minutes
    cooking_staff: str | None = None


class CookingCompletePayload(SQLModel):
    order_id: int
    cooking_staff: str | None = None


class CookingProgressPayload(SQLModel):
    order_id: int
    progress: int = Field(ge=0, le=100)  # Percent
    remaining_time: int | None = None
    cooking_staff: str | None = None


class StockUpdatePayload(SQLModel):
    product_id: int
    change_type: StockChangeType
    quantity: int
    reason: str | None = None
    actor: str | None = None


class StockAlertPayload(SQLModel):
    product_id: int
    message: str | None = None


class EmergencyEndPayload(SQLModel):
    emergency_id: int
    resolved_by: str
    resolution: str | None = None


@dataclass
class SocketContext:
    connection_id: str
    services: Services

    def session(self) -> Session:
        return Session(self.services.engine)


# ============ HANDLERS ============

def handle_authenticate(ctx: SocketContext, payload: AuthenticatePayload) -> list[Reply]:
    room = ctx.services.registry.authenticate(ctx.connection_id, payload.role)
    return [("authentication-success", {"role": payload.role.value, "initial_room": room})]


def handle_join_room(ctx: SocketContext, payload: RoomPayload) -> list[Reply]:
    registry = ctx.services.registry
    user_count = registry.join(ctx.connection_id, payload.name)
    room = payload.name.strip()
    client = registry.get(ctx.connection_id)
    ctx.services.broadcaster.publish(DomainEvent.room_member_joined, {
        "room": room,
        "connection_id": ctx.connection_id,
        "role": client.role.value if client and client.role else None,
        "user_count": user_count,
    }, exclude=ctx.connection_id)
    return [("room-joined", {"room": room, "user_count": user_count})]


def handle_leave_room(ctx: SocketContext, payload: RoomPayload) -> list[Reply]:
    room = payload.name.strip()
    if ctx.services.registry.leave(ctx.connection_id, room):
        ctx.services.broadcaster.publish(DomainEvent.room_member_left, {
            "room": room,
            "connection_id": ctx.connection_id,
            "user_count": ctx.services.registry.room_size(room),
        }, exclude=ctx.connection_id)
    return [("room-left", {"room": room})]


def handle_heartbeat(ctx: SocketContext, payload: EmptyPayload) -> list[Reply]:
    ctx.services.registry.touch(ctx.connection_id)
    return [("heartbeat-ack", {})]


def broadcast_stats(ctx: SocketContext, session: Session) -> None:
    """Refresh every dashboard after an order changes."""
    ctx.services.broadcaster.publish(
        DomainEvent.stats_updated,
        live_snapshot(session, ctx.services.registry, tz=ctx.services.stall_timezone),
    )


def handle_new_order(ctx: SocketContext, payload: OrderCreate) -> list[Reply]:
    with ctx.session() as session:
        order = ctx.services.intake.place(session, payload, actor=f"socket:{ctx.connection_id}")
        reply = ("order-created", {"order": order_to_read(order).model_dump(mode="json")})
        broadcast_stats(ctx, session)
        return [reply]


def handle_order_status_update(ctx: SocketContext, payload: OrderStatusPayload) -> list[Reply]:
    with ctx.session() as session:
        order = ctx.services.state_machine.transition(
            session,
            payload.order_id,
            status=payload.status,
            payment_status=payload.payment_status,
            cancel_reason=payload.cancel_reason,
        )
        reply = ("order-updated", {"order": order_to_read(order).model_dump(mode="json")})
        broadcast_stats(ctx, session)
        return [reply]


def handle_order_payment_update(ctx: SocketContext, payload: OrderPaymentPayload) -> list[Reply]:
    with ctx.session() as session:
        order = ctx.services.state_machine.pay(
            session, payload.order_id, payment_method=payload.payment_method
        )
        reply = ("order-updated", {"order": order_to_read(order).model_dump(mode="json")})
        broadcast_stats(ctx, session)
        return [reply]


def handle_cooking_start(ctx: SocketContext, payload: CookingStartPayload) -> list[Reply]:
    with ctx.session() as session:
        order = ctx.services.state_machine.transition(
            session, payload.order_id, status=OrderStatus.cooking
        )
        ctx.services.broadcaster.publish(DomainEvent.cooking_started, {
            "order_id": order.id,
            "order_number": order.order_number,
            "estimated_time": payload.estimated_time,
            "cooking_staff": payload.cooking_staff,
            "started_at": order.cooking_started_at.isoformat(),
        })
        return [("order-updated", {"order": order_to_read(order).model_dump(mode="json")})]


def handle_cooking_complete(ctx: SocketContext, payload: CookingCompletePayload) -> list[Reply]:
    with ctx.session() as session:
        order = ctx.services.state_machine.transition(
            session, payload.order_id, status=OrderStatus.ready
        )
        ctx.services.broadcaster.publish(DomainEvent.cooking_completed, {
            "order_id": order.id,
            "order_number": order.order_number,
            "cooking_staff": payload.cooking_staff,
            "completed_at": order.cooking_completed_at.isoformat(),
        })
        return [("order-updated", {"order": order_to_read(order).model_dump(mode="json")})]


def handle_cooking_progress(ctx: SocketContext, payload: CookingProgressPayload) -> list[Reply]:
    ctx.services.broadcaster.publish(DomainEvent.cooking_progress, payload.model_dump())
    return []


def handle_stock_update(ctx: SocketContext, payload: StockUpdatePayload) -> list[Reply]:
    with ctx.session() as session:
        change = ctx.services.ledger.apply(
            session,
            payload.product_id,
            payload.change_type,
            payload.quantity,
            reason=payload.reason,
            actor=payload.actor or f"socket:{ctx.connection_id}",
        )
    return [("stock-updated", {"product": change.product, "log": change.log})]


def handle_stock_alert(ctx: SocketContext, payload: StockAlertPayload) -> list[Reply]:
    """Staff-raised alert (e.g. ingredients running out before the counter does)."""
    with ctx.session() as session:
        product = session.get(Product, payload.product_id)
        if product is None or product.is_deleted:
            raise NotFound(f"Product {payload.product_id} not found", product_id=payload.product_id)
        alert = {
            "product_id": product.id,
            "product_name": product.name,
            "stock_quantity": product.stock_quantity,
            "threshold": product.low_stock_threshold,
            "severity": "high",
            "message": payload.message or f"{product.name} needs attention",
            "raised_by": ctx.connection_id,
        }
    ctx.services.broadcaster.publish(DomainEvent.stock_alert, alert)
    return []


def handle_emergency_start(ctx: SocketContext, payload: EmergencyStart) -> list[Reply]:
    with ctx.session() as session:
        entry = ctx.services.emergency.start(session, payload)
        return [("emergency-started", {"emergency": emergency_to_dict(entry)})]


def handle_emergency_end(ctx: SocketContext, payload: EmergencyEndPayload) -> list[Reply]:
    with ctx.session() as session:
        entry = ctx.services.emergency.resolve(
            session,
            payload.emergency_id,
            EmergencyResolve(resolved_by=payload.resolved_by, resolution=payload.resolution),
        )
        return [("emergency-ended", {"emergency": emergency_to_dict(entry)})]


def handle_request_stats(ctx: SocketContext, payload: EmptyPayload) -> list[Reply]:
    with ctx.session() as session:
        snapshot = live_snapshot(session, ctx.services.registry, tz=ctx.services.stall_timezone)
    return [("stats-update", {**snapshot, "generated_at": utcnow().isoformat()})]


# ============ DISPATCH TABLE ============

@dataclass(frozen=True)
class SocketRoute:
    schema: type[SQLModel]
    handler: Callable[[SocketContext, Any], list[Reply]]
    blocking: bool = True  # Run in the thread pool


SOCKET_ROUTES: dict[str, SocketRoute] = {
    "authenticate": SocketRoute(AuthenticatePayload, handle_authenticate, blocking=False),
    "join-room": SocketRoute(RoomPayload, handle_join_room),
    "leave-room": SocketRoute(RoomPayload, handle_leave_room),
    "heartbeat": SocketRoute(EmptyPayload, handle_heartbeat, blocking=False),
    "new-order": SocketRoute(OrderCreate, handle_new_order),
    "order-status-update": SocketRoute(OrderStatusPayload, handle_order_status_update),
    "order-payment-update": SocketRoute(OrderPaymentPayload, handle_order_payment_update),
    "cooking-start": SocketRoute(CookingStartPayload, handle_cooking_start),
    "cooking-complete": SocketRoute(CookingCompletePayload, handle_cooking_complete),
    "cooking-progress": SocketRoute(CookingProgressPayload, handle_cooking_progress),
    "stock-update": SocketRoute(StockUpdatePayload, handle_stock_update),
    "stock-alert": SocketRoute(StockAlertPayload, handle_stock_alert),
    "emergency-start": SocketRoute(EmergencyStart, handle_emergency_start),
    "emergency-end": SocketRoute(EmergencyEndPayload, handle_emergency_end),
    "request-stats": SocketRoute(EmptyPayload, handle_request_stats),
}


def error_reply(kind: str, message: str) -> Reply:
    return ("error", {"kind": kind, "message": message})


async def dispatch(ctx: SocketContext, frame: Any) -> list[Reply]:
    """Route one client frame. Errors come back as replies, never as broadcasts."""
    if not isinstance(frame, dict):
        return [error_reply("validation", "Frames must be JSON objects with an 'event' field")]

    event = frame.get("event")
    route = SOCKET_ROUTES.get(event) if isinstance(event, str) else None
    if route is None:
        logger.warning(f"Unknown socket event from {ctx.connection_id}: {event!r}")
        return [error_reply("unknown-event", f"Unknown event: {event}")]

    try:
        payload = route.schema.model_validate(frame.get("data") or {})
    except PayloadError as e:
        return [error_reply("validation", f"Invalid {event} payload: {e.errors()[0]['msg']}")]

    try:
        if route.blocking:
            return await run_in_threadpool(route.handler, ctx, payload)
        return route.handler(ctx, payload)
    except FestivalError as e:
        logger.info(f"Socket {event} from {ctx.connection_id} rejected: {e.kind}: {e.message}")
        return [error_reply(e.kind, e.message)]
    except SQLAlchemyError as e:
        logger.error(f"Socket {event} from {ctx.connection_id} hit a database error: {e}", exc_info=True)
        return [error_reply("infrastructure", "Database unavailable, please try again")]
    except Exception as e:
        logger.error(f"Socket {event} from {ctx.connection_id} failed: {e}", exc_info=True)
        return [error_reply("internal", "Unexpected server error")]
