r"""
Order State Machine

    received -> queued -> cooking -> ready -> picked-up
          \________\________\________\----> cancelled

Forward moves may skip states. picked-up and cancelled are terminal.
payment_status is a separate one-way axis: unpaid -> paid.
"""
import logging

from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, select

from .broadcaster import NotificationBroadcaster
from .db import rollback_on_error
from .errors import InvalidTransition, NotFound, ValidationError
from .event_catalog import DomainEvent
from .models import Order, OrderStatus, PaymentMethod, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

FORWARD_SEQUENCE = [
    OrderStatus.received,
    OrderStatus.queued,
    OrderStatus.cooking,
    OrderStatus.ready,
    OrderStatus.picked_up,
]
TERMINAL_STATES = {OrderStatus.picked_up, OrderStatus.cancelled}

# Stamp set when an order enters the state
STATUS_STAMPS = {
    OrderStatus.cooking: "cooking_started_at",
    OrderStatus.ready: "cooking_completed_at",
    OrderStatus.picked_up: "picked_up_at",
    OrderStatus.cancelled: "cancelled_at",
}


def check_transition(order: Order, target: OrderStatus, payment_status: PaymentStatus) -> None:
    """Raise InvalidTransition unless `order` may move to `target`."""
    current = order.status
    if current in TERMINAL_STATES:
        raise InvalidTransition(
            f"Order {order.order_number} is {current.value} and cannot change status"
        )
    if target == current:
        raise InvalidTransition(f"Order {order.order_number} is already {current.value}")
    if target == OrderStatus.cancelled:
        return
    if FORWARD_SEQUENCE.index(target) < FORWARD_SEQUENCE.index(current):
        raise InvalidTransition(
            f"Order {order.order_number} cannot move back from {current.value} to {target.value}"
        )
    if target == OrderStatus.picked_up:
        if current != OrderStatus.ready:
            raise InvalidTransition(
                f"Order {order.order_number} must be ready before pickup (is {current.value})"
            )
        if payment_status != PaymentStatus.paid:
            raise InvalidTransition(f"Order {order.order_number} must be paid before pickup")


def check_payment(order: Order, target: PaymentStatus, settle: bool = False) -> None:
    """`settle` is a payment taken at the till; taking it twice is refused."""
    if order.payment_status == PaymentStatus.paid and (target == PaymentStatus.unpaid or settle):
        raise InvalidTransition(f"Order {order.order_number} is already paid")
    if target == PaymentStatus.paid and order.status == OrderStatus.cancelled:
        raise InvalidTransition(f"Order {order.order_number} is cancelled and cannot be paid")


def load_order(session: Session, order_id: int) -> Order | None:
    return session.exec(
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.items))
    ).first()


class OrderStateMachine:
    def __init__(self, broadcaster: NotificationBroadcaster):
        self.broadcaster = broadcaster

    def get(self, session: Session, order_id: int) -> Order:
        order = load_order(session, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def get_by_number(self, session: Session, order_number: str) -> Order:
        order = session.exec(
            select(Order)
            .where(Order.order_number == order_number)
            .options(selectinload(Order.items))
        ).first()
        if order is None:
            raise NotFound(f"Order {order_number} not found")
        return order

    def list_orders(
        self,
        session: Session,
        status: OrderStatus | None = None,
        payment_status: PaymentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        """Newest first, optionally filtered on either axis."""
        statement = select(Order).options(selectinload(Order.items))
        if status is not None:
            statement = statement.where(Order.status == status)
        if payment_status is not None:
            statement = statement.where(Order.payment_status == payment_status)
        statement = (
            statement
            .order_by(col(Order.created_at).desc(), col(Order.id).desc())
            .offset(offset)
            .limit(limit)
        )
        return list(session.exec(statement).all())

    def transition(
        self,
        session: Session,
        order_id: int,
        status: OrderStatus | None = None,
        payment_status: PaymentStatus | None = None,
        cancel_reason: str | None = None,
    ) -> Order:
        """
        Apply a status move and/or a payment change in one transaction.

        Payment is applied first so a single request can mark an order paid
        and hand it off. Requesting the payment status the order already has
        is a no-op.
        """
        if status is None and payment_status is None:
            raise ValidationError("Nothing to update: provide status or payment_status")
        if status == OrderStatus.cancelled and not (cancel_reason or "").strip():
            raise ValidationError("A reason is required to cancel an order")
        return self._apply(session, order_id, status, payment_status, cancel_reason)

    def pay(self, session: Session, order_id: int,
            payment_method: PaymentMethod | None = None) -> Order:
        """Take payment at the till, recording how the customer paid."""
        return self._apply(
            session, order_id, None, PaymentStatus.paid, None,
            payment_method=payment_method, settle=True,
        )

    def _apply(
        self,
        session: Session,
        order_id: int,
        status: OrderStatus | None,
        payment_status: PaymentStatus | None,
        cancel_reason: str | None,
        payment_method: PaymentMethod | None = None,
        settle: bool = False,
    ) -> Order:
        now = utcnow()
        events: list[tuple[DomainEvent, dict]] = []

        with rollback_on_error(session, "Order status update"):
            order = session.exec(
                select(Order)
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()
            if order is None:
                raise NotFound(f"Order {order_id} not found")

            if payment_status is not None and (settle or payment_status != order.payment_status):
                check_payment(order, payment_status, settle=settle)
                order.payment_status = payment_status
                if payment_status == PaymentStatus.paid and order.paid_at is None:
                    order.paid_at = now
                if payment_method is not None:
                    order.payment_method = payment_method
                logger.info(f"Order {order.order_number} payment -> {payment_status.value}")
                events.append((DomainEvent.payment_status_changed, {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "payment_status": order.payment_status.value,
                    "payment_method": order.payment_method.value,
                    "total_amount": order.total_amount,
                }))

            if status is not None:
                check_transition(order, status, order.payment_status)
                previous_status = order.status
                order.status = status
                stamp = STATUS_STAMPS.get(status)
                if stamp and getattr(order, stamp) is None:
                    setattr(order, stamp, now)
                if status == OrderStatus.cancelled:
                    order.cancel_reason = cancel_reason.strip()
                logger.info(f"Order {order.order_number}: {previous_status.value} -> {status.value}")
                events.append((DomainEvent.order_status_changed, {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "status": order.status.value,
                    "previous_status": previous_status.value,
                    "payment_status": order.payment_status.value,
                    "cancel_reason": order.cancel_reason,
                }))

            order.updated_at = now
            session.add(order)
            session.commit()

        # Committed: screens hear about it even if the reload below fails
        for event, payload in events:
            self.broadcaster.publish(event, payload)

        with rollback_on_error(session, "Order reload"):
            return self.get(session, order_id)

    def cooking_queue(self, session: Session) -> list[Order]:
        """Orders the kitchen still has to finish, oldest first."""
        return list(session.exec(
            select(Order)
            .where(col(Order.status).in_([OrderStatus.queued, OrderStatus.cooking]))
            .options(selectinload(Order.items))
            .order_by(col(Order.created_at).asc(), col(Order.id).asc())
        ).all())

    def ready_for_handoff(self, session: Session) -> list[Order]:
        """Ready and paid: the only orders the pickup counter may hand over."""
        return list(session.exec(
            select(Order)
            .where(Order.status == OrderStatus.ready)
            .where(Order.payment_status == PaymentStatus.paid)
            .options(selectinload(Order.items))
            .order_by(col(Order.cooking_completed_at).asc(), col(Order.id).asc())
        ).all())
