"""
Order Intake

validate -> price -> reserve stock -> persist, as one transaction. Either the
order and every stock decrement commit together, or nothing does.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from .broadcaster import NotificationBroadcaster
from .db import rollback_on_error
from .errors import Conflict, OrdersSuspended, ProductUnavailable, ValidationError
from .event_catalog import DomainEvent
from .models import (
    EmergencyLog,
    EmergencyStatus,
    Order,
    OrderCreate,
    OrderItem,
    OrderItemCreate,
    Product,
    ProductStatus,
    Topping,
    ToppingProduct,
    utcnow,
)
from .order_state import load_order
from .settings import Settings
from .stock_service import StockChange, StockLedger

logger = logging.getLogger(__name__)


def generate_order_number(now: datetime) -> str:
    """HHMM-XXX, e.g. 1432-075"""
    return f"{now:%H%M}-{secrets.randbelow(1000):03d}"


def resolve_toppings(session: Session, product_id: int, topping_ids: list[int]) -> list[Topping]:
    """
    Active toppings valid for the product: either linked to it, or not linked
    to any product. Unknown or inapplicable ids are ignored.
    """
    if not topping_ids:
        return []
    toppings = session.exec(
        select(Topping)
        .where(col(Topping.id).in_(set(topping_ids)))
        .where(Topping.is_active == True)  # noqa: E712
    ).all()
    links = session.exec(
        select(ToppingProduct).where(col(ToppingProduct.topping_id).in_([t.id for t in toppings]))
    ).all()
    allowed_for: dict[int, set[int]] = {}
    for link in links:
        allowed_for.setdefault(link.topping_id, set()).add(link.product_id)

    by_id = {t.id: t for t in toppings if t.id not in allowed_for or product_id in allowed_for[t.id]}
    # Keep request order, one entry per requested id
    return [by_id[tid] for tid in topping_ids if tid in by_id]


class OrderIntake:
    def __init__(
        self,
        ledger: StockLedger,
        broadcaster: NotificationBroadcaster,
        settings: Settings,
        number_generator: Callable[[datetime], str] = generate_order_number,
    ):
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.max_attempts = settings.order_number_max_attempts
        self.number_generator = number_generator

    def place(self, session: Session, request: OrderCreate, actor: str | None = None) -> Order:
        self._validate(request)

        for attempt in range(1, self.max_attempts + 1):
            try:
                with rollback_on_error(session, "Order placement", passthrough=(IntegrityError,)):
                    order, items, changes = self._place_once(session, request, actor)
                    placed = self._placed_event(order, items)
                    session.commit()
                break
            except IntegrityError as e:
                logger.warning(
                    f"Order number collision, retrying ({attempt}/{self.max_attempts}): {e.orig}"
                )
        else:
            raise Conflict("Could not allocate a unique order number, please try again")

        logger.info(
            f"Order {placed['order_number']} placed: {len(placed['items'])} lines, "
            f"total {placed['total_amount']}"
        )
        # Committed: publish before the reload so a read failure cannot hide the order
        self.broadcaster.publish(DomainEvent.order_placed, placed)
        for change in changes:
            self.ledger.publish_change(change)

        with rollback_on_error(session, "Order reload"):
            order = load_order(session, placed["order_id"])
        return order

    def orders_suspended(self, session: Session) -> bool:
        return session.exec(
            select(EmergencyLog.id)
            .where(EmergencyLog.event_type == "emergency_stop")
            .where(EmergencyLog.status == EmergencyStatus.active)
        ).first() is not None

    @staticmethod
    def _validate(request: OrderCreate) -> None:
        if not request.items:
            raise ValidationError("An order needs at least one item")
        for line in request.items:
            if line.quantity <= 0:
                raise ValidationError(
                    f"Quantity for product {line.product_id} must be greater than zero",
                    product_id=line.product_id,
                )

    def _place_once(self, session: Session, request: OrderCreate,
                    actor: str | None) -> tuple[Order, list[OrderItem], list[StockChange]]:
        if self.orders_suspended(session):
            raise OrdersSuspended("Orders are suspended by an emergency stop")

        now = utcnow()
        items: list[OrderItem] = []
        changes: list[StockChange] = []
        total_amount = 0
        longest_cook = 0

        for line in request.items:
            product = session.get(Product, line.product_id)
            self._check_available(product, line)

            # Raises InsufficientStock / ProductUnavailable when the conditional update loses
            changes.append(self.ledger.reserve(session, product, line.quantity, actor))

            toppings = resolve_toppings(session, product.id, line.toppings)
            unit_price = product.price + sum(t.price for t in toppings)
            line_total = unit_price * line.quantity
            total_amount += line_total
            longest_cook = max(longest_cook, product.cooking_time)

            items.append(OrderItem(
                product_id=product.id,
                product_name=product.name,
                unit_price=unit_price,
                quantity=line.quantity,
                toppings=[{"topping_id": t.id, "name": t.name, "price": t.price} for t in toppings],
                line_total=line_total,
                cooking_time=product.cooking_time,
                instructions=line.instructions,
            ))

        order = Order(
            order_number=self._fresh_number(session, now),
            total_amount=total_amount,
            payment_method=request.payment_method,
            special_instructions=request.special_instructions,
            estimated_pickup_time=now + timedelta(minutes=longest_cook),
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        session.flush()

        for item in items:
            item.order_id = order.id
            session.add(item)
        for change in changes:
            change.entry.order_id = order.id
            change.log["order_id"] = order.id
            session.add(change.entry)
        session.flush()
        return order, items, changes

    def _fresh_number(self, session: Session, now: datetime) -> str:
        """A number not yet in use; the unique index still guards concurrent intakes."""
        number = self.number_generator(now)
        for _ in range(self.max_attempts - 1):
            taken = session.exec(select(Order.id).where(Order.order_number == number)).first()
            if taken is None:
                break
            number = self.number_generator(now)
        return number

    @staticmethod
    def _check_available(product: Product | None, line: OrderItemCreate) -> None:
        if product is None or product.is_deleted:
            raise ProductUnavailable(
                f"Product {line.product_id} is not available", product_id=line.product_id
            )
        if product.status == ProductStatus.disabled:
            raise ProductUnavailable(f"{product.name} is not available", product_id=product.id)

    @staticmethod
    def _placed_event(order: Order, items: list[OrderItem]) -> dict:
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "total_amount": order.total_amount,
            "status": order.status.value,
            "payment_method": order.payment_method.value,
            "estimated_pickup_time": order.estimated_pickup_time.isoformat()
            if order.estimated_pickup_time else None,
            "items": [
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "toppings": [t["name"] for t in item.toppings or []],
                    "instructions": item.instructions,
                }
                for item in items
            ],
        }
