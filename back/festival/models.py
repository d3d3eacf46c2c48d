from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductStatus(str, Enum):
    active = "active"
    disabled = "disabled"
    out_of_stock = "out_of_stock"  # Set automatically by the stock ledger


class OrderStatus(str, Enum):
    received = "received"
    queued = "queued"
    cooking = "cooking"
    ready = "ready"
    picked_up = "picked-up"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"


class PaymentMethod(str, Enum):
    cash = "cash"
    credit_card = "credit_card"
    paypay = "paypay"
    other = "other"


class StockChangeType(str, Enum):
    increase = "increase"
    decrease = "decrease"
    set = "set"
    adjust = "adjust"
    sale = "sale"  # Reserved by order intake


class EmergencyStatus(str, Enum):
    active = "active"
    resolved = "resolved"


# ============ REFERENCE DATA ============

class Product(SQLModel, table=True):
    __tablename__ = "product"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    price: int  # Yen
    cooking_time: int = Field(default=5)  # Minutes

    # Stock (mutated only through the stock ledger)
    stock_quantity: int = Field(default=0)
    initial_stock: int = Field(default=0)
    low_stock_threshold: int = Field(default=5)
    auto_disable_on_zero: bool = Field(default=True)

    status: ProductStatus = Field(default=ProductStatus.active, index=True)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Topping(SQLModel, table=True):
    __tablename__ = "topping"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    price: int
    is_active: bool = Field(default=True, index=True)


class ToppingProduct(SQLModel, table=True):
    """Restricts a topping to specific products. No rows = valid for every product."""
    __tablename__ = "topping_product"

    topping_id: int = Field(foreign_key="topping.id", primary_key=True)
    product_id: int = Field(foreign_key="product.id", primary_key=True)


# ============ ORDERS ============

class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(unique=True, index=True)
    total_amount: int
    status: OrderStatus = Field(default=OrderStatus.received, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.unpaid, index=True)
    payment_method: PaymentMethod = Field(default=PaymentMethod.cash)
    special_instructions: str | None = None
    estimated_pickup_time: datetime | None = None

    # Lifecycle stamps (each set once by the state machine)
    cooking_started_at: datetime | None = None
    cooking_completed_at: datetime | None = None
    picked_up_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: list["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "OrderItem.id"},
    )


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    product_id: int = Field(foreign_key="product.id")
    product_name: str  # Snapshot of product name at order time
    unit_price: int  # Snapshot: product price + toppings
    quantity: int
    toppings: list[dict] = Field(default_factory=list, sa_type=JSON)  # [{topping_id, name, price}]
    line_total: int
    cooking_time: int = Field(default=0)
    instructions: str | None = None  # e.g. "extra sauce"
    created_at: datetime = Field(default_factory=utcnow)

    order: Order = Relationship(back_populates="items")


# ============ AUDIT ============

class StockLog(SQLModel, table=True):
    """Append-only record of every stock mutation."""
    __tablename__ = "stock_log"

    id: int | None = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    change_type: StockChangeType = Field(index=True)
    quantity_before: int
    quantity_change: int
    quantity_after: int
    reason: str | None = None
    actor: str | None = None
    order_id: int | None = Field(default=None, foreign_key="orders.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)


class EmergencyLog(SQLModel, table=True):
    __tablename__ = "emergency_log"

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(default="emergency_stop", index=True)
    severity: str = Field(default="critical")
    description: str
    initiated_by: str
    status: EmergencyStatus = Field(default=EmergencyStatus.active, index=True)
    resolved_by: str | None = None
    resolution: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None


# Request/Response Models
class OrderItemCreate(SQLModel):
    product_id: int
    quantity: int
    toppings: list[int] = Field(default_factory=list)  # Topping ids
    instructions: str | None = None


class OrderCreate(SQLModel):
    items: list[OrderItemCreate]
    payment_method: PaymentMethod = PaymentMethod.cash
    special_instructions: str | None = None


class OrderStatusUpdate(SQLModel):
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    cancel_reason: str | None = None


class OrderPayment(SQLModel):
    payment_method: PaymentMethod | None = None  # None keeps the method chosen at intake


class StockUpdate(SQLModel):
    change_type: StockChangeType
    quantity: int
    reason: str | None = None
    actor: str | None = None


class BulkStockEntry(SQLModel):
    product_id: int
    stock_quantity: int
    reason: str | None = None


class BulkStockUpdate(SQLModel):
    updates: list[BulkStockEntry]
    actor: str | None = None


class EmergencyStart(SQLModel):
    event_type: str = "emergency_stop"
    severity: str = "critical"
    description: str
    initiated_by: str


class EmergencyResolve(SQLModel):
    resolved_by: str
    resolution: str | None = None


class OrderItemRead(SQLModel):
    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price: int
    line_total: int
    toppings: list[dict]
    cooking_time: int
    instructions: str | None = None


class OrderRead(SQLModel):
    id: int
    order_number: str
    total_amount: int
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    special_instructions: str | None = None
    estimated_pickup_time: datetime | None = None
    cooking_started_at: datetime | None = None
    cooking_completed_at: datetime | None = None
    picked_up_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    created_at: datetime
    qr_code_url: str
    items: list[OrderItemRead]


def order_to_read(order: Order) -> OrderRead:
    return OrderRead(
        id=order.id,
        order_number=order.order_number,
        total_amount=order.total_amount,
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        special_instructions=order.special_instructions,
        estimated_pickup_time=order.estimated_pickup_time,
        cooking_started_at=order.cooking_started_at,
        cooking_completed_at=order.cooking_completed_at,
        picked_up_at=order.picked_up_at,
        paid_at=order.paid_at,
        cancelled_at=order.cancelled_at,
        cancel_reason=order.cancel_reason,
        created_at=order.created_at,
        qr_code_url=f"/orders/number/{order.order_number}/qr",
        items=[
            OrderItemRead(
                id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
                toppings=item.toppings or [],
                cooking_time=item.cooking_time,
                instructions=item.instructions,
            )
            for item in order.items
        ],
    )


def product_to_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "price": product.price,
        "stock_quantity": product.stock_quantity,
        "low_stock_threshold": product.low_stock_threshold,
        "auto_disable_on_zero": product.auto_disable_on_zero,
        "status": product.status.value,
    }


def stock_log_to_dict(entry: StockLog) -> dict:
    return {
        "id": entry.id,
        "product_id": entry.product_id,
        "change_type": entry.change_type.value,
        "quantity_before": entry.quantity_before,
        "quantity_change": entry.quantity_change,
        "quantity_after": entry.quantity_after,
        "reason": entry.reason,
        "actor": entry.actor,
        "order_id": entry.order_id,
        "created_at": entry.created_at.isoformat(),
    }


def emergency_to_dict(entry: EmergencyLog) -> dict:
    return {
        "id": entry.id,
        "event_type": entry.event_type,
        "severity": entry.severity,
        "description": entry.description,
        "initiated_by": entry.initiated_by,
        "status": entry.status.value,
        "resolved_by": entry.resolved_by,
        "resolution": entry.resolution,
        "created_at": entry.created_at.isoformat(),
        "resolved_at": entry.resolved_at.isoformat() if entry.resolved_at else None,
    }
