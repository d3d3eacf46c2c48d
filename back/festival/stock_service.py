"""
Stock Ledger

Every change to a product's stock_quantity goes through here:
- increase / decrease / set / adjust (staff and admin screens)
- reserve (order intake, inside the intake transaction)
- bulk_set (stock take)

Each mutation appends a StockLog row, applies the auto-disable / auto-enable
rules and, once committed, publishes stock_updated plus a stock_alert when the
product is low or sold out.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlmodel import Session, col, select

from .broadcaster import NotificationBroadcaster
from .db import rollback_on_error
from .errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from .event_catalog import DomainEvent
from .models import (
    BulkStockEntry,
    Product,
    ProductStatus,
    StockChangeType,
    StockLog,
    product_to_dict,
    stock_log_to_dict,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class StockChange:
    product: dict
    log: dict
    alert: dict | None
    entry: StockLog


def compute_new_quantity(change_type: StockChangeType, before: int, quantity: int) -> int:
    """Resulting stock for a manual change. Never negative."""
    if change_type == StockChangeType.increase:
        if quantity < 0:
            raise ValidationError("Increase quantity must be zero or more")
        return before + quantity
    if change_type == StockChangeType.decrease:
        if quantity < 0:
            raise ValidationError("Decrease quantity must be zero or more")
        return max(0, before - quantity)
    if change_type == StockChangeType.set:
        return max(0, quantity)
    if change_type == StockChangeType.adjust:
        return max(0, before + quantity)
    raise ValidationError(f"Unsupported stock change type: {change_type.value}")


def next_status(product: Product, before: int, after: int) -> ProductStatus:
    """Auto-disable at zero, auto-enable on the exact 0 -> positive boundary."""
    if after <= 0 and product.auto_disable_on_zero and product.status == ProductStatus.active:
        return ProductStatus.out_of_stock
    # A manually disabled product stays disabled
    if after > 0 and before == 0 and product.status == ProductStatus.out_of_stock:
        return ProductStatus.active
    return product.status


def low_stock_alert(product: Product) -> dict | None:
    quantity = product.stock_quantity
    if quantity == 0:
        severity = "critical"
        message = f"{product.name} is sold out"
    elif 0 < quantity <= product.low_stock_threshold:
        severity = "warning"
        message = f"{product.name} is running low ({quantity} left)"
    else:
        return None
    return {
        "product_id": product.id,
        "product_name": product.name,
        "stock_quantity": quantity,
        "threshold": product.low_stock_threshold,
        "severity": severity,
        "message": message,
    }


def stock_level(product: Product) -> str:
    if product.stock_quantity <= 0:
        return "out"
    if product.stock_quantity <= product.low_stock_threshold:
        return "low"
    return "ok"


class StockLedger:
    def __init__(self, broadcaster: NotificationBroadcaster, max_attempts: int = 3):
        self.broadcaster = broadcaster
        self.max_attempts = max_attempts

    # ---- committed operations -------------------------------------------------

    def increase(self, session: Session, product_id: int, quantity: int,
                 reason: str | None = None, actor: str | None = None) -> StockChange:
        return self.apply(session, product_id, StockChangeType.increase, quantity, reason, actor)

    def decrease(self, session: Session, product_id: int, quantity: int,
                 reason: str | None = None, actor: str | None = None) -> StockChange:
        return self.apply(session, product_id, StockChangeType.decrease, quantity, reason, actor)

    def set(self, session: Session, product_id: int, quantity: int,
            reason: str | None = None, actor: str | None = None) -> StockChange:
        return self.apply(session, product_id, StockChangeType.set, quantity, reason, actor)

    def adjust(self, session: Session, product_id: int, delta: int,
               reason: str | None = None, actor: str | None = None) -> StockChange:
        return self.apply(session, product_id, StockChangeType.adjust, delta, reason, actor)

    def apply(
        self,
        session: Session,
        product_id: int,
        change_type: StockChangeType,
        quantity: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> StockChange:
        if change_type == StockChangeType.sale:
            raise ValidationError("Sales are recorded by order intake")
        with rollback_on_error(session, "Stock update"):
            change = self.mutate(session, product_id, change_type, quantity, reason, actor)
            session.commit()
        logger.info(
            f"Stock {change_type.value} for product {product_id}: "
            f"{change.log['quantity_before']} -> {change.log['quantity_after']}"
        )
        self.publish_change(change)
        return change

    def bulk_set(self, session: Session, updates: list[BulkStockEntry],
                 actor: str | None = None) -> list[StockChange]:
        """Set several products in one transaction. Unknown products are skipped."""
        changes = []
        with rollback_on_error(session, "Bulk stock update"):
            for entry in updates:
                try:
                    changes.append(self.mutate(
                        session, entry.product_id, StockChangeType.set,
                        entry.stock_quantity, entry.reason or "bulk update", actor,
                    ))
                except NotFound:
                    logger.warning(f"Bulk stock update skipped unknown product {entry.product_id}")
            session.commit()
        logger.info(f"Bulk stock update applied to {len(changes)} products")
        for change in changes:
            self.publish_change(change)
        return changes

    # ---- in-transaction primitives (caller commits) ---------------------------

    def mutate(
        self,
        session: Session,
        product_id: int,
        change_type: StockChangeType,
        quantity: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> StockChange:
        """
        Locked read plus compare-and-swap write. The write only lands if nobody
        changed stock_quantity since the read; otherwise re-read and retry.
        """
        for attempt in range(1, self.max_attempts + 1):
            product = session.exec(
                select(Product)
                .where(Product.id == product_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()
            if product is None or product.is_deleted:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)

            before = product.stock_quantity
            after = compute_new_quantity(change_type, before, quantity)
            status = next_status(product, before, after)

            result = session.exec(
                update(Product)
                .where(col(Product.id) == product_id, col(Product.stock_quantity) == before)
                .values(stock_quantity=after, status=status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                session.refresh(product)
                return self._record(session, product, change_type, before, reason, actor)

            logger.warning(
                f"Concurrent stock change on product {product_id}, "
                f"retrying ({attempt}/{self.max_attempts})"
            )

        raise Conflict(
            f"Stock for product {product_id} kept changing, please retry",
            product_id=product_id,
        )

    def reserve(self, session: Session, product: Product, quantity: int,
                actor: str | None = None) -> StockChange:
        """
        Take `quantity` units for an order line. A single conditional UPDATE
        decides the race: only a row that is still active, not deleted and
        holding enough stock is decremented.
        """
        result = session.exec(
            update(Product)
            .where(
                col(Product.id) == product.id,
                col(Product.stock_quantity) >= quantity,
                col(Product.status) == ProductStatus.active,
                col(Product.is_deleted) == False,  # noqa: E712
            )
            .values(stock_quantity=Product.stock_quantity - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.refresh(product)

        if result.rowcount != 1:
            if product.is_deleted or product.status == ProductStatus.disabled:
                raise ProductUnavailable(f"{product.name} is not available", product_id=product.id)
            if product.stock_quantity < quantity:
                raise InsufficientStock(
                    f"Not enough stock for {product.name} "
                    f"(requested {quantity}, available {product.stock_quantity})",
                    product_id=product.id,
                )
            raise ProductUnavailable(f"{product.name} is not available", product_id=product.id)

        after = product.stock_quantity
        before = after + quantity
        if after <= 0 and product.auto_disable_on_zero and product.status == ProductStatus.active:
            product.status = ProductStatus.out_of_stock
            session.add(product)
        return self._record(session, product, StockChangeType.sale, before, "order", actor)

    def publish_change(self, change: StockChange) -> None:
        self.broadcaster.publish(DomainEvent.stock_updated, {
            "product_id": change.product["id"],
            "product_name": change.product["name"],
            "stock_quantity": change.product["stock_quantity"],
            "previous_quantity": change.log["quantity_before"],
            "status": change.product["status"],
            "change_type": change.log["change_type"],
        })
        if change.alert is not None:
            self.broadcaster.publish(DomainEvent.stock_alert, change.alert)

    # ---- reads ----------------------------------------------------------------

    def logs(self, session: Session, product_id: int | None = None,
             limit: int = 50, offset: int = 0) -> list[dict]:
        statement = select(StockLog)
        if product_id is not None:
            product = session.get(Product, product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            statement = statement.where(StockLog.product_id == product_id)
        statement = statement.order_by(col(StockLog.id).desc()).offset(offset).limit(limit)
        return [stock_log_to_dict(entry) for entry in session.exec(statement).all()]

    def alerts(self, session: Session) -> list[dict]:
        """Products at or below their threshold, sold-out first, then lowest stock."""
        products = session.exec(
            select(Product)
            .where(Product.is_deleted == False)  # noqa: E712
            .where(col(Product.stock_quantity) <= col(Product.low_stock_threshold))
            .order_by(col(Product.stock_quantity).asc(), col(Product.id).asc())
        ).all()
        return [alert for alert in (low_stock_alert(p) for p in products) if alert is not None]

    def status(self, session: Session) -> list[dict]:
        products = session.exec(
            select(Product)
            .where(Product.is_deleted == False)  # noqa: E712
            .order_by(col(Product.id).asc())
        ).all()
        return [
            {**product_to_dict(p), "initial_stock": p.initial_stock, "stock_level": stock_level(p)}
            for p in products
        ]

    def _record(self, session: Session, product: Product, change_type: StockChangeType,
                before: int, reason: str | None, actor: str | None) -> StockChange:
        entry = StockLog(
            product_id=product.id,
            change_type=change_type,
            quantity_before=before,
            quantity_change=product.stock_quantity - before,
            quantity_after=product.stock_quantity,
            reason=reason,
            actor=actor,
        )
        session.add(entry)
        session.flush()
        return StockChange(
            product=product_to_dict(product),
            log=stock_log_to_dict(entry),
            alert=low_stock_alert(product),
            entry=entry,
        )
