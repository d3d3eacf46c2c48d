from datetime import datetime, time, timezone, tzinfo

from sqlalchemy import func
from sqlmodel import Session, col, select

from .connection_registry import ConnectionRegistry
from .models import Order, OrderStatus, PaymentStatus

PENDING_STATES = [OrderStatus.received, OrderStatus.queued, OrderStatus.cooking]


def start_of_day(now: datetime, tz: tzinfo) -> datetime:
    """Midnight of the stall's local day containing `now`, as UTC like the stored timestamps."""
    local = now.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz).astimezone(timezone.utc)


def live_snapshot(
    session: Session,
    registry: ConnectionRegistry,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> dict:
    """Counters for the admin dashboard (read-only)."""
    day_start = start_of_day(now or datetime.now(timezone.utc), tz)

    today = select(func.count(Order.id)).where(Order.created_at >= day_start)
    total_orders = session.exec(today).one()
    completed = session.exec(
        today.where(Order.status == OrderStatus.picked_up)
    ).one()
    pending = session.exec(
        select(func.count(Order.id)).where(col(Order.status).in_(PENDING_STATES))
    ).one()
    revenue = session.exec(
        select(func.coalesce(func.sum(Order.total_amount), 0))
        .where(Order.created_at >= day_start)
        .where(Order.payment_status == PaymentStatus.paid)
    ).one()

    return {
        "total_orders_today": total_orders,
        "pending_orders": pending,
        "completed_orders_today": completed,
        "revenue_today": revenue,
        "connections": registry.stats(),
    }
