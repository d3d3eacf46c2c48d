"""
Order API Routes

- POST /orders: place an order (intake)
- PATCH /orders/{id}/status: status / payment changes (state machine)
- POST /orders/{id}/payment: payment taken at the till
- Reconciliation reads for screens that reconnect after missing events
"""
from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session

from .db import get_session
from .models import (
    OrderCreate,
    OrderPayment,
    OrderRead,
    OrderStatus,
    OrderStatusUpdate,
    PaymentStatus,
    order_to_read,
)
from .services import Services, get_services

router = APIRouter()


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    order_in: OrderCreate,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    order = services.intake.place(session, order_in)
    return order_to_read(order)


@router.get("", response_model=list[OrderRead])
def list_orders(
    status: OrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    """All orders, newest first. Cashier screens use ?status=ready&payment_status=unpaid."""
    orders = services.state_machine.list_orders(
        session, status=status, payment_status=payment_status, limit=limit, offset=offset
    )
    return [order_to_read(o) for o in orders]


# Fixed paths before /{order_id}
@router.get("/cooking", response_model=list[OrderRead])
def list_cooking_orders(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Queued and cooking orders, oldest first."""
    return [order_to_read(o) for o in services.state_machine.cooking_queue(session)]


@router.get("/ready", response_model=list[OrderRead])
def list_ready_orders(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Ready and paid orders waiting at the pickup counter."""
    return [order_to_read(o) for o in services.state_machine.ready_for_handoff(session)]


@router.get("/number/{order_number}", response_model=OrderRead)
def get_order_by_number(
    order_number: str,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    return order_to_read(services.state_machine.get_by_number(session, order_number))


@router.get("/{order_id}", response_model=OrderRead)
def get_order(
    order_id: int,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    return order_to_read(services.state_machine.get(session, order_id))


@router.patch("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    order = services.state_machine.transition(
        session,
        order_id,
        status=update.status,
        payment_status=update.payment_status,
        cancel_reason=update.cancel_reason,
    )
    return order_to_read(order)


@router.post("/{order_id}/payment", response_model=OrderRead)
def pay_order(
    order_id: int,
    payment: OrderPayment,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
):
    order = services.state_machine.pay(session, order_id, payment_method=payment.payment_method)
    return order_to_read(order)
