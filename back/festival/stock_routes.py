"""
Stock API Routes

Manual stock changes go through the ledger so they are logged, flip product
status at zero and notify every screen.
"""
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from .db import get_session
from .models import BulkStockUpdate, StockUpdate
from .services import Services, get_services

router = APIRouter()


@router.get("/status")
def stock_status(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> list[dict]:
    return services.ledger.status(session)


@router.get("/alerts")
def stock_alerts(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> list[dict]:
    return services.ledger.alerts(session)


@router.get("/logs")
def stock_logs(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[dict]:
    return services.ledger.logs(session, limit=limit, offset=offset)


@router.get("/logs/{product_id}")
def product_stock_logs(
    product_id: int,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[dict]:
    return services.ledger.logs(session, product_id=product_id, limit=limit, offset=offset)


@router.patch("")
def bulk_update_stock(
    update: BulkStockUpdate,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> dict:
    """Stock take: set several products at once."""
    changes = services.ledger.bulk_set(session, update.updates, actor=update.actor)
    return {
        "updated": len(changes),
        "products": [change.product for change in changes],
    }


@router.patch("/{product_id}")
def update_stock(
    product_id: int,
    update: StockUpdate,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> dict:
    change = services.ledger.apply(
        session,
        product_id,
        update.change_type,
        update.quantity,
        reason=update.reason,
        actor=update.actor,
    )
    return {"product": change.product, "stock_log": change.log, "alert": change.alert}
