import logging
from dataclasses import dataclass
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo

from fastapi import Request
from sqlalchemy.engine import Engine

from .broadcaster import NotificationBroadcaster
from .connection_registry import ConnectionRegistry
from .emergency_service import EmergencyControl
from .order_service import OrderIntake
from .order_state import OrderStateMachine
from .redis_relay import RedisRelay
from .settings import Settings
from .stock_service import StockLedger

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routes and socket handlers need, wired once per app."""
    engine: Engine
    registry: ConnectionRegistry
    broadcaster: NotificationBroadcaster
    ledger: StockLedger
    state_machine: OrderStateMachine
    intake: OrderIntake
    emergency: EmergencyControl
    relay: RedisRelay | None = None
    stall_timezone: tzinfo = timezone.utc


def build_services(settings: Settings, engine: Engine) -> Services:
    relay = RedisRelay(settings.redis_url) if settings.redis_url else None
    if relay is None:
        logger.info("REDIS_URL not set, broadcasting to this process only")

    registry = ConnectionRegistry()
    broadcaster = NotificationBroadcaster(registry, relay=relay)
    ledger = StockLedger(broadcaster, max_attempts=settings.stock_mutation_max_attempts)
    return Services(
        engine=engine,
        registry=registry,
        broadcaster=broadcaster,
        ledger=ledger,
        state_machine=OrderStateMachine(broadcaster),
        intake=OrderIntake(ledger, broadcaster, settings),
        emergency=EmergencyControl(broadcaster),
        relay=relay,
        stall_timezone=ZoneInfo(settings.stall_timezone),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
