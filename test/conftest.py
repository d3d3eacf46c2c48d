import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from festival.broadcaster import NotificationBroadcaster
from festival.connection_registry import ClientRole, ConnectionRegistry
from festival.db import build_engine, create_db_and_tables
from festival.emergency_service import EmergencyControl
from festival.main import create_app
from festival.models import Product, Topping, ToppingProduct
from festival.order_service import OrderIntake
from festival.order_state import OrderStateMachine
from festival.settings import Settings
from festival.stock_service import StockLedger


class RecordingConnection:
    """Stands in for a socket: keeps every message delivered to it."""

    def __init__(self):
        self.messages: list[dict] = []

    def deliver(self, message: dict) -> None:
        self.messages.append(message)

    def events(self) -> list[str]:
        return [m["event"] for m in self.messages]

    def find(self, event: str) -> list[dict]:
        return [m["data"] for m in self.messages if m["event"] == event]


@pytest.fixture()
def settings() -> Settings:
    return Settings(DATABASE_URL="sqlite://", REDIS_URL="")


@pytest.fixture()
def engine(settings):
    engine = build_engine(settings)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


# ============ SERVICES (no HTTP) ============

@pytest.fixture()
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture()
def broadcaster(registry) -> NotificationBroadcaster:
    return NotificationBroadcaster(registry)


@pytest.fixture()
def ledger(broadcaster) -> StockLedger:
    return StockLedger(broadcaster)


@pytest.fixture()
def state_machine(broadcaster) -> OrderStateMachine:
    return OrderStateMachine(broadcaster)


@pytest.fixture()
def intake(ledger, broadcaster, settings) -> OrderIntake:
    return OrderIntake(ledger, broadcaster, settings)


@pytest.fixture()
def emergency(broadcaster) -> EmergencyControl:
    return EmergencyControl(broadcaster)


@pytest.fixture()
def connect(registry):
    """Register a recording connection, optionally authenticated with a role."""
    def _connect(role: ClientRole | None = None) -> RecordingConnection:
        connection = RecordingConnection()
        client = registry.register(connection)
        if role is not None:
            registry.authenticate(client.connection_id, role)
        connection.connection_id = client.connection_id
        return connection
    return _connect


# ============ APP ============

@pytest.fixture()
def app(settings, engine):
    return create_app(settings=settings, engine=engine)


@pytest.fixture()
def client(app):
    with TestClient(app) as client:
        yield client


# ============ DATA ============

@pytest.fixture()
def make_product(session):
    def _make(**overrides) -> Product:
        data = {
            "name": "Takoyaki",
            "price": 600,
            "cooking_time": 8,
            "stock_quantity": 5,
            "initial_stock": 5,
            "low_stock_threshold": 2,
        }
        data.update(overrides)
        product = Product(**data)
        session.add(product)
        session.commit()
        session.refresh(product)
        return product
    return _make


@pytest.fixture()
def make_topping(session):
    def _make(name: str = "Green Onion", price: int = 50, product_ids=(), **overrides) -> Topping:
        topping = Topping(name=name, price=price, **overrides)
        session.add(topping)
        session.commit()
        session.refresh(topping)
        for product_id in product_ids:
            session.add(ToppingProduct(topping_id=topping.id, product_id=product_id))
        session.commit()
        return topping
    return _make


@pytest.fixture()
def broken_client(tmp_path):
    """App whose database file cannot be opened; lifespan is skipped."""
    url = f"sqlite:///{tmp_path / 'missing' / 'festival.db'}"
    app = create_app(settings=Settings(DATABASE_URL=url, REDIS_URL=""))
    return TestClient(app)
