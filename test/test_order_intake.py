from itertools import chain, repeat

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from festival.connection_registry import ClientRole
from festival.errors import (
    Conflict,
    InfrastructureError,
    InsufficientStock,
    OrdersSuspended,
    ProductUnavailable,
    ValidationError,
)
from festival.models import (
    EmergencyResolve,
    EmergencyStart,
    Order,
    OrderCreate,
    OrderItemCreate,
    Product,
    ProductStatus,
    StockChangeType,
    StockLog,
)
from festival.order_service import OrderIntake, generate_order_number


def order_of(*lines, **kwargs) -> OrderCreate:
    return OrderCreate(items=[OrderItemCreate(**line) for line in lines], **kwargs)


def test_prices_toppings_and_reserves_stock(session, intake, make_product, make_topping):
    product = make_product(price=600, stock_quantity=5)
    onion = make_topping(price=50)

    order = intake.place(session, order_of(
        {"product_id": product.id, "quantity": 2, "toppings": [onion.id]}
    ))

    item = order.items[0]
    assert item.unit_price == 650
    assert item.line_total == 1300
    assert order.total_amount == 1300
    assert item.toppings == [{"topping_id": onion.id, "name": "Green Onion", "price": 50}]
    session.refresh(product)
    assert product.stock_quantity == 3


def test_total_is_sum_of_lines(session, intake, make_product):
    a = make_product(name="Takoyaki", price=500, stock_quantity=10, cooking_time=8)
    b = make_product(name="Ramune", price=200, stock_quantity=10, cooking_time=0)

    order = intake.place(session, order_of(
        {"product_id": a.id, "quantity": 3},
        {"product_id": b.id, "quantity": 2},
    ))

    assert order.total_amount == sum(i.unit_price * i.quantity for i in order.items) == 1900
    assert len(order.items) == 2


def test_estimated_pickup_uses_longest_cooking_time(session, intake, make_product):
    slow = make_product(name="Takoyaki (10 pcs)", cooking_time=10)
    fast = make_product(name="Green Tea", cooking_time=0)

    order = intake.place(session, order_of(
        {"product_id": slow.id, "quantity": 1},
        {"product_id": fast.id, "quantity": 1},
    ))

    assert (order.estimated_pickup_time - order.created_at).total_seconds() == 600


def test_unknown_and_inapplicable_toppings_are_ignored(session, intake, make_product, make_topping):
    product = make_product(price=600)
    other = make_product(name="Ramune", price=200)
    cheese = make_topping(name="Extra Cheese", price=100, product_ids=[other.id])
    retired = make_topping(name="Retired", price=70, is_active=False)

    order = intake.place(session, order_of(
        {"product_id": product.id, "quantity": 1, "toppings": [cheese.id, retired.id, 4242]}
    ))

    assert order.items[0].toppings == []
    assert order.total_amount == 600


def test_disabled_product_is_rejected_and_stock_unchanged(session, intake, make_product):
    available = make_product(name="Ramune", stock_quantity=5)
    disabled = make_product(stock_quantity=5, status=ProductStatus.disabled)

    with pytest.raises(ProductUnavailable) as excinfo:
        intake.place(session, order_of(
            {"product_id": available.id, "quantity": 1},
            {"product_id": disabled.id, "quantity": 1},
        ))

    assert excinfo.value.product_id == disabled.id
    session.refresh(available)
    session.refresh(disabled)
    assert available.stock_quantity == 5
    assert disabled.stock_quantity == 5
    assert session.exec(select(Order)).all() == []
    assert session.exec(select(StockLog)).all() == []


def test_missing_or_deleted_product(session, intake, make_product):
    deleted = make_product(is_deleted=True)

    with pytest.raises(ProductUnavailable):
        intake.place(session, order_of({"product_id": 9999, "quantity": 1}))
    with pytest.raises(ProductUnavailable):
        intake.place(session, order_of({"product_id": deleted.id, "quantity": 1}))


def test_insufficient_stock_rolls_back_earlier_lines(session, intake, make_product):
    a = make_product(name="Takoyaki", stock_quantity=5)
    b = make_product(name="Ramune", stock_quantity=1)

    with pytest.raises(InsufficientStock) as excinfo:
        intake.place(session, order_of(
            {"product_id": a.id, "quantity": 2},
            {"product_id": b.id, "quantity": 2},
        ))

    assert excinfo.value.product_id == b.id
    session.refresh(a)
    assert a.stock_quantity == 5


@pytest.mark.parametrize("request_lines", [[], [{"product_id": 1, "quantity": 0}]])
def test_malformed_requests_rejected(session, intake, request_lines):
    with pytest.raises(ValidationError):
        intake.place(session, order_of(*request_lines))


def test_last_unit_race_only_one_wins(engine, intake, make_product):
    product = make_product(stock_quantity=1)
    request = order_of({"product_id": product.id, "quantity": 1})

    with Session(engine) as first, Session(engine) as second:
        # Both intakes saw one unit left
        assert second.get(Product, product.id).stock_quantity == 1

        intake.place(first, request)
        with pytest.raises(InsufficientStock):
            intake.place(second, request)

    with Session(engine) as check:
        product = check.get(Product, product.id)
        assert product.stock_quantity == 0
        assert product.status == ProductStatus.out_of_stock
        sales = check.exec(
            select(StockLog).where(StockLog.change_type == StockChangeType.sale)
        ).all()
        assert len(sales) == 1
        assert len(check.exec(select(Order)).all()) == 1


def test_sale_is_logged_against_the_order(session, intake, make_product):
    product = make_product(stock_quantity=4)

    order = intake.place(session, order_of({"product_id": product.id, "quantity": 3}))

    entry = session.exec(select(StockLog)).one()
    assert entry.change_type == StockChangeType.sale
    assert (entry.quantity_before, entry.quantity_change, entry.quantity_after) == (4, -3, 1)
    assert entry.order_id == order.id


def test_taken_order_number_is_regenerated(session, ledger, broadcaster, settings, make_product):
    product = make_product(stock_quantity=10)
    numbers = chain(["1200-001", "1200-001", "1200-002"], repeat("1200-003"))
    intake = OrderIntake(ledger, broadcaster, settings, number_generator=lambda now: next(numbers))
    request = order_of({"product_id": product.id, "quantity": 1})

    first = intake.place(session, request)
    second = intake.place(session, request)

    assert first.order_number == "1200-001"
    assert second.order_number == "1200-002"


def test_collision_after_every_attempt_raises_conflict_and_rolls_back(
    session, ledger, broadcaster, make_product
):
    from festival.settings import Settings

    settings = Settings(DATABASE_URL="sqlite://", ORDER_NUMBER_MAX_ATTEMPTS=1)
    product = make_product(stock_quantity=10)
    intake = OrderIntake(ledger, broadcaster, settings, number_generator=lambda now: "1200-001")
    request = order_of({"product_id": product.id, "quantity": 2})

    intake.place(session, request)
    with pytest.raises(Conflict):
        intake.place(session, request)

    session.refresh(product)
    assert product.stock_quantity == 8
    assert len(session.exec(select(Order)).all()) == 1


def test_order_number_format():
    from datetime import datetime

    number = generate_order_number(datetime(2024, 11, 2, 14, 32))
    assert number.startswith("1432-")
    assert len(number) == 8


def test_emergency_stop_suspends_intake(session, intake, emergency, make_product):
    product = make_product(stock_quantity=5)
    request = order_of({"product_id": product.id, "quantity": 1})
    stop = emergency.start(session, EmergencyStart(description="Gas leak", initiated_by="manager"))

    with pytest.raises(OrdersSuspended):
        intake.place(session, request)
    session.refresh(product)
    assert product.stock_quantity == 5

    emergency.resolve(session, stop.id, EmergencyResolve(resolved_by="manager"))
    intake.place(session, request)
    session.refresh(product)
    assert product.stock_quantity == 4


def test_publishes_after_commit(session, intake, make_product, connect):
    kitchen = connect(ClientRole.kitchen)
    customer = connect(ClientRole.customer)
    product = make_product(stock_quantity=3, low_stock_threshold=2)

    order = intake.place(session, order_of({"product_id": product.id, "quantity": 1}))

    assert kitchen.events() == [
        "new-order-notification",
        "kitchen-new-order",
        "stock-updated-notification",
        "stock-alert-notification",
    ]
    assert kitchen.find("kitchen-new-order")[0]["order_number"] == order.order_number
    assert customer.events() == ["new-order-notification", "stock-updated-notification"]


def test_failed_order_publishes_nothing(session, intake, make_product, connect):
    kitchen = connect(ClientRole.kitchen)
    product = make_product(stock_quantity=1)

    with pytest.raises(InsufficientStock):
        intake.place(session, order_of({"product_id": product.id, "quantity": 2}))

    assert kitchen.messages == []


def test_committed_order_is_announced_when_reload_fails(
    session, intake, make_product, connect, monkeypatch
):
    kitchen = connect(ClientRole.kitchen)
    product = make_product(stock_quantity=5)

    def unreachable(session, order_id):
        raise OperationalError("SELECT orders", {}, Exception("connection reset"))

    monkeypatch.setattr("festival.order_service.load_order", unreachable)
    with pytest.raises(InfrastructureError):
        intake.place(session, order_of({"product_id": product.id, "quantity": 2}))

    notice = kitchen.find("kitchen-new-order")[0]
    assert notice["items"][0]["quantity"] == 2
    stored = session.exec(select(Order)).one()
    assert stored.order_number == notice["order_number"]
    session.refresh(product)
    assert product.stock_quantity == 3
