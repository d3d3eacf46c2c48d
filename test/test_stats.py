from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from festival.models import Order, OrderStatus, PaymentStatus
from festival.stats import live_snapshot, start_of_day

TOKYO = ZoneInfo("Asia/Tokyo")


def test_day_starts_at_local_midnight():
    # 01:00 on Oct 20 in Tokyo
    now = datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc)

    assert start_of_day(now, TOKYO) == datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
    assert start_of_day(now, timezone.utc) == datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)


def test_snapshot_counts_the_stall_day(session, registry):
    now = datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc)
    late_yesterday = now - timedelta(minutes=90)  # 23:30 local
    this_morning = now - timedelta(minutes=30)  # 00:30 local
    session.add(Order(order_number="2330-001", total_amount=600, created_at=late_yesterday,
                      payment_status=PaymentStatus.paid, status=OrderStatus.picked_up))
    session.add(Order(order_number="0030-002", total_amount=900, created_at=this_morning,
                      payment_status=PaymentStatus.paid))
    session.commit()

    local = live_snapshot(session, registry, now=now, tz=TOKYO)
    assert local["total_orders_today"] == 1
    assert local["revenue_today"] == 900
    assert local["completed_orders_today"] == 0
    assert local["pending_orders"] == 1

    utc = live_snapshot(session, registry, now=now)
    assert utc["total_orders_today"] == 2
    assert utc["revenue_today"] == 1500
