from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import apps.kitchen.app.db as db  # type: ignore[import]
from apps.kitchen.app.orders import day_bounds

from conftest import cod_order


def _seed_order(session_factory, created_at: datetime, product_id: int, quantity: int, phone: str = "1"):
    with session_factory() as s:
        order = db.Order(
            customer_name="Ravi",
            customer_phone=phone,
            customer_address="12 MG Road",
            payment_method="cash_on_delivery",
            payment_status="pending",
            total_price=Decimal("100.00"),
            created_at=created_at,
        )
        s.add(order)
        s.flush()
        s.add(db.OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, price_at_time=Decimal("50.00")))
        s.commit()
        return order.id


def test_day_bounds_follow_business_timezone():
    start, end = day_bounds(date(2026, 3, 2), date(2026, 3, 2), ZoneInfo("Asia/Kolkata"))
    assert start == datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 2, 18, 30, tzinfo=timezone.utc)


def test_range_report_uses_local_days(client, staff_headers, session_factory):
    with session_factory() as s:
        s.add(db.Product(id=1, name="Dosa", price=Decimal("50.00")))
        s.commit()
    # 00:30 on 2 March in Kolkata.
    _seed_order(session_factory, datetime(2026, 3, 1, 19, 0, tzinfo=timezone.utc), 1, 2)
    # 23:00 on 1 March in Kolkata.
    _seed_order(session_factory, datetime(2026, 3, 1, 17, 30, tzinfo=timezone.utc), 1, 5, phone="2")

    j = client.get("/admin/orders/range", params={"from": "2026-03-02", "to": "2026-03-02"}, headers=staff_headers).json()
    assert j["products"] == [
        {"product_id": 1, "name": "Dosa", "total_quantity": 2, "order_count": 1, "customer_count": 1}
    ]
    assert j["total_orders"] == 1

    j = client.get("/admin/orders/range", params={"from": "2026-03-01", "to": "2026-03-02"}, headers=staff_headers).json()
    assert j["products"][0]["total_quantity"] == 7
    assert j["total_customers"] == 2


def test_range_report_validates_dates(client, staff_headers):
    r = client.get("/admin/orders/range", params={"from": "2026-03-05", "to": "2026-03-01"}, headers=staff_headers)
    assert r.status_code == 400
    r = client.get("/admin/orders/range", params={"from": "yesterday", "to": "2026-03-01"}, headers=staff_headers)
    assert r.status_code == 400
    r = client.get("/admin/orders/range", params={"from": "2026-03-01"}, headers=staff_headers)
    assert r.status_code == 400


def test_today_report_counts_new_orders(client, staff_headers):
    client.post("/orders", json=cod_order(items=[{"product_id": 4, "quantity": 3, "price": 10}], total=30))
    client.post("/orders", json=cod_order(items=[{"product_id": 4, "quantity": 1, "price": 10}], total=10))
    j = client.get("/admin/orders/today", headers=staff_headers).json()
    assert j["date"] == datetime.now(ZoneInfo("Asia/Kolkata")).date().isoformat()
    assert j["products"][0]["product_id"] == 4
    assert j["products"][0]["total_quantity"] == 4
    assert j["total_orders"] == 2


def test_reports_require_staff(client, customer_headers):
    assert client.get("/admin/orders/today").status_code == 401
    assert client.get("/admin/orders/today", headers=customer_headers).status_code == 403
    assert client.get("/admin/orders/reconciliation", headers=customer_headers).status_code == 403
