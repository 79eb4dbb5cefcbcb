from __future__ import annotations

import threading

from sqlalchemy import func, select, text
from sqlalchemy.orm import sessionmaker

import apps.kitchen.app.db as db  # type: ignore[import]
from apps.kitchen.app.auth import Staff
from apps.kitchen.app.errors import Conflict
from apps.kitchen.app.order_sessions import start_session, stop_session
from apps.kitchen.app.orders import OrderCreate, create_order, load_orders

from conftest import cod_order


def test_status_before_any_session(client, staff_headers):
    j = client.get("/admin/session/status", headers=staff_headers).json()
    assert j == {"is_active": False, "active_session": None, "last_session": None}


def test_start_then_second_start_conflicts(client, staff_headers):
    r = client.post("/admin/session/start", headers=staff_headers)
    assert r.status_code == 200
    sid = r.json()["session"]["id"]

    r = client.post("/admin/session/start", headers=staff_headers)
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"

    j = client.get("/admin/session/status", headers=staff_headers).json()
    assert j["is_active"] is True
    assert j["active_session"]["id"] == sid


def test_stop_without_active_session_conflicts(client, staff_headers):
    r = client.post("/admin/session/stop", headers=staff_headers)
    assert r.status_code == 409


def test_orders_tagged_only_while_active(client, staff_headers):
    before = client.post("/orders", json=cod_order()).json()
    sid = client.post("/admin/session/start", headers=staff_headers).json()["session"]["id"]
    during = client.post("/orders", json=cod_order(phone="9000000001")).json()

    assert before["session_id"] is None and before["is_current_order"] is False
    assert during["session_id"] == sid and during["is_current_order"] is True

    current = client.get("/admin/session/current", headers=staff_headers).json()
    assert current["is_active"] is True
    assert [o["id"] for o in current["orders"]] == [during["order_id"]]


def test_stop_sweeps_current_flag_and_keeps_tag(client, staff_headers, session_factory):
    sid = client.post("/admin/session/start", headers=staff_headers).json()["session"]["id"]
    ids = [client.post("/orders", json=cod_order()).json()["order_id"] for _ in range(2)]

    r = client.post("/admin/session/stop", headers=staff_headers)
    assert r.status_code == 200
    assert r.json()["orders_cleared"] == 2

    with session_factory() as s:
        rows = s.execute(select(db.Order).where(db.Order.id.in_(ids))).scalars().all()
    assert all(o.session_id == sid and o.is_current_order is False for o in rows)

    after = client.post("/orders", json=cod_order()).json()
    assert after["session_id"] is None

    j = client.get("/admin/session/status", headers=staff_headers).json()
    assert j["is_active"] is False
    assert j["last_session"]["id"] == sid
    assert j["last_session"]["end_time"]


def test_current_and_summary_empty_without_session(client, staff_headers):
    assert client.get("/admin/session/current", headers=staff_headers).json() == {
        "is_active": False,
        "session": None,
        "orders": [],
    }
    j = client.get("/admin/session/summary", headers=staff_headers).json()
    assert j["is_active"] is False
    assert j["summary"] == []


def test_summary_groups_by_product(client, staff_headers, session_factory):
    with session_factory() as s:
        s.add_all([db.Product(id=1, name="Idli", price=30), db.Product(id=2, name="Vada", price=25)])
        s.commit()
    client.post("/admin/session/start", headers=staff_headers)
    client.post(
        "/orders",
        json=cod_order(
            phone="1",
            items=[{"product_id": 1, "quantity": 2, "price": 30}, {"product_id": 2, "quantity": 1, "price": 25}],
            total=85,
        ),
    )
    client.post("/orders", json=cod_order(phone="1", items=[{"product_id": 1, "quantity": 3, "price": 30}], total=90))
    client.post("/orders", json=cod_order(phone="2", items=[{"product_id": 2, "quantity": 1, "price": 25}], total=25))

    j = client.get("/admin/session/summary", headers=staff_headers).json()
    assert j["is_active"] is True
    assert [(p["name"], p["total_quantity"], p["order_count"]) for p in j["summary"]] == [
        ("Idli", 5, 2),
        ("Vada", 2, 2),
    ]
    assert j["total_orders"] == 3
    assert j["total_customers"] == 2
    assert j["total_revenue"] == 200.0


def test_concurrent_starts_leave_one_active(session_factory):
    staff = Staff(id=1, email="owner@example.com", username="owner")
    outcomes: list[str] = []
    barrier = threading.Barrier(6)

    def worker():
        barrier.wait()
        with session_factory() as s:
            try:
                start_session(s, staff)
                outcomes.append("started")
            except Conflict:
                outcomes.append("conflict")

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("started") == 1
    with session_factory() as s:
        active = s.execute(
            select(func.count()).select_from(db.OrderManagementSession).where(db.OrderManagementSession.status == "active")
        ).scalar_one()
    assert active == 1


def test_partial_index_rejects_second_active_row(session_factory):
    staff = Staff(id=1, email="owner@example.com", username="owner")
    with session_factory() as s:
        start_session(s, staff)
    with session_factory() as s:
        s.add(db.OrderManagementSession(start_time=db.utcnow(), status="active"))
        try:
            s.commit()
            raised = False
        except Exception:
            s.rollback()
            raised = True
    assert raised


def test_stop_succeeds_without_current_flag_column(tmp_path, monkeypatch):
    eng = db.make_engine(f"sqlite+pysqlite:///{tmp_path / 'legacy.db'}")
    with eng.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE orders (id INTEGER PRIMARY KEY AUTOINCREMENT, customer_name VARCHAR(120),"
                " customer_phone VARCHAR(32), customer_address VARCHAR(512), payment_method VARCHAR(32),"
                " payment_status VARCHAR(20), total_price NUMERIC(10,2), user_id INTEGER, upi_id VARCHAR(255),"
                " session_id INTEGER, gateway_order_id VARCHAR(64), gateway_payment_id VARCHAR(64),"
                " paid_at TIMESTAMP, created_at TIMESTAMP)"
            )
        )
    # A schema this service may not alter.
    monkeypatch.setattr(db, "_CAPABILITIES", db.SchemaCapabilities())
    monkeypatch.setattr(db, "_ensure_order_columns", lambda bind: None)
    caps = db.ensure_schema(eng)
    assert caps.order_session_tag is True
    assert caps.order_current_flag is False

    factory = sessionmaker(bind=eng, expire_on_commit=False)
    staff = Staff(id=1, email="owner@example.com", username="owner")
    try:
        with factory() as s:
            sid = start_session(s, staff)["session"]["id"]
        with factory() as s:
            out = create_order(s, OrderCreate.model_validate(cod_order()), gateway=None)
        assert out["session_id"] == sid
        assert out["is_current_order"] is False
        with factory() as s:
            stopped = stop_session(s)
        assert stopped["orders_cleared"] == 0
        with factory() as s:
            orders = load_orders(s)
        assert orders[0]["session_id"] == sid
    finally:
        eng.dispose()


def test_later_start_never_tags_earlier_orders(client, staff_headers, session_factory):
    before = client.post("/orders", json=cod_order()).json()["order_id"]
    client.post("/admin/session/start", headers=staff_headers)
    client.post("/orders", json=cod_order(phone="9000000001"))

    with session_factory() as s:
        order = s.get(db.Order, before)
    assert order.session_id is None
    assert order.is_current_order is False

    current = client.get("/admin/session/current", headers=staff_headers).json()
    assert before not in [o["id"] for o in current["orders"]]


def test_interleaved_start_stop_and_intake_stay_consistent(session_factory):
    staff = Staff(id=1, email="owner@example.com", username="owner")
    errors: list[BaseException] = []
    barrier = threading.Barrier(8)

    def worker(n: int):
        barrier.wait()
        for i in range(6):
            op = (n + i) % 3
            with session_factory() as s:
                try:
                    if op == 0:
                        start_session(s, staff)
                    elif op == 1:
                        stop_session(s)
                    else:
                        create_order(s, OrderCreate.model_validate(cod_order(phone=f"9{n}{i}")), gateway=None)
                except Conflict:
                    pass
                except Exception as e:
                    errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with session_factory() as s:
        active_ids = s.execute(
            select(db.OrderManagementSession.id).where(db.OrderManagementSession.status == "active")
        ).scalars().all()
        current = s.execute(select(db.Order).where(db.Order.is_current_order.is_(True))).scalars().all()
        session_ids = set(s.execute(select(db.OrderManagementSession.id)).scalars().all())
        tagged = s.execute(select(db.Order.session_id).where(db.Order.session_id.is_not(None))).scalars().all()
    assert len(active_ids) <= 1
    # Only orders of the session still running may carry the current flag.
    assert all(o.session_id in active_ids for o in current)
    assert set(tagged) <= session_ids
