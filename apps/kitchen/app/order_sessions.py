from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import Staff, audit, current_staff
from .db import (
    Order,
    OrderManagementSession,
    active_session,
    get_capabilities,
    get_session,
    isoformat_utc,
    is_sqlite,
    storage_guard,
    utcnow,
)
from .errors import Conflict
from .orders import load_orders, order_totals, product_quantities

_log = logging.getLogger("kitchen.sessions")

router = APIRouter(prefix="/admin/session")

_orders = Order.__table__


def _session_out(row: Optional[OrderManagementSession], with_end: bool = False) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    out = {"id": row.id, "start_time": isoformat_utc(row.start_time)}
    if with_end:
        out["end_time"] = isoformat_utc(row.end_time)
    return out


def start_session(s: Session, staff: Staff) -> dict[str, Any]:
    """none/stopped -> active. At most one active session exists; the partial unique index enforces it."""
    with storage_guard(s, "session start"):
        if active_session(s) is not None:
            raise Conflict("an order session is already active")
        row = OrderManagementSession(start_time=utcnow(), status="active", created_by=staff.id)
        s.add(row)
        try:
            s.commit()
        except IntegrityError:
            # Lost the race against a concurrent start.
            s.rollback()
            raise Conflict("an order session is already active")
        s.refresh(row)
    _log.info("order session started", extra={"session_id": row.id, "staff_id": staff.id})
    return {"ok": True, "message": "Order session started", "session": _session_out(row)}


def stop_session(s: Session) -> dict[str, Any]:
    """
    active -> stopped. In the same transaction every order of the session
    loses its current flag; if the orders table has no such column the
    sweep is skipped and the stop still succeeds.
    """
    caps = get_capabilities()
    with storage_guard(s, "session stop"):
        stmt = select(OrderManagementSession).where(OrderManagementSession.status == "active")
        if not is_sqlite(s.get_bind()):
            stmt = stmt.with_for_update()
        row = s.execute(stmt).scalars().first()
        if row is None:
            raise Conflict("no active order session")
        ended = utcnow()
        res = s.execute(
            update(OrderManagementSession.__table__)
            .where(OrderManagementSession.id == row.id, OrderManagementSession.status == "active")
            .values(status="stopped", end_time=ended)
        )
        if res.rowcount == 0:
            s.rollback()
            raise Conflict("no active order session")
        swept = 0
        if caps.order_current_flag:
            sweep = update(_orders).values(is_current_order=False)
            if caps.order_session_tag:
                sweep = sweep.where(_orders.c.session_id == row.id)
            else:
                sweep = sweep.where(_orders.c.is_current_order.is_(True))
            swept = int(s.execute(sweep).rowcount or 0)
        s.commit()
        session_id, started = row.id, row.start_time
    _log.info(
        "order session stopped",
        extra={"session_id": session_id, "orders_cleared": swept, "swept": caps.order_current_flag},
    )
    return {
        "ok": True,
        "message": "Order session stopped",
        "session": {"id": session_id, "start_time": isoformat_utc(started), "end_time": isoformat_utc(ended)},
        "orders_cleared": swept,
    }


def session_status(s: Session) -> dict[str, Any]:
    with storage_guard(s, "session status"):
        active = active_session(s)
        last = (
            s.execute(
                select(OrderManagementSession)
                .where(OrderManagementSession.status == "stopped")
                .order_by(OrderManagementSession.end_time.desc(), OrderManagementSession.id.desc())
            )
            .scalars()
            .first()
        )
    return {
        "is_active": active is not None,
        "active_session": _session_out(active),
        "last_session": _session_out(last, with_end=True),
    }


def current_orders(s: Session) -> dict[str, Any]:
    with storage_guard(s, "session lookup"):
        active = active_session(s)
    if active is None:
        return {"is_active": False, "session": None, "orders": []}
    orders: list[dict[str, Any]] = []
    if get_capabilities().order_session_tag:
        orders = load_orders(s, [_orders.c.session_id == active.id])
    return {"is_active": True, "session": _session_out(active), "orders": orders}


def session_summary(s: Session) -> dict[str, Any]:
    with storage_guard(s, "session lookup"):
        active = active_session(s)
    empty = {"total_orders": 0, "total_customers": 0, "total_revenue": 0.0}
    if active is None:
        return {"is_active": False, "session": None, "summary": [], **empty}
    if not get_capabilities().order_session_tag:
        return {"is_active": True, "session": _session_out(active), "summary": [], **empty}
    where = (_orders.c.session_id == active.id,)
    return {
        "is_active": True,
        "session": _session_out(active),
        "summary": product_quantities(s, where),
        **order_totals(s, where),
    }


@router.post("/start")
def post_start(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    out = start_session(s, staff)
    audit("order_session_start", staff, session_id=out["session"]["id"])
    return out


@router.post("/stop")
def post_stop(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    out = stop_session(s)
    audit("order_session_stop", staff, session_id=out["session"]["id"], orders_cleared=out["orders_cleared"])
    return out


@router.get("/status")
def get_status(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    return session_status(s)


@router.get("/current")
def get_current(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    return current_orders(s)


@router.get("/summary")
def get_summary(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    return session_summary(s)
