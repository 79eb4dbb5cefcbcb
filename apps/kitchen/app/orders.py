from __future__ import annotations

import json
import logging
from datetime import date, datetime, time as dtime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field, field_validator
from sqlalchemy import distinct, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .auth import Customer, Staff, audit, current_customer, current_staff, optional_customer
from .db import (
    OrderManagementSession,
    Order,
    OrderItem,
    Product,
    UpiSetting,
    active_session,
    get_capabilities,
    get_session,
    isoformat_utc,
    order_columns,
    storage_guard,
    utcnow,
)
from .errors import Conflict, Forbidden, Internal, InvalidRequest, NotFound, UpstreamFailure
from .gateway import GatewayError, PaymentGateway, get_gateway

_log = logging.getLogger("kitchen.orders")

router = APIRouter()

_orders = Order.__table__


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    UPI_GPAY = "upi_gpay"
    UPI_PHONEPE = "upi_phonepe"
    GATEWAY_ONLINE = "gateway_online"


# Spellings sent by the storefront.
_PAYMENT_ALIASES = {
    "cashOnDelivery": PaymentMethod.CASH_ON_DELIVERY,
    "upiGpay": PaymentMethod.UPI_GPAY,
    "upiPhonePe": PaymentMethod.UPI_PHONEPE,
    "gatewayOnline": PaymentMethod.GATEWAY_ONLINE,
}

UPI_METHODS = (PaymentMethod.UPI_GPAY, PaymentMethod.UPI_PHONEPE)


def parse_payment_method(raw: Optional[str]) -> PaymentMethod:
    value = (raw or "").strip()
    if value in _PAYMENT_ALIASES:
        return _PAYMENT_ALIASES[value]
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidRequest("unsupported payment method", allowed=[m.value for m in PaymentMethod])


class OrderNumbering:
    """Turns a stored order id into the number shown to customers and the kitchen."""

    def format(self, order_id: int) -> str:
        raise NotImplementedError


class ZeroPaddedIdNumbering(OrderNumbering):
    def __init__(self, width: Optional[int] = None) -> None:
        self.width = int(width if width is not None else config.ORDER_NUMBER_WIDTH)

    def format(self, order_id: int) -> str:
        return str(int(order_id)).zfill(self.width)


_NUMBERING: OrderNumbering = ZeroPaddedIdNumbering()


def get_numbering() -> OrderNumbering:
    return _NUMBERING


class OrderItemIn(BaseModel):
    product_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("product_id", "id"))
    quantity: Optional[int] = None
    price: Optional[Decimal] = None


class OrderCreate(BaseModel):
    customer_name: str = Field(default="", validation_alias=AliasChoices("customer_name", "name"))
    phone: str = Field(default="", validation_alias=AliasChoices("phone", "customer_phone"))
    address: str = Field(default="", validation_alias=AliasChoices("address", "customer_address"))
    payment_method: str = Field(default="", validation_alias=AliasChoices("payment_method", "payment"))
    items: list[OrderItemIn] = Field(default_factory=list, validation_alias=AliasChoices("items", "cart"))
    total: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("total", "total_price"))
    user_id: Optional[int] = None
    upi_id: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def _cart_from_string(cls, v: Any) -> Any:
        # Older storefront builds send the cart JSON-encoded.
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                raise ValueError("invalid cart data")
        return v


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _validate(req: OrderCreate) -> None:
    missing = [
        name
        for name, value in (("customer_name", req.customer_name), ("phone", req.phone), ("address", req.address))
        if not (value or "").strip()
    ]
    if missing:
        raise InvalidRequest("missing required fields", fields=missing)
    if not req.items:
        raise InvalidRequest("order must contain at least one item")
    for idx, item in enumerate(req.items):
        if item.product_id is None:
            raise InvalidRequest("item is missing product_id", item=idx)
        if item.quantity is None or item.quantity < 1:
            raise InvalidRequest("item quantity must be at least 1", item=idx)
        if item.price is None or item.price < 0:
            raise InvalidRequest("item price must not be negative", item=idx)
    try:
        positive = req.total is not None and req.total.is_finite() and req.total > 0
    except InvalidOperation:
        positive = False
    if not positive:
        raise InvalidRequest("total must be positive")


def merchant_upi_id(s: Session) -> Optional[str]:
    with storage_guard(s, "upi settings read"):
        row = s.execute(select(UpiSetting).order_by(UpiSetting.id.desc())).scalars().first()
    return row.upi_id if row else None


def create_order(
    s: Session,
    req: OrderCreate,
    gateway: PaymentGateway,
    customer: Optional[Customer] = None,
    numbering: Optional[OrderNumbering] = None,
) -> dict[str, Any]:
    """
    Validate, persist and branch a new order. The order and its items are
    committed in one transaction, tagged with whichever session is active at
    that moment; online payments reach the gateway only after that commit.
    """
    numbering = numbering or get_numbering()
    _validate(req)
    method = parse_payment_method(req.payment_method)
    upi_id = (req.upi_id or "").strip() or None
    if method in UPI_METHODS and not upi_id:
        raise InvalidRequest("upi_id is required for UPI payments")
    user_id = customer.id if customer else None
    if req.user_id is not None and req.user_id != user_id:
        raise Forbidden("user_id does not match the authenticated customer")

    total = Decimal(req.total).quantize(Decimal("0.01"))
    caps = get_capabilities()
    values: dict[str, Any] = {
        "customer_name": req.customer_name.strip(),
        "customer_phone": req.phone.strip(),
        "customer_address": req.address.strip(),
        "payment_method": method.value,
        "payment_status": "pending",
        "total_price": total,
        "user_id": user_id,
        "upi_id": upi_id if method in UPI_METHODS else None,
        "created_at": utcnow(),
    }
    active = select(OrderManagementSession.id).where(OrderManagementSession.status == "active")
    # Resolved inside the INSERT itself so the tag reflects the moment of insertion.
    if caps.order_session_tag:
        values["session_id"] = active.scalar_subquery()
    if caps.order_current_flag:
        values["is_current_order"] = active.exists()

    with storage_guard(s, "order creation"):
        active_session(s, lock=True)
        order_id = int(s.execute(insert(_orders).values(**values)).inserted_primary_key[0])
        try:
            s.execute(
                insert(OrderItem),
                [
                    {
                        "order_id": order_id,
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                        "price_at_time": Decimal(item.price).quantize(Decimal("0.01")),
                    }
                    for item in req.items
                ],
            )
        except IntegrityError:
            s.rollback()
            raise InvalidRequest("order references an unknown product")
        tag_cols = [c for c in order_columns(caps) if c.name in ("session_id", "is_current_order")]
        tags: dict[str, Any] = {}
        if tag_cols:
            tags = dict(s.execute(select(*tag_cols).where(_orders.c.id == order_id)).mappings().one())
        s.commit()

    number = numbering.format(order_id)
    resp: dict[str, Any] = {
        "ok": True,
        "order_id": order_id,
        "order_number": number,
        "payment_method": method.value,
        "payment_status": "pending",
        "total": _money(total),
        "session_id": tags.get("session_id"),
        "is_current_order": bool(tags.get("is_current_order") or False),
    }
    _log.info(
        "order created",
        extra={"order_id": order_id, "payment_method": method.value, "session_id": resp["session_id"]},
    )

    if method is PaymentMethod.CASH_ON_DELIVERY:
        resp["message"] = "Order placed. Payment pending, collect on delivery."
    elif method in UPI_METHODS:
        resp["upi_id"] = upi_id
        resp["merchant_upi_id"] = merchant_upi_id(s)
        resp["message"] = "Order placed. Complete the payment from your UPI app; it will be confirmed by the kitchen."
    else:
        try:
            charge = gateway.create_charge(total, order_id, notes={"order_number": number})
        except GatewayError as e:
            _log.error("gateway charge failed; order %s left pending", order_id, extra={"error": str(e)})
            raise UpstreamFailure(
                "payment gateway unavailable; the order was saved as pending",
                order_id=order_id,
                order_number=number,
            )
        try:
            with storage_guard(s, "gateway reference"):
                s.execute(update(_orders).where(_orders.c.id == order_id).values(gateway_order_id=charge.id))
                s.commit()
        except Internal:
            _log.error(
                "gateway order %s created but not recorded on order %s",
                charge.id,
                order_id,
                extra={"order_id": order_id, "gateway_order_id": charge.id},
            )
            raise Internal("payment started but could not be recorded", order_id=order_id)
        resp["gateway"] = {
            "gateway_order_id": charge.id,
            "amount": charge.amount_minor,
            "currency": charge.currency,
            "key_id": config.GATEWAY_KEY_ID,
        }
        resp["message"] = "Order placed. Complete the online payment to confirm it."
    return resp


def mark_paid(s: Session, order_id: int) -> dict[str, Any]:
    """pending -> paid, exactly once. The transition is a conditional update."""
    with storage_guard(s, "mark paid"):
        paid_at = utcnow()
        res = s.execute(
            update(_orders)
            .where(_orders.c.id == order_id, _orders.c.payment_status != "paid")
            .values(payment_status="paid", paid_at=paid_at)
        )
        if res.rowcount == 0:
            found = s.execute(select(_orders.c.id).where(_orders.c.id == order_id)).first()
            s.rollback()
            if found is None:
                raise NotFound("order not found", order_id=order_id)
            raise Conflict("order is already paid", order_id=order_id)
        s.commit()
    return {"ok": True, "order_id": order_id, "payment_status": "paid", "paid_at": isoformat_utc(paid_at)}


def _serialize_order(row: Mapping[str, Any], items: list[dict[str, Any]], numbering: OrderNumbering) -> dict[str, Any]:
    return {
        "id": row["id"],
        "order_number": numbering.format(row["id"]),
        "customer_name": row["customer_name"],
        "customer_phone": row["customer_phone"],
        "customer_address": row["customer_address"],
        "payment_method": row["payment_method"],
        "payment_status": row["payment_status"],
        "total_price": _money(row["total_price"]),
        "user_id": row["user_id"],
        "upi_id": row["upi_id"],
        "session_id": row.get("session_id"),
        "is_current_order": bool(row.get("is_current_order") or False),
        "gateway_order_id": row["gateway_order_id"],
        "gateway_payment_id": row["gateway_payment_id"],
        "paid_at": isoformat_utc(row["paid_at"]),
        "created_at": isoformat_utc(row["created_at"]),
        "items": items,
    }


def load_orders(
    s: Session,
    where: Iterable[Any] = (),
    limit: Optional[int] = None,
    numbering: Optional[OrderNumbering] = None,
) -> list[dict[str, Any]]:
    """Orders with their items, newest first. Only columns present on the running schema are read."""
    numbering = numbering or get_numbering()
    with storage_guard(s, "order listing"):
        stmt = select(*order_columns()).where(*where).order_by(_orders.c.created_at.desc(), _orders.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = s.execute(stmt).mappings().all()
        ids = [r["id"] for r in rows]
        by_order: dict[int, list[dict[str, Any]]] = {oid: [] for oid in ids}
        if ids:
            item_rows = s.execute(
                select(OrderItem, Product.name)
                .outerjoin(Product, Product.id == OrderItem.product_id)
                .where(OrderItem.order_id.in_(ids))
                .order_by(OrderItem.id)
            ).all()
            for item, product_name in item_rows:
                by_order[item.order_id].append(
                    {
                        "product_id": item.product_id,
                        "product_name": product_name,
                        "quantity": item.quantity,
                        # What the customer was charged, not today's catalog price.
                        "price_at_time": _money(item.price_at_time),
                    }
                )
    return [_serialize_order(r, by_order[r["id"]], numbering) for r in rows]


def product_quantities(s: Session, where: Iterable[Any] = ()) -> list[dict[str, Any]]:
    """Per-product quantity totals over the orders matching ``where``, largest first."""
    qty = func.sum(OrderItem.quantity).label("total_quantity")
    stmt = (
        select(
            OrderItem.product_id,
            Product.name,
            qty,
            func.count(distinct(_orders.c.id)).label("order_count"),
            func.count(distinct(_orders.c.customer_phone)).label("customer_count"),
        )
        .join(_orders, _orders.c.id == OrderItem.order_id)
        .outerjoin(Product, Product.id == OrderItem.product_id)
        .where(*where)
        .group_by(OrderItem.product_id, Product.name)
        .order_by(qty.desc(), OrderItem.product_id)
    )
    with storage_guard(s, "product report"):
        rows = s.execute(stmt).all()
    return [
        {
            "product_id": r.product_id,
            "name": r.name,
            "total_quantity": int(r.total_quantity or 0),
            "order_count": int(r.order_count or 0),
            "customer_count": int(r.customer_count or 0),
        }
        for r in rows
    ]


def order_totals(s: Session, where: Iterable[Any] = ()) -> dict[str, Any]:
    stmt = select(
        func.count(_orders.c.id),
        func.count(distinct(_orders.c.customer_phone)),
        func.coalesce(func.sum(_orders.c.total_price), 0),
    ).where(*where)
    with storage_guard(s, "order totals"):
        count, customers, revenue = s.execute(stmt).one()
    return {
        "total_orders": int(count or 0),
        "total_customers": int(customers or 0),
        "total_revenue": float(revenue or 0),
    }


def business_tz() -> ZoneInfo:
    try:
        return ZoneInfo(config.BUSINESS_TZ)
    except (ZoneInfoNotFoundError, ValueError):
        _log.warning("unknown BUSINESS_TZ %r; using UTC", config.BUSINESS_TZ)
        return ZoneInfo("UTC")


def day_bounds(first: date, last: date, tz: Optional[ZoneInfo] = None) -> tuple[datetime, datetime]:
    """UTC half-open interval covering local days ``first`` through ``last`` inclusive."""
    tz = tz or business_tz()
    start = datetime.combine(first, dtime.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(last + timedelta(days=1), dtime.min, tzinfo=tz).astimezone(timezone.utc)
    return start, end


def _parse_day(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be YYYY-MM-DD")


def _range_report(s: Session, first: date, last: date) -> dict[str, Any]:
    start, end = day_bounds(first, last)
    where = (_orders.c.created_at >= start, _orders.c.created_at < end)
    return {
        "from": first.isoformat(),
        "to": last.isoformat(),
        "timezone": config.BUSINESS_TZ,
        "products": product_quantities(s, where),
        **order_totals(s, where),
    }


@router.post("/orders")
def post_order(
    req: OrderCreate,
    s: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    customer: Optional[Customer] = Depends(optional_customer),
    numbering: OrderNumbering = Depends(get_numbering),
):
    return create_order(s, req, gateway, customer, numbering)


@router.get("/orders/mine")
def my_orders(customer: Customer = Depends(current_customer), s: Session = Depends(get_session)):
    return {"orders": load_orders(s, [_orders.c.user_id == customer.id])}


@router.get("/admin/orders")
def admin_orders(
    limit: int = Query(200, ge=1, le=1000),
    staff: Staff = Depends(current_staff),
    s: Session = Depends(get_session),
):
    return {"orders": load_orders(s, limit=limit)}


@router.get("/admin/orders/today")
def admin_orders_today(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    today = datetime.now(business_tz()).date()
    out = _range_report(s, today, today)
    out["date"] = today.isoformat()
    return out


@router.get("/admin/orders/range")
def admin_orders_range(
    from_: str = Query(..., alias="from"),
    to: str = Query(...),
    staff: Staff = Depends(current_staff),
    s: Session = Depends(get_session),
):
    first, last = _parse_day(from_, "from"), _parse_day(to, "to")
    if last < first:
        raise InvalidRequest("'to' must not be before 'from'")
    if (last - first).days > 366:
        raise InvalidRequest("range must not exceed one year")
    return _range_report(s, first, last)


@router.get("/admin/orders/reconciliation")
def admin_orders_reconciliation(staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    """Online orders whose gateway charge was never created."""
    orders = load_orders(
        s,
        [
            _orders.c.payment_method == PaymentMethod.GATEWAY_ONLINE.value,
            _orders.c.payment_status == "pending",
            _orders.c.gateway_order_id.is_(None),
        ],
    )
    return {"count": len(orders), "orders": orders}


@router.post("/admin/orders/{order_id}/mark-paid")
def admin_mark_paid(order_id: int, staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    out = mark_paid(s, order_id)
    audit("order_mark_paid", staff, order_id=order_id)
    return out


class GatewayVerifyReq(BaseModel):
    gateway_order_id: str = Field(validation_alias=AliasChoices("gateway_order_id", "razorpay_order_id"))
    payment_id: str = Field(validation_alias=AliasChoices("payment_id", "razorpay_payment_id"))
    signature: str = Field(validation_alias=AliasChoices("signature", "razorpay_signature"))


@router.post("/payments/gateway/verify")
def gateway_verify(
    req: GatewayVerifyReq,
    s: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    if not gateway.verify_signature(req.gateway_order_id, req.payment_id, req.signature):
        _log.warning("rejected gateway callback", extra={"gateway_order_id": req.gateway_order_id})
        raise InvalidRequest("invalid payment signature")
    with storage_guard(s, "gateway callback"):
        row = s.execute(
            select(_orders.c.id, _orders.c.payment_status, _orders.c.gateway_payment_id).where(
                _orders.c.gateway_order_id == req.gateway_order_id
            )
        ).first()
        if row is None:
            raise NotFound("no order for this gateway reference")
        res = s.execute(
            update(_orders)
            .where(_orders.c.id == row.id, _orders.c.payment_status != "paid")
            .values(payment_status="paid", paid_at=utcnow(), gateway_payment_id=req.payment_id)
        )
        s.commit()
    # Gateways retry callbacks; a repeat for an already-paid order is a no-op.
    already = res.rowcount == 0
    if not already:
        _log.info("order paid via gateway", extra={"order_id": row.id, "payment_id": req.payment_id})
    return {"ok": True, "order_id": row.id, "payment_status": "paid", "already_paid": already}


class UpiSettingsReq(BaseModel):
    upi_id: str


@router.get("/upi-settings")
def get_upi_settings(s: Session = Depends(get_session)):
    return {"upi_id": merchant_upi_id(s)}


@router.put("/admin/upi-settings")
def put_upi_settings(req: UpiSettingsReq, staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    upi_id = req.upi_id.strip()
    # UPI handles look like name@bank.
    if "@" not in upi_id or upi_id.startswith("@") or upi_id.endswith("@"):
        raise InvalidRequest("upi_id must look like name@bank")
    with storage_guard(s, "upi settings write"):
        row = s.execute(select(UpiSetting).order_by(UpiSetting.id.desc())).scalars().first()
        if row is None:
            row = UpiSetting(upi_id=upi_id)
            s.add(row)
        else:
            row.upi_id = upi_id
        s.commit()
        s.refresh(row)
    audit("upi_settings_updated", staff, upi_id=upi_id)
    return {"ok": True, "upi_id": row.upi_id, "updated_at": isoformat_utc(row.updated_at)}
