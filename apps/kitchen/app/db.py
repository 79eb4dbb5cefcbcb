from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    false,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from . import config
from .errors import Internal

_log = logging.getLogger("kitchen.db")

DB_SCHEMA = config.DB_SCHEMA


def _fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class Product(Base):
    # Catalog rows are maintained elsewhere; orders only reference them.
    __tablename__ = "products"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    available: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(Base):
    __tablename__ = "users"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password: Mapped[str] = mapped_column(String(255))
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    location: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    home_address: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    role: Mapped[str] = mapped_column(String(32), default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Admin(Base):
    __tablename__ = "admins"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password: Mapped[str] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_name: Mapped[str] = mapped_column(String(120))
    customer_phone: Mapped[str] = mapped_column(String(32), index=True)
    customer_address: Mapped[str] = mapped_column(String(512))
    payment_method: Mapped[str] = mapped_column(String(32))
    payment_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|paid
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, default=None)
    upi_id: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    session_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    # No Python-side default: inserts must not name this column on schemas that lack it.
    is_current_order: Mapped[bool] = mapped_column(Boolean, server_default=false())
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("orders.id")), index=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("products.id")))
    quantity: Mapped[int] = mapped_column(Integer)
    # Unit price copied at order time; never joined back to products.price.
    price_at_time: Mapped[Decimal] = mapped_column(Numeric(10, 2))


class OrderManagementSession(Base):
    __tablename__ = "order_management_sessions"
    __table_args__ = (
        Index(
            "uq_order_sessions_single_active",
            "status",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        {"schema": DB_SCHEMA} if DB_SCHEMA else {},
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|stopped
    created_by: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class OtpRecordRow(Base):
    __tablename__ = "otp_records"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    email: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    code: Mapped[str] = mapped_column(String(6))
    issued_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[float] = mapped_column(Float, index=True)
    payload: Mapped[str] = mapped_column(Text)


class UpiSetting(Base):
    __tablename__ = "upi_settings"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upi_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)


engine = make_engine(config.DB_URL)


def get_session() -> Iterator[Session]:
    with Session(engine) as s:
        yield s


@contextmanager
def storage_guard(s: Optional[Session], action: str) -> Iterator[None]:
    """
    Component boundary for storage access: driver errors are rolled back,
    logged with their stack, and re-raised as a generic ``Internal``.
    """
    try:
        yield
    except SQLAlchemyError:
        if s is not None:
            s.rollback()
        _log.exception("storage failure during %s", action)
        raise Internal("storage error")


def is_sqlite(bind) -> bool:
    return bind.dialect.name == "sqlite"


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional orders columns that the running schema actually has."""

    order_session_tag: bool = True  # orders.session_id
    order_current_flag: bool = True  # orders.is_current_order


_CAPABILITIES = SchemaCapabilities()


def get_capabilities() -> SchemaCapabilities:
    return _CAPABILITIES


def detect_capabilities(bind) -> SchemaCapabilities:
    insp = inspect(bind)
    cols = {c["name"] for c in insp.get_columns("orders", schema=DB_SCHEMA)}
    return SchemaCapabilities(
        order_session_tag="session_id" in cols,
        order_current_flag="is_current_order" in cols,
    )


# Columns added to orders after the first deployments.
_ORDER_COLUMN_DDL = {
    "payment_status": "VARCHAR(20) DEFAULT 'pending'",
    "user_id": "INTEGER",
    "upi_id": "VARCHAR(255)",
    "session_id": "INTEGER",
    "is_current_order": "BOOLEAN DEFAULT FALSE",
    "gateway_order_id": "VARCHAR(64)",
    "gateway_payment_id": "VARCHAR(64)",
    "paid_at": "TIMESTAMP",
}


def _ensure_order_columns(bind) -> None:
    table = f"{DB_SCHEMA}.orders" if DB_SCHEMA else "orders"
    cols = {c["name"] for c in inspect(bind).get_columns("orders", schema=DB_SCHEMA)}
    for name, ddl in _ORDER_COLUMN_DDL.items():
        if name in cols:
            continue
        try:
            with bind.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
            _log.info("added orders.%s", name)
        except SQLAlchemyError:
            # Startup must not fail on a read-only or foreign-owned schema;
            # capability detection below reports what is missing.
            _log.warning("could not add orders.%s", name, exc_info=True)


def _ensure_single_active_index(bind) -> None:
    # create_all() skips indexes on tables that already exist.
    for idx in OrderManagementSession.__table__.indexes:
        try:
            with bind.begin() as conn:
                idx.create(conn, checkfirst=True)
        except SQLAlchemyError:
            _log.error("could not create index %s; more than one active session?", idx.name, exc_info=True)


def ensure_schema(bind=None) -> SchemaCapabilities:
    global _CAPABILITIES
    target = bind if bind is not None else engine
    Base.metadata.create_all(target)
    _ensure_order_columns(target)
    _ensure_single_active_index(target)
    _CAPABILITIES = detect_capabilities(target)
    if not _CAPABILITIES.order_current_flag:
        _log.warning("orders.is_current_order missing; session stop will not sweep orders")
    if not _CAPABILITIES.order_session_tag:
        _log.warning("orders.session_id missing; orders will not be tagged with sessions")
    return _CAPABILITIES


def active_session(s: Session, lock: bool = False) -> Optional[OrderManagementSession]:
    """
    The single active session, if any. With ``lock`` the row is read FOR
    SHARE (skipped on SQLite, whose writers are serialized anyway) so a
    concurrent stop cannot commit in the middle of the caller's transaction.
    """
    stmt = select(OrderManagementSession).where(OrderManagementSession.status == "active")
    if lock and not is_sqlite(s.get_bind()):
        stmt = stmt.with_for_update(read=True)
    return s.execute(stmt.order_by(OrderManagementSession.id.desc())).scalars().first()


def order_columns(caps: Optional[SchemaCapabilities] = None) -> list:
    """Orders columns safe to select on the running schema."""
    caps = caps or get_capabilities()
    skip = set()
    if not caps.order_session_tag:
        skip.add("session_id")
    if not caps.order_current_flag:
        skip.add("is_current_order")
    return [c for c in Order.__table__.c if c.name not in skip]
