from __future__ import annotations

import hashlib
import hmac
import os
import tempfile
from decimal import Decimal
from typing import Optional

os.environ.setdefault("ENV", "test")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")
os.environ.setdefault(
    "KITCHEN_DB_URL", f"sqlite+pysqlite:///{os.path.join(tempfile.mkdtemp(), 'kitchen-import.db')}"
)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import apps.kitchen.app.db as db  # type: ignore[import]
from apps.kitchen.app.gateway import GatewayError, PaymentGateway, RemoteCharge, get_gateway, to_minor_units
from apps.kitchen.app.mailer import MailError, Mailer
from apps.kitchen.app.main import app
from apps.kitchen.app.otp import InMemoryOtpStore, OtpWorkflow, get_otp_workflow
from apps.kitchen.app.security import AUDIENCE_CUSTOMER, AUDIENCE_STAFF, hash_password, issue_token


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class FakeMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send_code(self, to: str, code: str, purpose: str, name: Optional[str] = None) -> None:
        if self.fail:
            raise MailError("smtp down")
        self.sent.append((to, code, purpose))

    def last_code(self, to: str) -> str:
        return [code for addr, code, _ in self.sent if addr == to][-1]


class FakeGateway(PaymentGateway):
    secret = "gateway-test-secret"

    def __init__(self) -> None:
        self.charges: list[tuple[Decimal, int]] = []
        self.fail = False

    def create_charge(self, amount, order_id, notes=None) -> RemoteCharge:
        if self.fail:
            raise GatewayError("gateway unreachable")
        self.charges.append((amount, order_id))
        return RemoteCharge(id=f"order_gw_{order_id}", amount_minor=to_minor_units(amount), currency="INR")

    def sign(self, gateway_order_id: str, payment_id: str) -> str:
        msg = f"{gateway_order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return hmac.compare_digest(self.sign(gateway_order_id, payment_id), signature)


@pytest.fixture()
def engine(tmp_path):
    eng = db.make_engine(f"sqlite+pysqlite:///{tmp_path / 'kitchen.db'}")
    db.ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def workflow(mailer, clock):
    return OtpWorkflow(InMemoryOtpStore(), mailer, clock=clock, ttl_secs=300)


@pytest.fixture()
def client(session_factory, mailer, gateway, workflow):
    def _get_session():
        with session_factory() as s:
            yield s

    app.dependency_overrides[db.get_session] = _get_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_otp_workflow] = lambda: workflow
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def make_admin(session_factory, username: str = "owner", email: str = "owner@example.com", password: str = "secret123"):
    with session_factory() as s:
        admin = db.Admin(username=username, email=email, password=hash_password(password))
        s.add(admin)
        s.commit()
        return admin


def make_user(
    session_factory,
    email: str = "asha@example.com",
    password: str = "secret123",
    role: str = "user",
    name: str = "Asha",
):
    with session_factory() as s:
        user = db.User(name=name, email=email, password=hash_password(password), role=role)
        s.add(user)
        s.commit()
        return user


def staff_token_for(admin) -> str:
    return issue_token(AUDIENCE_STAFF, admin.id, {"email": admin.email, "username": admin.username})


def customer_token_for(user) -> str:
    return issue_token(AUDIENCE_CUSTOMER, user.id, {"email": user.email, "role": user.role})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin(session_factory):
    return make_admin(session_factory)


@pytest.fixture()
def staff_headers(admin):
    return bearer(staff_token_for(admin))


@pytest.fixture()
def customer(session_factory):
    return make_user(session_factory)


@pytest.fixture()
def customer_headers(customer):
    return bearer(customer_token_for(customer))


def cod_order(**overrides) -> dict:
    body = {
        "customer_name": "Ravi",
        "phone": "9876543210",
        "address": "12 MG Road",
        "payment_method": "cash_on_delivery",
        "items": [{"product_id": 1, "quantity": 2, "price": "120.00"}],
        "total": "240.00",
    }
    body.update(overrides)
    return body