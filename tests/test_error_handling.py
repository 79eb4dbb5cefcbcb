from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import apps.kitchen.app.config as config  # type: ignore[import]
import apps.kitchen.app.db as db  # type: ignore[import]
import apps.kitchen.app.orders as orders  # type: ignore[import]
from apps.kitchen.app.main import app
from kitchen_shared import get_request_id
from kitchen_shared.cors import parse_origins
from kitchen_shared.logging import JsonFormatter

from conftest import cod_order


def test_validation_errors_use_taxonomy(client):
    r = client.post("/login", json={"email": "a@example.com"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "invalid_request"
    assert "password" in body["detail"]
    assert body["request_id"]


def test_unknown_route_is_not_found(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_request_id_is_propagated(client):
    r = client.get("/upi-settings", headers={"X-Request-ID": "tablet-42"})
    assert r.headers["X-Request-ID"] == "tablet-42"

    r = client.post("/orders", json=cod_order(phone=""), headers={"X-Request-ID": "tablet-43"})
    assert r.json()["request_id"] == "tablet-43"


def test_storage_errors_never_leak_driver_text(tmp_path):
    # No tables: every query fails inside the driver.
    bare = db.make_engine(f"sqlite+pysqlite:///{tmp_path / 'empty.db'}")
    factory = sessionmaker(bind=bare)

    def _get_session():
        with factory() as s:
            yield s

    app.dependency_overrides[db.get_session] = _get_session
    try:
        r = TestClient(app).get("/upi-settings")
    finally:
        app.dependency_overrides.clear()
        bare.dispose()
    assert r.status_code == 500
    body = r.json()
    assert body["code"] == "internal"
    assert body["detail"] == "storage error"
    assert "no such table" not in r.text


def test_http_5xx_details_are_scrubbed_in_prod(client, monkeypatch):
    monkeypatch.setenv("ENV", "prod")

    def _boom(*args, **kwargs):
        raise RuntimeError("postgres://kitchen:hunter2@db/kitchen unreachable")

    monkeypatch.setattr(orders, "create_order", _boom)
    r = TestClient(app, raise_server_exceptions=False).post("/orders", json=cod_order())
    assert r.status_code == 500
    body = r.json()
    assert body["detail"] == "internal error"
    assert "hunter2" not in r.text
    assert body.get("request_id")


def test_upstream_failure_keeps_order_id_in_prod(client, gateway, monkeypatch):
    monkeypatch.setenv("ENV", "prod")
    gateway.fail = True
    r = client.post("/orders", json=cod_order(payment_method="gateway_online"))
    assert r.status_code == 502
    body = r.json()
    assert body["detail"] == "internal error"
    assert isinstance(body["order_id"], int)
    assert "order_number" not in body


def test_client_errors_are_not_scrubbed_in_prod(client, monkeypatch):
    monkeypatch.setenv("ENV", "prod")
    r = client.post("/orders", json=cod_order(payment_method="upi_gpay"))
    assert r.status_code == 400
    assert "upi_id" in r.json()["detail"]


def test_health_reports_db(client):
    j = client.get("/health").json()
    assert j["status"] == "ok"
    assert j["checks"] == {"db": True}
    assert j["service"] == "Kitchen API"


def test_insecure_secrets_fail_fast_outside_dev(monkeypatch):
    monkeypatch.setattr(config, "ENV", "prod")
    with pytest.raises(RuntimeError):
        config.enforce_secret_baseline()

    monkeypatch.setattr(config, "JWT_SECRET", "a" * 32)
    monkeypatch.setattr(config, "ADMIN_JWT_SECRET", "a" * 32)
    with pytest.raises(RuntimeError):
        config.enforce_secret_baseline()

    monkeypatch.setattr(config, "ADMIN_JWT_SECRET", "b" * 32)
    config.enforce_secret_baseline()


def test_unhandled_500_keeps_caller_request_id(client, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(orders, "create_order", _boom)
    r = TestClient(app, raise_server_exceptions=False).post(
        "/orders", json=cod_order(), headers={"X-Request-ID": "rid-123"}
    )
    assert r.status_code == 500
    assert r.json()["request_id"] == "rid-123"
    assert r.headers["X-Request-ID"] == "rid-123"


def test_request_id_is_blank_outside_requests():
    assert get_request_id() == ""
    # Reading it must not leave an id behind for later log lines.
    assert get_request_id() == ""
    record = logging.LogRecord("kitchen.test", logging.INFO, __file__, 1, "startup", None, None)
    assert json.loads(JsonFormatter().format(record))["request_id"] == ""


def test_cors_origin_parsing():
    assert parse_origins("https://shop.example.com/, https://shop.example.com,https://kds.example.com") == (
        ["https://shop.example.com", "https://kds.example.com"],
        True,
    )
    assert parse_origins("https://shop.example.com,*") == (["*"], False)
    origins, credentials = parse_origins("")
    assert origins and all(o.startswith("http://") for o in origins)
    assert credentials is True


def test_cors_preflight_allows_api_headers(client):
    r = client.options(
        "/orders",
        headers={
            "Origin": "https://shop.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization, X-Request-ID",
        },
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"
    assert "DELETE" not in r.headers["access-control-allow-methods"]
