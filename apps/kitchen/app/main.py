from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text

from kitchen_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging

from . import config
from . import db as _db
from .auth import router as auth_router
from .errors import install_error_handlers
from .order_sessions import router as sessions_router
from .orders import router as orders_router
from .otp import router as otp_router

_log = logging.getLogger("kitchen")


def on_startup() -> None:
    config.enforce_secret_baseline()
    caps = _db.ensure_schema()
    _log.info(
        "kitchen api ready",
        extra={"env": config.ENV, "otp_store": config.OTP_STORE, "capabilities": caps.__dict__},
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    on_startup()
    try:
        yield
    finally:
        _db.engine.dispose()


def _db_ping() -> bool:
    with _db.engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


app = FastAPI(title="Kitchen API", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, config.ALLOWED_ORIGINS, env=config.ENV)
install_error_handlers(app)
add_standard_health(app, checks={"db": _db_ping})

app.include_router(auth_router)
app.include_router(otp_router)
app.include_router(orders_router)
app.include_router(sessions_router)
