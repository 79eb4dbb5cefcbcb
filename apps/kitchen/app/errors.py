from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from kitchen_shared import get_request_id

from . import config

_log = logging.getLogger("kitchen.errors")


class KitchenError(Exception):
    """
    Base for every failure the API reports on purpose. ``code`` is the stable
    machine-readable taxonomy value; ``extra`` is merged into the response body.
    """

    status_code = 500
    code = "internal"
    default_message = "internal error"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = {k: v for k, v in extra.items() if v is not None}
        super().__init__(self.message)


class InvalidRequest(KitchenError):
    status_code = 400
    code = "invalid_request"
    default_message = "invalid request"


class InvalidCode(InvalidRequest):
    code = "invalid_code"
    default_message = "invalid code"


class Unauthenticated(KitchenError):
    status_code = 401
    code = "unauthenticated"
    default_message = "unauthenticated"


class Forbidden(KitchenError):
    status_code = 403
    code = "forbidden"
    default_message = "forbidden"


class NotFound(KitchenError):
    status_code = 404
    code = "not_found"
    default_message = "not found"


class Conflict(KitchenError):
    status_code = 409
    code = "conflict"
    default_message = "conflict"


class Expired(KitchenError):
    status_code = 410
    code = "expired"
    default_message = "expired"


class UpstreamFailure(KitchenError):
    status_code = 502
    code = "upstream_failure"
    default_message = "upstream service failed"


class Internal(KitchenError):
    pass


_HTTP_CODES = {
    400: "invalid_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "invalid_request",
    409: "conflict",
    410: "expired",
}


def _payload(
    request: Request, status_code: int, code: str, detail: Any, extra: dict[str, Any] | None = None
) -> dict[str, Any]:
    if config.is_prod_env() and status_code >= 500:
        # Implementation details stay in the logs.
        detail = "internal error"
        extra = {k: v for k, v in (extra or {}).items() if k == "order_id"}
    body: dict[str, Any] = {"code": code, "detail": detail}
    body.update(extra or {})
    body["request_id"] = get_request_id(request)
    return body


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(KitchenError)
    async def _kitchen_error_handler(request: Request, exc: KitchenError):
        if exc.status_code >= 500:
            _log.error("%s: %s", exc.code, exc.message, extra={"path": request.url.path})
        return JSONResponse(
            status_code=exc.status_code,
            content=_payload(request, exc.status_code, exc.code, exc.message, exc.extra),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(
            status_code=400,
            content=_payload(request, 400, InvalidRequest.code, "; ".join(problems) or "invalid request"),
        )

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        status = int(getattr(exc, "status_code", 500) or 500)
        code = _HTTP_CODES.get(status, "internal" if status >= 500 else "invalid_request")
        return JSONResponse(status_code=status, content=_payload(request, status, code, exc.detail))

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error_handler(request: Request, exc: SQLAlchemyError):
        # Raw driver text can leak schema details; never forward it.
        _log.exception("storage error", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content=_payload(request, 500, Internal.code, "storage error"))

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        # Runs from Starlette's outermost middleware, after RequestIDMiddleware
        # has unwound: the id comes from request state and the header is set here.
        rid = get_request_id(request)
        _log.exception("unhandled exception", extra={"path": request.url.path, "request_id": rid})
        return JSONResponse(
            status_code=500,
            content=_payload(request, 500, Internal.code, str(exc) or "internal error"),
            headers={"X-Request-ID": rid} if rid else None,
        )
