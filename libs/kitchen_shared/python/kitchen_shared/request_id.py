from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id(request: Optional[Request] = None) -> str:
    """
    Id of the request being served, or ``""`` outside of one.

    Handlers that run after the middleware has unwound (Starlette's outermost
    500 handler) must pass ``request``: the id is also kept in request state,
    which outlives the context variable.
    """
    if request is not None:
        rid = getattr(request.state, "request_id", "")
        if rid:
            return rid
    return _rid_ctx.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        # Clients may pass their own id (max 64 chars) so kitchen tablets can
        # correlate retries; anything else gets a fresh one.
        incoming = (request.headers.get(self.header_name) or "").strip()
        rid = incoming[:64] if incoming else uuid.uuid4().hex
        request.state.request_id = rid
        token = _rid_ctx.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            _rid_ctx.reset(token)
        response.headers.setdefault(self.header_name, rid)
        return response
