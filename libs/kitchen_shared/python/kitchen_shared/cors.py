from __future__ import annotations

import logging
from typing import Iterable

from fastapi.middleware.cors import CORSMiddleware

_log = logging.getLogger("kitchen_shared.cors")

# Storefront and kitchen dashboard dev servers.
DEV_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")

# The API only speaks JSON with bearer tokens; tablets echo the request id.
API_METHODS = ("GET", "POST", "PUT", "OPTIONS")
API_HEADERS = ("Authorization", "Content-Type", "X-Request-ID")


def parse_origins(allowed: str | Iterable[str] | None) -> tuple[list[str], bool]:
    """
    Split an ``ALLOWED_ORIGINS`` value into ``(origins, allow_credentials)``.

    Origins are de-duplicated with trailing slashes removed. A ``*`` anywhere
    collapses the list to the wildcard, which browsers refuse to combine with
    credentials.
    """
    items = allowed.split(",") if isinstance(allowed, str) else list(allowed or ())
    origins: list[str] = []
    for raw in items:
        origin = str(raw).strip().rstrip("/")
        if origin and origin not in origins:
            origins.append(origin)
    if not origins:
        return list(DEV_ORIGINS), True
    if "*" in origins:
        return ["*"], False
    return origins, True


def configure_cors(app, allowed: str | Iterable[str] | None, env: str = "dev") -> list[str]:
    origins, allow_credentials = parse_origins(allowed)
    if origins == ["*"] and env.lower() not in ("dev", "test"):
        _log.warning("CORS allows any origin in %s; set ALLOWED_ORIGINS to the storefront hosts", env)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=list(API_METHODS),
        allow_headers=list(API_HEADERS),
        expose_headers=["X-Request-ID"],
    )
    return origins
