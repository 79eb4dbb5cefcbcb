from __future__ import annotations

import os
from typing import Callable

from fastapi import FastAPI


def add_standard_health(app: FastAPI, env_key: str = "ENV", checks: dict[str, Callable[[], bool]] | None = None):
    """
    Mount GET /health. Optional ``checks`` are named checks (e.g. database
    ping); a failing or raising check flips status to "degraded".
    """

    @app.get("/health")
    def _health():
        results: dict[str, bool] = {}
        for name, check in (checks or {}).items():
            try:
                results[name] = bool(check())
            except Exception:
                results[name] = False
        ok = all(results.values()) if results else True
        return {
            "status": "ok" if ok else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
