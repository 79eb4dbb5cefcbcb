from __future__ import annotations

import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


ENV = _env_or("ENV", "dev").lower()

DB_URL = _env_or("KITCHEN_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/kitchen.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

# Token signing. Customers and staff are issued by different login flows and
# must never share a secret.
JWT_SECRET = _env_or("JWT_SECRET", "change-me-customer")
ADMIN_JWT_SECRET = _env_or("ADMIN_JWT_SECRET", "change-me-staff")
TOKEN_TTL_SECS = int(_env_or("TOKEN_TTL_SECS", "86400"))
# Customer-directory roles that are issued staff tokens at login.
ELEVATED_ROLES = {r.strip() for r in _env_or("ELEVATED_ROLES", "admin").split(",") if r.strip()}

OTP_TTL_SECS = int(_env_or("OTP_TTL_SECS", "300"))
OTP_STORE = _env_or("OTP_STORE", "memory").lower()  # memory|db
OTP_PRUNE_INTERVAL_SECS = int(_env_or("OTP_PRUNE_INTERVAL_SECS", "60"))
_AUTH_EXPOSE_DEFAULT = "true" if ENV in ("dev", "test") else "false"
# Whether OTP codes are echoed in responses (dev/test only).
AUTH_EXPOSE_CODES = _env_or("AUTH_EXPOSE_CODES", _AUTH_EXPOSE_DEFAULT).lower() == "true"

PASSWORD_HASH_ITERATIONS = int(_env_or("PASSWORD_HASH_ITERATIONS", "240000"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(_env_or("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_FROM = _env_or("SMTP_FROM", SMTP_USER)
SMTP_TIMEOUT_SECS = float(_env_or("SMTP_TIMEOUT_SECS", "10"))
BRAND_NAME = _env_or("BRAND_NAME", "Lakshmi's Kitchen")

GATEWAY_BASE_URL = _env_or("GATEWAY_BASE_URL", "https://api.razorpay.com")
GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID", "")
GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "")
GATEWAY_CURRENCY = _env_or("GATEWAY_CURRENCY", "INR")
GATEWAY_TIMEOUT_SECS = float(_env_or("GATEWAY_TIMEOUT_SECS", "10"))

ORDER_NUMBER_WIDTH = int(_env_or("ORDER_NUMBER_WIDTH", "4"))
BUSINESS_TZ = _env_or("BUSINESS_TZ", "Asia/Kolkata")

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")


def is_prod_env() -> bool:
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")


def enforce_secret_baseline() -> None:
    """
    Fail fast outside dev/test when a signing secret is left at its insecure
    default, so forged tokens cannot be minted with a guessable key.
    """
    if ENV in ("dev", "test"):
        return
    weak = [
        name
        for name, value in (("JWT_SECRET", JWT_SECRET), ("ADMIN_JWT_SECRET", ADMIN_JWT_SECRET))
        if value.startswith("change-me")
    ]
    if weak:
        raise RuntimeError(f"{', '.join(weak)} must be set in non-dev environments")
    if JWT_SECRET == ADMIN_JWT_SECRET:
        raise RuntimeError("JWT_SECRET and ADMIN_JWT_SECRET must differ")
