from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

from . import config

AUDIENCE_CUSTOMER = "customer"
AUDIENCE_STAFF = "staff"


class TokenError(Exception):
    pass


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(part: str) -> bytes:
    pad = "=" * (-len(part) % 4)
    return base64.urlsafe_b64decode(part + pad)


def _secret_for(audience: str) -> str:
    if audience == AUDIENCE_CUSTOMER:
        return config.JWT_SECRET
    if audience == AUDIENCE_STAFF:
        return config.ADMIN_JWT_SECRET
    raise TokenError("unknown audience")


def _sign(secret: str, msg: bytes) -> str:
    return _b64url(hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest())


def jwt_hs256(secret: str, payload: dict[str, Any]) -> str:
    """Minimal HS256 JWT encoder."""
    header = {"alg": "HS256", "typ": "JWT"}
    h = _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    p = _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    msg = f"{h}.{p}".encode("utf-8")
    return f"{h}.{p}.{_sign(secret, msg)}"


def issue_token(audience: str, subject: int, claims: dict[str, Any], ttl_secs: int | None = None) -> str:
    now = int(time.time())
    payload = dict(claims)
    payload.update(
        {
            "aud": audience,
            "sub": str(subject),
            "iat": now,
            "exp": now + int(ttl_secs if ttl_secs is not None else config.TOKEN_TTL_SECS),
        }
    )
    return jwt_hs256(_secret_for(audience), payload)


def decode_token(token: str, now: int | None = None) -> dict[str, Any]:
    """
    Decode a tagged token: the ``aud`` claim picks the signing secret, then
    the signature and expiry are checked. Raises TokenError on any failure.
    """
    parts = (token or "").split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenError("malformed token")
    h, p, sig = parts
    try:
        header = json.loads(_b64url_decode(h))
        payload = json.loads(_b64url_decode(p))
    except (ValueError, UnicodeDecodeError):
        raise TokenError("malformed token")
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise TokenError("unsupported algorithm")
    if not isinstance(payload, dict):
        raise TokenError("malformed token")
    secret = _secret_for(str(payload.get("aud") or ""))
    expected = _sign(secret, f"{h}.{p}".encode("utf-8"))
    if not hmac.compare_digest(expected, sig):
        raise TokenError("bad signature")
    exp = payload.get("exp")
    if not isinstance(exp, int) or exp < (now if now is not None else int(time.time())):
        raise TokenError("token expired")
    return payload


def hash_password(password: str, iterations: int | None = None) -> str:
    rounds = int(iterations or config.PASSWORD_HASH_ITERATIONS)
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return f"pbkdf2_sha256${rounds}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, rounds, salt, hexdigest = (stored or "").split("$", 3)
        iterations = int(rounds)
    except ValueError:
        return False
    if algo != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return hmac.compare_digest(digest.hex(), hexdigest)
