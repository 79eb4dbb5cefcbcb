from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .db import Admin, User, get_session, storage_guard
from .errors import Conflict, Forbidden, InvalidRequest, Unauthenticated
from .security import AUDIENCE_CUSTOMER, AUDIENCE_STAFF, TokenError, decode_token, issue_token, verify_password

_log = logging.getLogger("kitchen.auth")
_audit_logger = logging.getLogger("kitchen.audit")

router = APIRouter()


@dataclass(frozen=True)
class Customer:
    id: int
    email: str
    role: str


@dataclass(frozen=True)
class Staff:
    id: int
    email: str
    username: str
    # Customer account with an elevated role, not a row in the staff directory.
    elevated: bool = False


Principal = Union[Customer, Staff]


def audit(action: str, principal: Optional[Principal] = None, **extra: Any) -> None:
    """
    Structured audit entry for staff actions, written into the JSON log
    stream under the ``kitchen.audit`` logger.
    """
    payload: dict[str, Any] = {
        "event": "audit",
        "action": action,
        "actor": principal.email if principal else "",
        "ts_ms": int(time.time() * 1000),
    }
    for k, v in extra.items():
        if v is not None:
            payload[k] = v
    _audit_logger.info(payload)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _principal_from_claims(claims: dict[str, Any]) -> Principal:
    try:
        pid = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise Unauthenticated("malformed token")
    email = str(claims.get("email") or "")
    aud = claims.get("aud")
    if aud == AUDIENCE_CUSTOMER:
        return Customer(id=pid, email=email, role=str(claims.get("role") or "user"))
    if aud == AUDIENCE_STAFF:
        return Staff(
            id=pid,
            email=email,
            username=str(claims.get("username") or ""),
            elevated=claims.get("role") in config.ELEVATED_ROLES,
        )
    raise Unauthenticated("malformed token")


def resolve_any_principal(token: str) -> Principal:
    try:
        claims = decode_token(token)
    except TokenError as e:
        raise Unauthenticated(str(e))
    return _principal_from_claims(claims)


def resolve_staff_principal(token: str, s: Session) -> Staff:
    principal = resolve_any_principal(token)
    if not isinstance(principal, Staff):
        raise Forbidden("staff token required")
    if principal.elevated:
        return principal
    # Revocation: a deleted staff record invalidates its tokens before expiry.
    with storage_guard(s, "staff lookup"):
        admin = s.get(Admin, principal.id)
    if admin is None or normalize_email(admin.email) != normalize_email(principal.email):
        _log.info("rejected token for missing staff id=%s", principal.id)
        raise Forbidden("staff account not found")
    return principal


def bearer_token(request: Request) -> Optional[str]:
    raw = (request.headers.get("authorization") or "").strip()
    if not raw:
        return None
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("malformed authorization header")
    return token.strip()


def current_principal(request: Request) -> Principal:
    token = bearer_token(request)
    if not token:
        raise Unauthenticated("missing bearer token")
    return resolve_any_principal(token)


def current_customer(request: Request) -> Customer:
    principal = current_principal(request)
    if not isinstance(principal, Customer):
        raise Forbidden("customer token required")
    return principal


def optional_customer(request: Request) -> Optional[Customer]:
    token = bearer_token(request)
    if not token:
        return None
    principal = resolve_any_principal(token)
    return principal if isinstance(principal, Customer) else None


def current_staff(request: Request, s: Session = Depends(get_session)) -> Staff:
    token = bearer_token(request)
    if not token:
        raise Unauthenticated("missing bearer token")
    return resolve_staff_principal(token, s)


class LoginReq(BaseModel):
    email: str
    password: str


def _staff_token(admin: Admin) -> str:
    return issue_token(AUDIENCE_STAFF, admin.id, {"email": normalize_email(admin.email), "username": admin.username})


def _customer_tokens(user: User) -> dict[str, Any]:
    email = normalize_email(user.email)
    out: dict[str, Any] = {"token": issue_token(AUDIENCE_CUSTOMER, user.id, {"email": email, "role": user.role})}
    if user.role in config.ELEVATED_ROLES:
        out["staff_token"] = issue_token(
            AUDIENCE_STAFF, user.id, {"email": email, "username": user.name, "role": user.role}
        )
    return out


@router.post("/login")
def login(req: LoginReq, s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    if not email or not req.password:
        raise InvalidRequest("email and password required")
    with storage_guard(s, "login"):
        admin = s.execute(select(Admin).where(Admin.email == email)).scalars().first()
        user = None if admin else s.execute(select(User).where(User.email == email)).scalars().first()
    if admin is not None:
        if not verify_password(req.password, admin.password):
            raise InvalidRequest("invalid credentials")
        return {
            "token": _staff_token(admin),
            "user_type": "admin",
            "admin": {"id": admin.id, "email": admin.email, "username": admin.username},
        }
    if user is None or not verify_password(req.password, user.password):
        raise InvalidRequest("invalid credentials")
    out = _customer_tokens(user)
    out["user_type"] = "user"
    out["user"] = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone_number": user.phone_number,
        "location": user.location,
        "home_address": user.home_address,
        "role": user.role,
    }
    return out


@router.get("/me")
def me(principal: Principal = Depends(current_principal)):
    if isinstance(principal, Staff):
        return {"type": "staff", "id": principal.id, "email": principal.email, "username": principal.username}
    return {"type": "customer", "id": principal.id, "email": principal.email, "role": principal.role}


class StaffProfileReq(BaseModel):
    username: str
    email: str
    name: Optional[str] = None
    phone_number: Optional[str] = None


def update_staff_profile(s: Session, staff: Staff, req: StaffProfileReq) -> Admin:
    """
    Rewrite the caller's directory entry. The update is conditional on the
    email the token was issued for, so a token outlived by an earlier email
    change cannot rewrite the record.
    """
    if staff.elevated:
        raise Forbidden("only staff directory accounts have a profile")
    username = (req.username or "").strip()
    email = normalize_email(req.email)
    if not username or not email:
        raise InvalidRequest("username and email required")
    with storage_guard(s, "staff profile update"):
        if s.execute(select(User.id).where(User.email == email)).first():
            raise Conflict("email or username already exists")
        try:
            res = s.execute(
                update(Admin)
                .where(Admin.id == staff.id, Admin.email == staff.email)
                .values(
                    username=username,
                    email=email,
                    name=(req.name or "").strip() or None,
                    phone_number=(req.phone_number or "").strip() or None,
                )
            )
            if res.rowcount != 1:
                s.rollback()
                raise Forbidden("staff account not found")
            s.commit()
        except IntegrityError:
            s.rollback()
            raise Conflict("email or username already exists")
        admin = s.get(Admin, staff.id, populate_existing=True)
    if admin is None:
        raise Forbidden("staff account not found")
    return admin


@router.put("/admin/profile")
def put_staff_profile(req: StaffProfileReq, staff: Staff = Depends(current_staff), s: Session = Depends(get_session)):
    admin = update_staff_profile(s, staff, req)
    audit("staff_profile_updated", staff, new_email=admin.email, username=admin.username)
    return {
        "token": _staff_token(admin),
        "admin": {
            "id": admin.id,
            "username": admin.username,
            "name": admin.name,
            "email": admin.email,
            "phone_number": admin.phone_number,
        },
    }
