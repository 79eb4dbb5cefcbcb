from __future__ import annotations

import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from . import db as _db
from .auth import Staff, audit, current_staff, normalize_email
from .db import Admin, OtpRecordRow, User, get_session, storage_guard
from .errors import Conflict, Expired, Internal, InvalidCode, InvalidRequest, NotFound, UpstreamFailure
from .mailer import MailError, Mailer, get_mailer
from .security import hash_password

_log = logging.getLogger("kitchen.otp")

router = APIRouter()

MIN_PASSWORD_LEN = 6


class WorkflowKind(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"


@dataclass
class OtpRecord:
    code: str
    issued_at: float
    expires_at: float
    payload: dict[str, Any] = field(default_factory=dict)


# (email, workflow kind): customer and staff registrations never share a slot.
OtpKey = tuple[str, str]


class OtpStore:
    """
    Keyed store for pending codes. ``take`` is compare-and-delete: it only
    removes (and returns) the record if it is still the one the caller read.
    """

    def put(self, key: OtpKey, record: OtpRecord) -> None:
        raise NotImplementedError

    def get(self, key: OtpKey) -> Optional[OtpRecord]:
        raise NotImplementedError

    def take(self, key: OtpKey, expected: OtpRecord) -> Optional[OtpRecord]:
        raise NotImplementedError

    def prune(self, now: float) -> int:
        raise NotImplementedError


class InMemoryOtpStore(OtpStore):
    def __init__(self) -> None:
        self._records: dict[OtpKey, OtpRecord] = {}
        self._lock = threading.Lock()

    def put(self, key: OtpKey, record: OtpRecord) -> None:
        with self._lock:
            self._records[key] = record

    def get(self, key: OtpKey) -> Optional[OtpRecord]:
        with self._lock:
            return self._records.get(key)

    def take(self, key: OtpKey, expected: OtpRecord) -> Optional[OtpRecord]:
        with self._lock:
            current = self._records.get(key)
            if current is None or current.code != expected.code or current.issued_at != expected.issued_at:
                return None
            del self._records[key]
            return current

    def prune(self, now: float) -> int:
        with self._lock:
            expired = [k for k, rec in self._records.items() if rec.expires_at < now]
            for k in expired:
                del self._records[k]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class DatabaseOtpStore(OtpStore):
    """Codes in the otp_records table, so they survive restarts and are shared across workers."""

    def __init__(self, bind: Engine) -> None:
        self.bind = bind

    def put(self, key: OtpKey, record: OtpRecord) -> None:
        email, kind = key
        row = OtpRecordRow(
            email=email,
            kind=kind,
            code=record.code,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            payload=json.dumps(record.payload),
        )
        for attempt in (1, 2):
            with Session(self.bind) as s:
                try:
                    s.merge(row)
                    s.commit()
                    return
                except IntegrityError:
                    # A concurrent issue inserted first; merge again updates it.
                    s.rollback()
                    if attempt == 2:
                        raise

    def get(self, key: OtpKey) -> Optional[OtpRecord]:
        with Session(self.bind) as s:
            row = s.get(OtpRecordRow, key)
            if row is None:
                return None
            return OtpRecord(
                code=row.code,
                issued_at=row.issued_at,
                expires_at=row.expires_at,
                payload=json.loads(row.payload or "{}"),
            )

    def take(self, key: OtpKey, expected: OtpRecord) -> Optional[OtpRecord]:
        email, kind = key
        with Session(self.bind) as s:
            res = s.execute(
                delete(OtpRecordRow).where(
                    OtpRecordRow.email == email,
                    OtpRecordRow.kind == kind,
                    OtpRecordRow.code == expected.code,
                    OtpRecordRow.issued_at == expected.issued_at,
                )
            )
            s.commit()
            return expected if res.rowcount == 1 else None

    def prune(self, now: float) -> int:
        with Session(self.bind) as s:
            res = s.execute(delete(OtpRecordRow).where(OtpRecordRow.expires_at < now))
            s.commit()
            return int(res.rowcount or 0)


@dataclass
class IssuedCode:
    code: str
    expires_at: float
    delivered: bool


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class OtpWorkflow:
    """
    Two-phase account creation: ``issue_code`` parks the pending account
    under (email, kind) and mails a code; ``verify_code`` materializes it.
    No account row exists until a code has been verified.
    """

    def __init__(
        self,
        store: OtpStore,
        mailer: Mailer,
        clock: Callable[[], float] = time.time,
        ttl_secs: Optional[int] = None,
        prune_interval_secs: Optional[int] = None,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.clock = clock
        self.ttl_secs = int(ttl_secs if ttl_secs is not None else config.OTP_TTL_SECS)
        self.prune_interval_secs = int(
            prune_interval_secs if prune_interval_secs is not None else config.OTP_PRUNE_INTERVAL_SECS
        )
        self._last_prune = 0.0

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self.prune_interval_secs:
            return
        self._last_prune = now
        try:
            # Expired records linger one extra TTL so late verifications still see Expired.
            removed = self.store.prune(now - self.ttl_secs)
        except Exception:
            _log.warning("otp prune failed", exc_info=True)
            return
        if removed:
            _log.info("pruned %d expired codes", removed)

    def _account_exists(self, s: Session, email: str) -> bool:
        # Login resolves staff before customers, so either directory blocks.
        with storage_guard(s, "account lookup"):
            if s.execute(select(Admin.id).where(Admin.email == email)).first():
                return True
            return s.execute(select(User.id).where(User.email == email)).first() is not None

    def issue_code(self, s: Session, kind: WorkflowKind, email: str, payload: dict[str, Any]) -> IssuedCode:
        email = normalize_email(email)
        if not email:
            raise InvalidRequest("email required")
        if self._account_exists(s, email):
            raise Conflict("an account already exists for this email")
        pending = dict(payload)
        password = pending.pop("password", None)
        if password is not None:
            pending["password_hash"] = hash_password(password)
        now = self.clock()
        record = OtpRecord(code=generate_code(), issued_at=now, expires_at=now + self.ttl_secs, payload=pending)
        self._maybe_prune(now)
        try:
            self.store.put((email, kind.value), record)
        except Exception:
            _log.exception("otp store write failed")
            raise Internal("could not issue code")
        purpose = "registration" if kind is WorkflowKind.CUSTOMER else "staff registration"
        try:
            self.mailer.send_code(email, record.code, purpose, name=pending.get("name"))
        except MailError:
            # The record stays valid; asking again overwrites it.
            raise UpstreamFailure("could not send code; please try again")
        _log.info("issued %s code", kind.value, extra={"email": email})
        return IssuedCode(code=record.code, expires_at=record.expires_at, delivered=self.mailer.delivers)

    def verify_code(self, s: Session, kind: WorkflowKind, email: str, code: str) -> Union[User, Admin]:
        email = normalize_email(email)
        code = (code or "").strip()
        if not email or not code:
            raise InvalidRequest("email and code required")
        key = (email, kind.value)
        now = self.clock()
        record = self.store.get(key)
        if record is None:
            raise NotFound("no code was issued for this email; request a new one")
        if now > record.expires_at:
            self.store.take(key, record)
            raise Expired("code has expired; request a new one")
        if not hmac.compare_digest(record.code, code):
            raise InvalidCode("invalid code; check it and try again")
        if self.store.take(key, record) is None:
            # Lost a race with another verification (or a re-issue).
            raise NotFound("code already used; request a new one")
        try:
            account = self._materialize(s, kind, email, record.payload)
        except Internal:
            # Storage hiccup: put the code back so the user can retry.
            self.store.put(key, record)
            raise
        _log.info("materialized %s account", kind.value, extra={"email": email, "account_id": account.id})
        return account

    def _materialize(self, s: Session, kind: WorkflowKind, email: str, payload: dict[str, Any]) -> Union[User, Admin]:
        if kind is WorkflowKind.CUSTOMER:
            account: Union[User, Admin] = User(
                name=payload.get("name") or "",
                email=email,
                password=payload["password_hash"],
                phone_number=payload.get("phone_number"),
                location=payload.get("location"),
                home_address=payload.get("home_address"),
                role="user",
            )
        else:
            account = Admin(
                username=payload.get("username") or "",
                email=email,
                password=payload["password_hash"],
                name=payload.get("name"),
                phone_number=payload.get("phone_number"),
            )
        with storage_guard(s, "account creation"):
            try:
                s.add(account)
                s.commit()
            except IntegrityError:
                s.rollback()
                raise Conflict("email or username already exists")
            s.refresh(account)
        return account


_WORKFLOW: Optional[OtpWorkflow] = None


def build_store(kind: str) -> OtpStore:
    if kind == "db":
        return DatabaseOtpStore(_db.engine)
    return InMemoryOtpStore()


def get_otp_workflow() -> OtpWorkflow:
    global _WORKFLOW
    if _WORKFLOW is None:
        _WORKFLOW = OtpWorkflow(build_store(config.OTP_STORE), get_mailer())
    return _WORKFLOW


class RegisterReq(BaseModel):
    name: str
    email: str
    password: str
    phone_number: Optional[str] = None
    location: Optional[str] = None
    home_address: Optional[str] = None


class StaffRegisterReq(BaseModel):
    username: str
    email: str
    password: str
    name: Optional[str] = None
    phone_number: Optional[str] = None


class VerifyReq(BaseModel):
    email: str
    otp: str = Field(validation_alias=AliasChoices("otp", "code"))


def _check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LEN:
        raise InvalidRequest(f"password must be at least {MIN_PASSWORD_LEN} characters")


def _issued_response(issued: IssuedCode) -> dict[str, Any]:
    if issued.delivered:
        message = "OTP sent to your email. Enter it to complete registration."
    else:
        message = "OTP generated; email delivery is not configured, see the server log."
    resp: dict[str, Any] = {"ok": True, "message": message, "ttl": config.OTP_TTL_SECS}
    # Only expose the code when explicitly allowed (typically dev/test).
    if config.AUTH_EXPOSE_CODES:
        resp["code"] = issued.code
    return resp


@router.post("/register")
def register(req: RegisterReq, s: Session = Depends(get_session), wf: OtpWorkflow = Depends(get_otp_workflow)):
    if not req.name.strip():
        raise InvalidRequest("name required")
    _check_password(req.password)
    payload = req.model_dump(exclude={"email"})
    payload["name"] = req.name.strip()
    issued = wf.issue_code(s, WorkflowKind.CUSTOMER, req.email, payload)
    return _issued_response(issued)


@router.post("/verify-otp")
def verify_otp(req: VerifyReq, s: Session = Depends(get_session), wf: OtpWorkflow = Depends(get_otp_workflow)):
    user = wf.verify_code(s, WorkflowKind.CUSTOMER, req.email, req.otp)
    return {
        "ok": True,
        "message": "Registration successful! You can now log in with your email and password.",
        "user": {"id": user.id, "name": user.name, "email": user.email},
    }


@router.post("/admin/send-otp")
def admin_send_otp(
    req: StaffRegisterReq,
    staff: Staff = Depends(current_staff),
    s: Session = Depends(get_session),
    wf: OtpWorkflow = Depends(get_otp_workflow),
):
    if not req.username.strip():
        raise InvalidRequest("username required")
    _check_password(req.password)
    with storage_guard(s, "username lookup"):
        taken = s.execute(select(Admin.id).where(Admin.username == req.username.strip())).first()
    if taken:
        raise Conflict("username already exists")
    payload = req.model_dump(exclude={"email"})
    payload["username"] = req.username.strip()
    issued = wf.issue_code(s, WorkflowKind.STAFF, req.email, payload)
    audit("staff_otp_issued", staff, email=normalize_email(req.email))
    return _issued_response(issued)


@router.post("/admin/verify-otp")
def admin_verify_otp(
    req: VerifyReq,
    staff: Staff = Depends(current_staff),
    s: Session = Depends(get_session),
    wf: OtpWorkflow = Depends(get_otp_workflow),
):
    admin = wf.verify_code(s, WorkflowKind.STAFF, req.email, req.otp)
    audit("staff_account_created", staff, admin_id=admin.id, email=admin.email)
    return {
        "ok": True,
        "message": "Staff account created.",
        "admin": {"id": admin.id, "username": admin.username, "email": admin.email},
    }
