from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from . import config

_log = logging.getLogger("kitchen.gateway")


class GatewayError(Exception):
    pass


@dataclass
class RemoteCharge:
    id: str
    amount_minor: int
    currency: str
    status: str = "created"


def to_minor_units(amount: Decimal) -> int:
    """Gateway amounts are integers in the smallest currency unit (paise)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway:
    def create_charge(self, amount: Decimal, order_id: int, notes: Optional[dict[str, Any]] = None) -> RemoteCharge:
        raise NotImplementedError

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    """
    Orders API client. The remote order carries the local order id as its
    receipt so both sides can be reconciled.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        currency: str = "INR",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self._client = client or httpx.Client(
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
        )

    def create_charge(self, amount: Decimal, order_id: int, notes: Optional[dict[str, Any]] = None) -> RemoteCharge:
        minor = to_minor_units(amount)
        payload = {
            "amount": minor,
            "currency": self.currency,
            "receipt": f"order_{order_id}",
            "notes": {"order_id": str(order_id), **(notes or {})},
        }
        try:
            r = self._client.post(
                f"{self.base_url}/v1/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
            )
            r.raise_for_status()
            data = r.json()
            if not isinstance(data, dict):
                raise ValueError("gateway response is not an object")
            remote_id = str(data.get("id") or "")
            charge = RemoteCharge(
                id=remote_id,
                amount_minor=int(data.get("amount") or minor),
                currency=str(data.get("currency") or self.currency),
                status=str(data.get("status") or "created"),
            )
        except httpx.HTTPStatusError as e:
            _log.warning("gateway rejected order %s: %s %s", order_id, e.response.status_code, e.response.text[:200])
            raise GatewayError(f"gateway returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError, TypeError) as e:
            _log.warning("gateway call for order %s failed: %s", order_id, e)
            raise GatewayError("gateway call failed") from e
        if not remote_id:
            raise GatewayError("gateway response missing order id")
        _log.info("created gateway order", extra={"order_id": order_id, "gateway_order_id": remote_id})
        return charge

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        msg = f"{gateway_order_id}|{payment_id}".encode("utf-8")
        expected = hmac.new(self.key_secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, (signature or "").strip())


class UnconfiguredGateway(PaymentGateway):
    """Used when no gateway keys are set; every online payment fails upstream."""

    def create_charge(self, amount: Decimal, order_id: int, notes: Optional[dict[str, Any]] = None) -> RemoteCharge:
        raise GatewayError("payment gateway not configured")

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return False


_GATEWAY: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _GATEWAY
    if _GATEWAY is None:
        if config.GATEWAY_KEY_ID and config.GATEWAY_KEY_SECRET:
            _GATEWAY = RazorpayGateway(
                config.GATEWAY_KEY_ID,
                config.GATEWAY_KEY_SECRET,
                config.GATEWAY_BASE_URL,
                config.GATEWAY_CURRENCY,
                config.GATEWAY_TIMEOUT_SECS,
            )
        else:
            _log.warning("GATEWAY_KEY_ID/GATEWAY_KEY_SECRET not set; online payments disabled")
            _GATEWAY = UnconfiguredGateway()
    return _GATEWAY
