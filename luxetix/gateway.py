from __future__ import annotations
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from fastapi import HTTPException

from .errors import GatewayUnavailable, InvalidPaymentRequest
from .helpers import canonical_json, ct_equal, now_ts

logger = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

METHOD_VA = "VA"
METHOD_EWALLET = "EWALLET"
METHOD_QRIS = "QRIS"

VA_BANKS = frozenset({"BCA", "BNI", "BRI", "MANDIRI", "PERMATA", "BSI",
                      "CIMB"})
EWALLETS = frozenset({"OVO", "DANA", "SHOPEEPAY", "LINKAJA"})

# callback status vocabulary across VA / e-wallet / QRIS events
PAID_CODES = frozenset({"COMPLETED", "PAID", "SETTLED", "SUCCEEDED",
                        "SUCCESS"})
FAILED_CODES = frozenset({"FAILED", "EXPIRED", "VOIDED", "VOID",
                          "CANCELED", "CANCELLED"})

CB_PAID = "paid"
CB_FAILED = "failed"
CB_PENDING = "pending"


# ----------------------------
# External references
# ----------------------------
# The reference we hand to the gateway encodes the order id, so callbacks
# map back to orders without a lookup table.
REFERENCE_PREFIXES = {
    "ticket": "LTX-ORD-",
    "agent_registration": "AGENT-REG-",
}


def external_reference(order_id: str, kind: str = "ticket") -> str:
    return REFERENCE_PREFIXES[kind] + order_id


def order_id_from_reference(ref: Optional[str]) -> Optional[Tuple[str, str]]:
    """(order_id, kind) or None if the reference is not one of ours."""
    if not ref or not isinstance(ref, str):
        return None
    for kind, prefix in REFERENCE_PREFIXES.items():
        if ref.startswith(prefix) and len(ref) > len(prefix):
            return ref[len(prefix):], kind
    return None


# ----------------------------
# Normalized shapes
# ----------------------------
@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    method: str
    display_url: Optional[str] = None
    expires_at: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackEvent:
    event_id: str
    reference: str
    order_id: str
    kind: str
    status: str  # paid | failed | pending
    payload: Dict[str, Any] = field(default_factory=dict)


def _dig(payload: Mapping, *path: str) -> Any:
    cur: Any = payload
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def _first(payload: Mapping, *paths: Tuple[str, ...]) -> Any:
    for path in paths:
        val = _dig(payload, *path)
        if val not in (None, ""):
            return val
    return None


def callback_status(payload: Mapping) -> str:
    explicit = _first(payload, ("status",), ("data", "status"),
                      ("payment_status",))
    if isinstance(explicit, str):
        code = explicit.upper()
        if code in PAID_CODES:
            return CB_PAID
        if code in FAILED_CODES:
            return CB_FAILED
        return CB_PENDING
    # fixed VA "paid" callbacks carry no status, only the settled payment
    if payload.get("paid_amount") and (
            payload.get("payment_id")
            or payload.get("callback_virtual_account_id")):
        return CB_PAID
    return CB_PENDING


def parse_callback(
    payload: Any, headers: Optional[Mapping[str, str]] = None
) -> Optional[CallbackEvent]:
    """
    Normalize a gateway callback. Returns None for anything that does not
    carry one of our references: other event streams share the endpoint.
    """
    if not isinstance(payload, Mapping):
        return None
    ref = _first(
        payload,
        ("external_id",),
        ("reference_id",),
        ("data", "external_id"),
        ("data", "reference_id"),
        ("qr_code", "reference_id"),
    )
    parsed = order_id_from_reference(ref)
    if parsed is None:
        return None
    order_id, kind = parsed
    status = callback_status(payload)

    headers = {k.lower(): v for k, v in (headers or {}).items()}
    event_id = headers.get("webhook-id") or payload.get("event_id")
    if not event_id:
        # object ids repeat across an object's lifecycle events
        obj_id = _first(payload, ("id",), ("data", "id"), ("payment_id",))
        if obj_id:
            event_id = f"{obj_id}:{status}"
        else:
            digest = hashlib.sha256(
                canonical_json(payload).encode()
            ).hexdigest()
            event_id = f"sha256:{digest}"

    return CallbackEvent(
        event_id=str(event_id),
        reference=ref,
        order_id=order_id,
        kind=kind,
        status=status,
        payload=dict(payload),
    )


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    async def create_payment(
        self, order: Mapping[str, Any], method: str,
        method_detail: Optional[str] = None,
    ) -> PaymentResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Mapping) -> None: ...

    def parse_callback(
        self, payload: Any, headers: Optional[Mapping[str, str]] = None
    ) -> Optional[CallbackEvent]:
        return parse_callback(payload, headers)

    async def aclose(self) -> None:
        return None


def validate_method(
    order: Mapping[str, Any], method: str, method_detail: Optional[str]
) -> Tuple[str, Optional[str]]:
    method = (method or "").upper()
    detail = (method_detail or "").upper() or None
    if method == METHOD_VA:
        detail = detail or "BCA"
        if detail not in VA_BANKS:
            raise InvalidPaymentRequest(f"unsupported bank {detail}")
    elif method == METHOD_EWALLET:
        detail = detail or "OVO"
        if detail not in EWALLETS:
            raise InvalidPaymentRequest(f"unsupported e-wallet {detail}")
        if detail == "OVO" and not order.get("customer_phone"):
            raise InvalidPaymentRequest("OVO needs a mobile number")
    elif method == METHOD_QRIS:
        detail = None
    else:
        raise InvalidPaymentRequest(f"unsupported payment method {method}")
    if int(order.get("total_amount") or 0) <= 0:
        raise InvalidPaymentRequest("amount must be positive")
    return method, detail


def idempotency_key(order: Mapping[str, Any], method: str) -> str:
    # stable per order and method; retries must reuse it
    return f"{order['id']}:{method}"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ----------------------------
# Xendit implementation
# ----------------------------
class XenditGateway(PaymentAdapter):

    def __init__(self, *, secret_key: str, callback_token: str,
                 base_url: str = "https://api.xendit.co",
                 timeout: float = 10.0,
                 success_redirect_url: str = "",
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.callback_token = callback_token
        self.success_redirect_url = success_redirect_url
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(secret_key, ""),
            timeout=timeout,
        )

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

    def _request(
        self, order: Mapping[str, Any], method: str, detail: Optional[str]
    ) -> Tuple[str, Dict[str, Any], Dict[str, str]]:
        ref = external_reference(order["id"], order.get("kind") or "ticket")
        amount = int(order["total_amount"])
        expires = _iso(float(order["expires_at"]))
        if method == METHOD_VA:
            return "/callback_virtual_accounts", {
                "external_id": ref,
                "bank_code": detail,
                "name": (order.get("customer_name") or "Customer")[:50],
                "expected_amount": amount,
                "is_closed": True,
                "is_single_use": True,
                "expiration_date": expires,
            }, {}
        if method == METHOD_EWALLET:
            return "/ewallets/charges", {
                "reference_id": ref,
                "currency": order.get("currency") or "IDR",
                "amount": amount,
                "checkout_method": "ONE_TIME_PAYMENT",
                "channel_code": f"ID_{detail}",
                "channel_properties": {
                    "mobile_number": order.get("customer_phone"),
                    "success_redirect_url": (
                        f"{self.success_redirect_url}/{order['id']}"
                    ),
                },
            }, {}
        return "/qr_codes", {
            "reference_id": ref,
            "type": "DYNAMIC",
            "currency": order.get("currency") or "IDR",
            "amount": amount,
            "expires_at": expires,
        }, {"api-version": "2022-07-31"}

    async def create_payment(
        self, order: Mapping[str, Any], method: str,
        method_detail: Optional[str] = None,
    ) -> PaymentResult:
        method, detail = validate_method(order, method, method_detail)
        path, body, extra_headers = self._request(order, method, detail)
        headers = {"x-idempotency-key": idempotency_key(order, method),
                   **extra_headers}
        try:
            resp = await self.http.post(path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"gateway timeout: {e}") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"gateway unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {"message": resp.text}

        if resp.status_code >= 500:
            raise GatewayUnavailable(
                data.get("message") or "gateway error", resp.status_code
            )
        if resp.status_code >= 400:
            raise InvalidPaymentRequest(
                data.get("message") or "payment request rejected",
                resp.status_code, data,
            )

        if method == METHOD_EWALLET:
            actions = data.get("actions") or {}
            display = (actions.get("mobile_deeplink_checkout_url")
                       or actions.get("desktop_web_checkout_url")
                       or actions.get("mobile_web_checkout_url"))
        elif method == METHOD_QRIS:
            display = data.get("qr_string")
        else:
            display = None
        return PaymentResult(
            payment_id=data["id"],
            method=method,
            display_url=display,
            expires_at=float(order["expires_at"]),
            raw=data,
        )

    def verify_webhook(self, payload: bytes, headers: Mapping) -> None:
        token = headers.get("x-callback-token")
        if not token or not self.callback_token or \
                not ct_equal(token, self.callback_token):
            raise HTTPException(status_code=401,
                                detail="Invalid callback token")


# ----------------------------
# MockPay implementation
# ----------------------------
def mock_signature(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class MockPay(PaymentAdapter):
    """
    Local stand-in for the gateway. Payments are accepted immediately and
    settled by emitting a signed callback (see `build_callback`).
    """

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    async def create_payment(
        self, order: Mapping[str, Any], method: str,
        method_detail: Optional[str] = None,
    ) -> PaymentResult:
        method, detail = validate_method(order, method, method_detail)
        # same key -> same payment id, like the real idempotency header
        key = idempotency_key(order, method)
        payment_id = "mock_" + hashlib.sha256(key.encode()).hexdigest()[:24]
        return PaymentResult(
            payment_id=payment_id,
            method=method,
            display_url=f"/mockpay/{payment_id}",
            expires_at=float(order["expires_at"]),
            raw={"id": payment_id, "channel": detail,
                 "reference": external_reference(
                     order["id"], order.get("kind") or "ticket")},
        )

    def build_callback(
        self, order: Mapping[str, Any], outcome: str
    ) -> Tuple[bytes, Dict[str, str]]:
        if outcome not in ("succeeded", "failed"):
            raise ValueError("outcome must be 'succeeded' or 'failed'")
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "external_id": external_reference(
                order["id"], order.get("kind") or "ticket"),
            "status": "COMPLETED" if outcome == "succeeded" else "FAILED",
            "amount": int(order["total_amount"]),
            "payment_method": order.get("payment_method"),
            "payment_reference": order.get("payment_id"),
            "created": _iso(now_ts()),
        }
        body = json.dumps(event).encode()
        return body, {
            "x-mockpay-signature": mock_signature(body, self.secret),
            "content-type": "application/json",
        }

    def verify_webhook(self, payload: bytes, headers: Mapping) -> None:
        sig = headers.get("x-mockpay-signature")
        expected = mock_signature(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=401, detail="Invalid signature")


# ----------------------------
# Retry
# ----------------------------
async def create_payment_with_retry(
    adapter: PaymentAdapter,
    order: Mapping[str, Any],
    method: str,
    method_detail: Optional[str] = None,
    *,
    attempts: int = 3,
    base_delay: float = 0.25,
) -> PaymentResult:
    """
    Retry GatewayUnavailable with exponential backoff. The idempotency key
    is derived from the order, so every attempt is the same request as far
    as the gateway is concerned. InvalidPaymentRequest is never retried.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await adapter.create_payment(order, method, method_detail)
        except GatewayUnavailable as e:
            if attempt >= attempts:
                logger.error("create_payment for order %s gave up after "
                             "%d attempts: %s", order["id"], attempt, e)
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning("create_payment for order %s failed (%s), "
                           "retry %d in %.2fs", order["id"], e, attempt,
                           delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
