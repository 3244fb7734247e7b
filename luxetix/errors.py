"""
Error taxonomy for reconciliation, fulfillment and check-in.

- transient (``retryable = True``): the caller retries with backoff
- validation / fatal: surfaced immediately, never retried
- invariant: refused at the conditional-update boundary, nothing commits

"Already happened" is deliberately not an error here: CAS losers get a
result object with ``applied=False`` and the reconciler reports an outcome.
"""
from __future__ import annotations
from typing import Optional


class LuxetixError(Exception):
    retryable = False
    code = "ERROR"


# ----------------------------
# transient
# ----------------------------
class GatewayUnavailable(LuxetixError):
    """Network error, timeout or 5xx from the payment gateway."""
    retryable = True
    code = "GATEWAY_UNAVAILABLE"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryLater(LuxetixError):
    """The input is valid but arrived before the state it depends on."""
    retryable = True
    code = "RETRY_LATER"


# ----------------------------
# validation / fatal
# ----------------------------
class InvalidPaymentRequest(LuxetixError):
    code = "INVALID_PAYMENT_REQUEST"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}


class InvalidOrder(LuxetixError):
    code = "INVALID_ORDER"


class UnknownTier(LuxetixError):
    code = "UNKNOWN_TIER"

    def __init__(self, tier_id: str):
        super().__init__(f"unknown ticket tier {tier_id}")
        self.tier_id = tier_id


class OrderNotFound(LuxetixError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class IllegalTransition(LuxetixError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, source: str, target: str):
        super().__init__(f"no transition {source} -> {target}")
        self.source = source
        self.target = target


# ----------------------------
# invariant
# ----------------------------
class InsufficientInventory(LuxetixError):
    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, tier_id: str, requested: int,
                 available: Optional[int] = None):
        super().__init__(
            f"tier {tier_id}: requested {requested}, available {available}"
        )
        self.tier_id = tier_id
        self.requested = requested
        self.available = available


class TicketCodeExhausted(LuxetixError):
    code = "TICKET_CODE_EXHAUSTED"


# ----------------------------
# check-in
# ----------------------------
class UnknownCode(LuxetixError):
    code = "UNKNOWN_CODE"

    def __init__(self, ticket_code: str):
        super().__init__(f"unknown ticket code {ticket_code}")
        self.ticket_code = ticket_code


class AlreadyRedeemed(LuxetixError):
    code = "ALREADY_REDEEMED"

    def __init__(self, ticket_code: str, redeemed_at: float,
                 redeemed_by: Optional[str]):
        super().__init__(
            f"ticket {ticket_code} already redeemed by {redeemed_by}"
        )
        self.ticket_code = ticket_code
        self.redeemed_at = redeemed_at
        self.redeemed_by = redeemed_by


class NotRedeemed(LuxetixError):
    code = "NOT_REDEEMED"


class ScanDecodeError(LuxetixError):
    code = "UNREADABLE"
