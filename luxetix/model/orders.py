# model/orders.py
"""
Order aggregate and its state machine.

    pending ----------> awaiting_payment ----> paid
       |                       |-------------> expired
       |                       '-------------> failed
       '--> cancelled

paid, expired, failed and cancelled are terminal. Every transition is a
single `UPDATE orders SET status=:target WHERE id=:id AND status=:expected`;
losing that race is not an error, it means another path already resolved the
order and the caller reports "already resolved".

Expiry is lazy: anything that touches a single order calls `expire_if_due`
first. A pending order past its deadline never got a payment instrument and
is cancelled; an awaiting_payment one is expired. Both release inventory.
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    IllegalTransition, InvalidOrder, OrderNotFound, UnknownTier
)
from ..helpers import is_valid_email, new_order_number, now_ts
from ..infra.sql import GatedAsyncSession
from . import inventory
from .db import Order, OrderItem

logger = logging.getLogger(__name__)

PENDING = "pending"
AWAITING_PAYMENT = "awaiting_payment"
PAID = "paid"
EXPIRED = "expired"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL = frozenset({PAID, EXPIRED, FAILED, CANCELLED})
OPEN = frozenset({PENDING, AWAITING_PAYMENT})

TRANSITIONS: Dict[str, frozenset] = {
    PENDING: frozenset({AWAITING_PAYMENT, CANCELLED}),
    AWAITING_PAYMENT: frozenset({PAID, EXPIRED, FAILED}),
}

KIND_TICKET = "ticket"
KIND_AGENT_REGISTRATION = "agent_registration"

# columns a transition may stamp alongside the status
_STAMPABLE = ("paid_at", "payment_method", "payment_id")

MAX_ITEM_QTY = 10


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    applied: bool
    # status after the attempt: `target` if applied, else what we found
    current: str


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: Optional[str] = None
    user_id: Optional[str] = None


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------

async def _current_status(db: AsyncSession, order_id: str) -> Optional[str]:
    row = (await db.execute(
        text("SELECT status FROM orders WHERE id=:id"), {"id": order_id}
    )).first()
    return row[0] if row else None


async def _transition(
    db: AsyncSession, order_id: str, expected: str, target: str,
    **stamps: Any,
) -> TransitionResult:
    if target not in TRANSITIONS.get(expected, ()):
        raise IllegalTransition(expected, target)
    unknown = set(stamps) - set(_STAMPABLE)
    if unknown:
        raise ValueError(f"cannot stamp {sorted(unknown)} on a transition")

    sets = ", ".join(["status=:target"] + [f"{k}=:{k}" for k in stamps])
    row = (await db.execute(text(f"""
        UPDATE orders SET {sets}
        WHERE id=:id AND status=:expected
        RETURNING status
    """), {"id": order_id, "expected": expected, "target": target,
           **stamps})).first()
    if row is not None:
        logger.info("order %s: %s -> %s", order_id, expected, target)
        return TransitionResult(order_id, True, target)

    current = await _current_status(db, order_id)
    if current is None:
        raise OrderNotFound(order_id)
    return TransitionResult(order_id, False, current)


async def _expire_if_due(
    db: AsyncSession, order_id: str, now: Optional[float] = None
) -> Optional[str]:
    """
    Returns the new status if this call expired the order, else None.
    """
    now = now_ts() if now is None else now
    row = (await db.execute(text("""
        UPDATE orders
        SET status = CASE status WHEN 'pending' THEN 'cancelled'
                                 ELSE 'expired' END
        WHERE id=:id
          AND status IN ('pending', 'awaiting_payment')
          AND expires_at <= :now
        RETURNING status
    """), {"id": order_id, "now": now})).first()
    if row is None:
        return None
    logger.info("order %s timed out -> %s", order_id, row[0])
    await inventory._release_for_order(db, order_id)
    return row[0]


async def _get_order(db: AsyncSession, order_id: str) -> Optional[Dict]:
    row = (await db.execute(
        text("SELECT * FROM orders WHERE id=:id"), {"id": order_id}
    )).mappings().first()
    return dict(row) if row else None


async def _order_items(db: AsyncSession, order_id: str) -> List[Dict]:
    rows = (await db.execute(text("""
        SELECT id, tier_id, quantity, unit_price, subtotal
        FROM order_items WHERE order_id=:o ORDER BY id
    """), {"o": order_id})).mappings().all()
    return [dict(r) for r in rows]


def _validate_customer(customer: Customer) -> None:
    if not (customer.name or "").strip():
        raise InvalidOrder("customer name is required")
    if not is_valid_email(customer.email):
        raise InvalidOrder(
            "customer_email is required and must be a valid email address"
        )


async def _insert_order(
    db: AsyncSession, *, kind: str, total_amount: int, customer: Customer,
    ttl_seconds: int, currency: str = "IDR",
) -> Order:
    created = now_ts()
    order = Order(
        id=uuid.uuid4().hex,
        order_number=new_order_number(created),
        kind=kind,
        status=PENDING,
        total_amount=total_amount,
        currency=currency,
        customer_name=customer.name.strip(),
        customer_email=customer.email.strip(),
        customer_phone=customer.phone,
        user_id=customer.user_id,
        created_at=created,
        expires_at=created + ttl_seconds,
    )
    db.add(order)
    await db.flush()
    return order


def _merge_items(items: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for tier_id, qty in items:
        try:
            q = int(qty)
        except (TypeError, ValueError):
            raise InvalidOrder("quantity must be a whole number") from None
        if q <= 0:
            raise InvalidOrder("quantity must be positive")
        merged[tier_id] = merged.get(tier_id, 0) + q
    if not merged:
        raise InvalidOrder("an order needs at least one item")
    for tier_id, qty in merged.items():
        if qty > MAX_ITEM_QTY:
            raise InvalidOrder(
                f"at most {MAX_ITEM_QTY} tickets per tier and order"
            )
    return merged


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_ticket_order(
    db: GatedAsyncSession,
    items: Sequence[Tuple[str, int]],
    customer: Customer,
    ttl_seconds: int,
) -> Dict:
    """
    Insert a pending order with its items and reserve inventory for every
    item, all in one transaction. An InsufficientInventory on any item rolls
    the whole order back, including reservations already taken.
    """
    _validate_customer(customer)
    wanted = _merge_items(items)

    async with db.gated():
        async with db.session.begin():
            stmt = text(
                "SELECT id, price FROM ticket_tiers WHERE id IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            prices = dict((await db.session.execute(
                stmt, {"ids": list(wanted)}
            )).all())
            for tier_id in wanted:
                if tier_id not in prices:
                    raise UnknownTier(tier_id)

            total = sum(int(prices[t]) * q for t, q in wanted.items())
            order = await _insert_order(
                db.session, kind=KIND_TICKET, total_amount=total,
                customer=customer, ttl_seconds=ttl_seconds,
            )
            for tier_id, qty in wanted.items():
                unit_price = int(prices[tier_id])
                db.session.add(OrderItem(
                    id=uuid.uuid4().hex,
                    order_id=order.id,
                    tier_id=tier_id,
                    quantity=qty,
                    unit_price=unit_price,
                    subtotal=qty * unit_price,
                ))
            await db.session.flush()
            for tier_id, qty in wanted.items():
                await inventory._reserve(db.session, tier_id, qty, order.id)
            view = await _get_order(db.session, order.id)

    logger.info("order %s (%s) created: %s, total %s",
                view["id"], view["order_number"], wanted, total)
    return view


async def transition(
    db: GatedAsyncSession, order_id: str, expected: str, target: str,
    **stamps: Any,
) -> TransitionResult:
    async with db.gated():
        async with db.session.begin():
            return await _transition(
                db.session, order_id, expected, target, **stamps
            )


async def expire_if_due(
    db: GatedAsyncSession, order_id: str, now: Optional[float] = None
) -> Optional[str]:
    async with db.gated():
        async with db.session.begin():
            return await _expire_if_due(db.session, order_id, now)


async def get_order(db: GatedAsyncSession, order_id: str) -> Optional[Dict]:
    async with db.gated():
        async with db.session.begin():
            return await _get_order(db.session, order_id)


async def order_items(db: GatedAsyncSession, order_id: str) -> List[Dict]:
    async with db.gated():
        async with db.session.begin():
            return await _order_items(db.session, order_id)


async def attach_payment(
    db: GatedAsyncSession, order_id: str, payment_method: str,
    payment_id: str,
) -> TransitionResult:
    """pending -> awaiting_payment once the gateway handed out an instrument."""
    async with db.gated():
        async with db.session.begin():
            await _expire_if_due(db.session, order_id)
            return await _transition(
                db.session, order_id, PENDING, AWAITING_PAYMENT,
                payment_method=payment_method, payment_id=payment_id,
            )


async def mark_paid(
    db: GatedAsyncSession, order_id: str, paid_at: Optional[float] = None
) -> TransitionResult:
    async with db.gated():
        async with db.session.begin():
            return await _transition(
                db.session, order_id, AWAITING_PAYMENT, PAID,
                paid_at=paid_at if paid_at is not None else now_ts(),
            )


async def fail_order(db: GatedAsyncSession, order_id: str) -> TransitionResult:
    """awaiting_payment -> failed, releasing inventory if we won the CAS."""
    async with db.gated():
        async with db.session.begin():
            res = await _transition(
                db.session, order_id, AWAITING_PAYMENT, FAILED
            )
            if res.applied:
                await inventory._release_for_order(db.session, order_id)
            return res


async def cancel_order(
    db: GatedAsyncSession, order_id: str
) -> TransitionResult:
    """Checkout abandoned before a payment instrument existed."""
    async with db.gated():
        async with db.session.begin():
            await _expire_if_due(db.session, order_id)
            res = await _transition(db.session, order_id, PENDING, CANCELLED)
            if res.applied:
                await inventory._release_for_order(db.session, order_id)
            return res


async def _mark_fulfilled(db: AsyncSession, order_id: str) -> bool:
    row = (await db.execute(text("""
        UPDATE orders SET fulfilled_at=:now
        WHERE id=:id AND status='paid' AND fulfilled_at IS NULL
        RETURNING id
    """), {"id": order_id, "now": now_ts()})).first()
    return row is not None


async def get_order_view(
    db: GatedAsyncSession, order_id: str
) -> Optional[Dict]:
    """Status-poll view: order, items and the codes issued so far."""
    await expire_if_due(db, order_id)
    async with db.gated():
        async with db.session.begin():
            order = await _get_order(db.session, order_id)
            if order is None:
                return None
            items = await _order_items(db.session, order_id)
            rows = (await db.session.execute(text("""
                SELECT t.order_item_id, t.code, t.state
                FROM tickets t
                JOIN order_items i ON i.id = t.order_item_id
                WHERE i.order_id=:o
                ORDER BY t.order_item_id, t.seq
            """), {"o": order_id})).mappings().all()

    codes: Dict[str, List[Dict]] = {}
    for r in rows:
        codes.setdefault(r["order_item_id"], []).append(
            {"code": r["code"], "state": r["state"]}
        )
    for item in items:
        item["tickets"] = codes.get(item["id"], [])
    order["items"] = items
    return order


async def due_order_ids(
    db: GatedAsyncSession, limit: int = 100, now: Optional[float] = None
) -> List[str]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id FROM orders
                WHERE status IN ('pending', 'awaiting_payment')
                  AND expires_at <= :now
                ORDER BY expires_at
                LIMIT :lim
            """), {"now": now, "lim": int(limit)})).all()
    return [r[0] for r in rows]


async def get_order_by_payment_id(
    db: GatedAsyncSession, payment_id: str
) -> Optional[Dict]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT * FROM orders WHERE payment_id=:p"),
                {"p": payment_id},
            )).mappings().first()
    return dict(row) if row else None
