# model/inventory.py
"""
Inventory ledger for ticket tiers.

- reserve: decrement available_quantity iff enough is left, in one
  conditional UPDATE, and record a `held` reservation
- finalize: held -> consumed (quantity already taken at reserve time)
- release: held -> released and give the quantity back

The counter is never assigned from application code. Two workers racing on
the same tier both issue `UPDATE ... WHERE available_quantity >= :qty`; the
database serializes them and the loser matches zero rows.
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientInventory, UnknownTier
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession

logger = logging.getLogger(__name__)

# Reservation statuses
R_HELD = "held"
R_CONSUMED = "consumed"
R_RELEASED = "released"


@dataclass(frozen=True)
class ReservationHandle:
    id: str
    tier_id: str
    order_id: str
    qty: int


# ------------------------------------------------------------------------------
# UN-GATED internal functions: run inside the caller's transaction
# ------------------------------------------------------------------------------

async def _reserve(
    db: AsyncSession, tier_id: str, qty: int, order_id: str
) -> ReservationHandle:
    if qty <= 0:
        raise ValueError("qty must be positive")

    row = (await db.execute(text("""
        UPDATE ticket_tiers
        SET available_quantity = available_quantity - :q
        WHERE id = :t AND available_quantity >= :q
        RETURNING available_quantity
    """), {"t": tier_id, "q": qty})).first()

    if row is None:
        current = (await db.execute(
            text("SELECT available_quantity FROM ticket_tiers WHERE id=:t"),
            {"t": tier_id},
        )).first()
        if current is None:
            raise UnknownTier(tier_id)
        raise InsufficientInventory(tier_id, qty, int(current[0]))

    rid = uuid.uuid4().hex
    await db.execute(text("""
        INSERT INTO reservations(id, tier_id, order_id, qty, status,
                                 created_at)
        VALUES(:id, :t, :o, :q, 'held', :c)
    """), {"id": rid, "t": tier_id, "o": order_id, "q": qty, "c": now_ts()})
    logger.debug("reserved %s x %s for order %s (left %s)",
                 qty, tier_id, order_id, row[0])
    return ReservationHandle(id=rid, tier_id=tier_id, order_id=order_id,
                             qty=qty)


async def _release(db: AsyncSession, reservation_id: str) -> bool:
    """
    held -> released, then give the units back. Returns False (no-op) if the
    reservation was already released or consumed.
    """
    row = (await db.execute(text("""
        UPDATE reservations
        SET status='released', settled_at=:now
        WHERE id=:id AND status='held'
        RETURNING tier_id, qty
    """), {"id": reservation_id, "now": now_ts()})).first()
    if row is None:
        return False

    await db.execute(text("""
        UPDATE ticket_tiers
        SET available_quantity = available_quantity + :q
        WHERE id = :t
    """), {"t": row[0], "q": int(row[1])})
    return True


async def _finalize(db: AsyncSession, reservation_id: str) -> bool:
    row = (await db.execute(text("""
        UPDATE reservations
        SET status='consumed', settled_at=:now
        WHERE id=:id AND status='held'
        RETURNING id
    """), {"id": reservation_id, "now": now_ts()})).first()
    return row is not None


async def _reservation_ids(db: AsyncSession, order_id: str) -> List[str]:
    rows = (await db.execute(
        text("SELECT id FROM reservations WHERE order_id=:o ORDER BY id"),
        {"o": order_id},
    )).all()
    return [r[0] for r in rows]


async def _release_for_order(db: AsyncSession, order_id: str) -> int:
    released = 0
    for rid in await _reservation_ids(db, order_id):
        if await _release(db, rid):
            released += 1
    if released:
        logger.info("released %d reservation(s) of order %s",
                    released, order_id)
    return released


async def _finalize_for_order(db: AsyncSession, order_id: str) -> int:
    finalized = 0
    for rid in await _reservation_ids(db, order_id):
        if await _finalize(db, rid):
            finalized += 1
    return finalized


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def reserve(
    db: GatedAsyncSession, tier_id: str, qty: int, order_id: str
) -> ReservationHandle:
    async with db.gated():
        async with db.session.begin():
            return await _reserve(db.session, tier_id, qty, order_id)


async def release(db: GatedAsyncSession, reservation_id: str) -> bool:
    async with db.gated():
        async with db.session.begin():
            return await _release(db.session, reservation_id)


async def finalize(db: GatedAsyncSession, reservation_id: str) -> bool:
    async with db.gated():
        async with db.session.begin():
            return await _finalize(db.session, reservation_id)


async def release_for_order(db: GatedAsyncSession, order_id: str) -> int:
    async with db.gated():
        async with db.session.begin():
            return await _release_for_order(db.session, order_id)


async def finalize_for_order(db: GatedAsyncSession, order_id: str) -> int:
    async with db.gated():
        async with db.session.begin():
            return await _finalize_for_order(db.session, order_id)


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def tier_stock(
    db: GatedAsyncSession, tier_id: str
) -> Optional[Dict[str, int]]:
    """
    Returns:
      { "total": ..., "available": ..., "held": ..., "sold": ...,
        "sold_out": ... }
    """
    async with db.gated():
        async with db.session.begin():
            tier = (await db.session.execute(text("""
                SELECT total_quantity, available_quantity
                FROM ticket_tiers WHERE id=:t
            """), {"t": tier_id})).first()
            if tier is None:
                return None
            sums = dict((await db.session.execute(text("""
                SELECT status, COALESCE(SUM(qty), 0) FROM reservations
                WHERE tier_id=:t GROUP BY status
            """), {"t": tier_id})).all())

    return {
        "total": int(tier[0]),
        "available": int(tier[1]),
        "held": int(sums.get(R_HELD, 0)),
        "sold": int(sums.get(R_CONSUMED, 0)),
        "sold_out": int(tier[1]) <= 0,
    }
