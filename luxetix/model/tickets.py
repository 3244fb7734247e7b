# model/tickets.py
"""
Ticket issuance and redemption.

Issuance is keyed by (order_item_id, seq): asking twice for the same item
returns the tickets that already exist. Codes are random and unique at the
storage layer; an insert that hits an existing code is retried with a fresh
one instead of failing the fulfillment.

Redemption is one conditional UPDATE on `state='issued'`, so of two
scanners reading the same code at the same moment exactly one wins.
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    AlreadyRedeemed, InvalidOrder, NotRedeemed, TicketCodeExhausted,
    UnknownCode,
)
from ..helpers import now_ts, random_code
from ..infra.sql import GatedAsyncSession

logger = logging.getLogger(__name__)

ISSUED = "issued"
REDEEMED = "redeemed"

CODE_PREFIX = "TKT-"
CODE_LENGTH = 16  # x 5 bits
CODE_MAX_ATTEMPTS = 8


def new_ticket_code() -> str:
    return CODE_PREFIX + random_code(CODE_LENGTH)


@dataclass
class CheckinResult:
    ticket_id: str
    code: str
    redeemed_at: float
    redeemed_by: str
    order_id: str
    order_number: str
    holder_name: str
    holder_email: str
    tier_name: str
    concert: Dict[str, Any] = field(default_factory=dict)


# ------------------------------------------------------------------------------
# Issuance
# ------------------------------------------------------------------------------

async def _tickets_for_item(db: AsyncSession, item_id: str) -> List[Dict]:
    rows = (await db.execute(text("""
        SELECT id, order_item_id, seq, code, state, issued_at,
               redeemed_at, redeemed_by
        FROM tickets WHERE order_item_id=:i ORDER BY seq
    """), {"i": item_id})).mappings().all()
    return [dict(r) for r in rows]


async def _insert_ticket(
    db: AsyncSession, item_id: str, seq: int
) -> None:
    for attempt in range(1, CODE_MAX_ATTEMPTS + 1):
        code = new_ticket_code()
        row = (await db.execute(text("""
            INSERT INTO tickets(id, order_item_id, seq, code, state,
                                issued_at)
            VALUES(:id, :i, :s, :code, 'issued', :now)
            ON CONFLICT DO NOTHING
            RETURNING id
        """), {"id": uuid.uuid4().hex, "i": item_id, "s": seq,
               "code": code, "now": now_ts()})).first()
        if row is not None:
            return

        # either a concurrent issuer took this seq, or the code collided
        taken = (await db.execute(text("""
            SELECT 1 FROM tickets WHERE order_item_id=:i AND seq=:s
        """), {"i": item_id, "s": seq})).first()
        if taken is not None:
            return
        logger.warning("ticket code collision for item %s seq %s "
                       "(attempt %d), regenerating", item_id, seq, attempt)

    raise TicketCodeExhausted(
        f"no free ticket code after {CODE_MAX_ATTEMPTS} attempts"
    )


async def _issue_for_item(db: AsyncSession, item_id: str) -> List[Dict]:
    item = (await db.execute(text("""
        SELECT i.quantity, o.status
        FROM order_items i JOIN orders o ON o.id = i.order_id
        WHERE i.id=:i
    """), {"i": item_id})).first()
    if item is None:
        raise InvalidOrder(f"order item {item_id} not found")
    quantity, status = int(item[0]), item[1]
    if status != "paid":
        raise InvalidOrder(
            f"order item {item_id} belongs to a {status} order"
        )

    existing = {t["seq"] for t in await _tickets_for_item(db, item_id)}
    missing = [s for s in range(1, quantity + 1) if s not in existing]
    for seq in missing:
        await _insert_ticket(db, item_id, seq)
    if missing:
        logger.info("issued %d ticket(s) for item %s", len(missing), item_id)
    return await _tickets_for_item(db, item_id)


async def _issue_for_order(db: AsyncSession, order_id: str) -> List[Dict]:
    item_ids = [r[0] for r in (await db.execute(
        text("SELECT id FROM order_items WHERE order_id=:o ORDER BY id"),
        {"o": order_id},
    )).all()]
    out: List[Dict] = []
    for item_id in item_ids:
        out.extend(await _issue_for_item(db, item_id))
    return out


async def issue_tickets(
    db: GatedAsyncSession, order_item_id: str
) -> List[Dict]:
    """One ticket per unit of the item; safe to call any number of times."""
    async with db.gated():
        async with db.session.begin():
            return await _issue_for_item(db.session, order_item_id)


async def issue_for_order(db: GatedAsyncSession, order_id: str) -> List[Dict]:
    async with db.gated():
        async with db.session.begin():
            return await _issue_for_order(db.session, order_id)


# ------------------------------------------------------------------------------
# Check-in
# ------------------------------------------------------------------------------

async def _log(
    db: AsyncSession, code: Optional[str], operator: str, outcome: str,
    reason: str,
) -> None:
    await db.execute(text("""
        INSERT INTO checkin_log(code, operator, outcome, reason, created_at)
        VALUES(:c, :op, :o, :r, :now)
    """), {"c": code, "op": operator, "o": outcome, "r": reason,
           "now": now_ts()})


async def _context(db: AsyncSession, code: str) -> Optional[Dict]:
    row = (await db.execute(text("""
        SELECT t.id AS ticket_id, t.code, t.state, t.redeemed_at,
               t.redeemed_by,
               o.id AS order_id, o.order_number, o.customer_name,
               o.customer_email,
               tt.name AS tier_name,
               c.id AS concert_id, c.title, c.artist, c.venue, c.city,
               c.starts_at
        FROM tickets t
        JOIN order_items i ON i.id = t.order_item_id
        JOIN orders o ON o.id = i.order_id
        JOIN ticket_tiers tt ON tt.id = i.tier_id
        JOIN concerts c ON c.id = tt.concert_id
        WHERE t.code=:code
    """), {"code": code})).mappings().first()
    return dict(row) if row else None


def _result(ctx: Dict) -> CheckinResult:
    return CheckinResult(
        ticket_id=ctx["ticket_id"],
        code=ctx["code"],
        redeemed_at=ctx["redeemed_at"],
        redeemed_by=ctx["redeemed_by"],
        order_id=ctx["order_id"],
        order_number=ctx["order_number"],
        holder_name=ctx["customer_name"],
        holder_email=ctx["customer_email"],
        tier_name=ctx["tier_name"],
        concert={
            "id": ctx["concert_id"],
            "title": ctx["title"],
            "artist": ctx["artist"],
            "venue": ctx["venue"],
            "city": ctx["city"],
            "starts_at": ctx["starts_at"],
        },
    )


async def redeem_ticket(
    db: GatedAsyncSession, code: str, operator: str
) -> CheckinResult:
    """
    issued -> redeemed, stamped with time and operator.

    Raises UnknownCode, or AlreadyRedeemed carrying the original stamps.
    The rejection is logged in the same transaction and committed before
    the exception leaves this function.
    """
    if not operator:
        raise ValueError("operator is required")
    code = code.strip().upper()
    error: Optional[Exception] = None

    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE tickets
                SET state='redeemed', redeemed_at=:now, redeemed_by=:op
                WHERE code=:code AND state='issued'
                RETURNING id
            """), {"code": code, "now": now_ts(), "op": operator})).first()

            ctx = await _context(db.session, code)
            if row is not None:
                await _log(db.session, code, operator, "ACCEPTED", "OK")
            elif ctx is None:
                error = UnknownCode(code)
                await _log(db.session, code, operator, "REJECTED",
                           error.code)
            else:
                error = AlreadyRedeemed(
                    code, ctx["redeemed_at"], ctx["redeemed_by"]
                )
                await _log(db.session, code, operator, "REJECTED",
                           error.code)

    if error is not None:
        logger.info("check-in rejected: %s by %s (%s)",
                    code, operator, error.code)
        raise error
    logger.info("check-in accepted: %s by %s", code, operator)
    return _result(ctx)


async def unredeem_ticket(
    db: GatedAsyncSession, code: str, admin: str
) -> Dict:
    """Administrative override: redeemed -> issued, logged as OVERRIDE."""
    code = code.strip().upper()
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE tickets
                SET state='issued', redeemed_at=NULL, redeemed_by=NULL
                WHERE code=:code AND state='redeemed'
                RETURNING id
            """), {"code": code})).first()
            if row is not None:
                await _log(db.session, code, admin, "OVERRIDE", "UNREDEEM")
            exists = row is not None or (await db.session.execute(
                text("SELECT 1 FROM tickets WHERE code=:code"),
                {"code": code},
            )).first() is not None

    if not exists:
        raise UnknownCode(code)
    if row is None:
        raise NotRedeemed(f"ticket {code} is not redeemed")
    logger.warning("ticket %s un-redeemed by %s", code, admin)
    return {"code": code, "state": ISSUED}


async def recent_checkins(
    db: GatedAsyncSession, limit: int = 50
) -> List[Dict]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, code, operator, outcome, reason, created_at
                FROM checkin_log ORDER BY id DESC LIMIT :lim
            """), {"lim": max(1, min(int(limit), 500))})).mappings().all()
    return [dict(r) for r in rows]
