# model/agents.py
"""
Agent registration: a paid order of kind `agent_registration` whose
fulfillment promotes the user to an active agent.

The grant is written with upserts (one agents row per user, one
(user_id, role) pair), so replaying fulfillment never duplicates it.
"""

from __future__ import annotations
import logging
import uuid
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidOrder
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from . import orders
from .db import AgentRegistration

logger = logging.getLogger(__name__)

ROLE_AGENT = "agent"


async def _active_agent(db: AsyncSession, user_id: str) -> Optional[Dict]:
    row = (await db.execute(text("""
        SELECT id, registration_status FROM agents
        WHERE user_id=:u AND registration_status='active'
    """), {"u": user_id})).mappings().first()
    return dict(row) if row else None


async def create_registration(
    db: GatedAsyncSession,
    *,
    customer: orders.Customer,
    business_name: str,
    business_description: Optional[str] = None,
    bank_account_name: Optional[str] = None,
    bank_account_number: Optional[str] = None,
    bank_name: Optional[str] = None,
    fee: int,
    ttl_seconds: int,
) -> Dict:
    if not customer.user_id:
        raise InvalidOrder("agent registration needs a user id")
    if not (business_name or "").strip():
        raise InvalidOrder("Business name is required")
    orders._validate_customer(customer)

    async with db.gated():
        async with db.session.begin():
            if await _active_agent(db.session, customer.user_id):
                raise InvalidOrder("You are already an active agent")
            order = await orders._insert_order(
                db.session, kind=orders.KIND_AGENT_REGISTRATION,
                total_amount=fee, customer=customer,
                ttl_seconds=ttl_seconds,
            )
            db.session.add(AgentRegistration(
                order_id=order.id,
                user_id=customer.user_id,
                business_name=business_name.strip(),
                business_description=business_description,
                bank_account_name=bank_account_name,
                bank_account_number=bank_account_number,
                bank_name=bank_name,
                registration_fee=fee,
            ))
            await db.session.flush()
            view = await orders._get_order(db.session, order.id)

    logger.info("agent registration %s created for user %s",
                view["id"], customer.user_id)
    return view


async def _grant_agent(
    db: AsyncSession, order_id: str, default_max_events: int = 5
) -> bool:
    """
    Returns True if this call activated the registration, False if it had
    been processed before (the upserts still run, they are no-ops then).
    """
    reg = (await db.execute(text("""
        SELECT r.user_id, r.business_name, r.business_description,
               r.bank_account_name, r.bank_account_number, r.bank_name,
               o.payment_id
        FROM agent_registrations r JOIN orders o ON o.id = r.order_id
        WHERE r.order_id=:o
    """), {"o": order_id})).mappings().first()
    if reg is None:
        raise InvalidOrder(f"no agent registration for order {order_id}")

    now = now_ts()
    await db.execute(text("""
        INSERT INTO agents(
            id, user_id, business_name, business_description,
            bank_account_name, bank_account_number, bank_name, max_events,
            registration_status, registration_payment_id, created_at
        ) VALUES (
            :id, :u, :bn, :bd, :ban, :banr, :bank, :me, 'active', :pid, :now
        )
        ON CONFLICT (user_id) DO UPDATE SET
            registration_status='active',
            registration_payment_id=EXCLUDED.registration_payment_id
    """), {
        "id": uuid.uuid4().hex,
        "u": reg["user_id"],
        "bn": reg["business_name"],
        "bd": reg["business_description"],
        "ban": reg["bank_account_name"],
        "banr": reg["bank_account_number"],
        "bank": reg["bank_name"],
        "me": default_max_events,
        "pid": reg["payment_id"],
        "now": now,
    })
    await db.execute(text("""
        INSERT INTO user_roles(user_id, role) VALUES(:u, :r)
        ON CONFLICT (user_id, role) DO NOTHING
    """), {"u": reg["user_id"], "r": ROLE_AGENT})

    first = (await db.execute(text("""
        UPDATE agent_registrations SET processed_at=:now
        WHERE order_id=:o AND processed_at IS NULL
        RETURNING order_id
    """), {"o": order_id, "now": now})).first()
    if first is not None:
        logger.info("user %s promoted to agent (order %s)",
                    reg["user_id"], order_id)
    return first is not None


async def registration_status(
    db: GatedAsyncSession, user_id: str
) -> Dict:
    async with db.gated():
        async with db.session.begin():
            reg = (await db.session.execute(text("""
                SELECT r.order_id, r.business_name, r.registration_fee,
                       r.processed_at, o.status, o.expires_at
                FROM agent_registrations r JOIN orders o ON o.id = r.order_id
                WHERE r.user_id=:u
                ORDER BY o.created_at DESC LIMIT 1
            """), {"u": user_id})).mappings().first()
            agent = (await db.session.execute(text("""
                SELECT id, business_name, max_events, registration_status
                FROM agents WHERE user_id=:u
            """), {"u": user_id})).mappings().first()
            roles = [r[0] for r in (await db.session.execute(
                text("SELECT role FROM user_roles WHERE user_id=:u"),
                {"u": user_id},
            )).all()]
    return {
        "registration": dict(reg) if reg else None,
        "agent": dict(agent) if agent else None,
        "roles": roles,
    }
