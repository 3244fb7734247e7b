from sqlalchemy import text

from luxetix.gateway import MockPay
from luxetix.infra.sql import GatedAsyncSession
from luxetix.model import orders


async def seed_tier(db: GatedAsyncSession, tier_id: str, qty: int,
                    price: int = 100_000) -> str:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                INSERT INTO concerts(id, title, artist, venue, city)
                VALUES('c1', 'Test Night', 'The Testers', 'Hall A',
                       'Jakarta')
                ON CONFLICT (id) DO NOTHING
            """))
            await db.session.execute(text("""
                INSERT INTO ticket_tiers(id, concert_id, name, price,
                                         total_quantity, available_quantity)
                VALUES(:id, 'c1', :n, :p, :q, :q)
            """), {"id": tier_id, "n": tier_id.upper(), "p": price,
                   "q": qty})
    return tier_id


async def available(db: GatedAsyncSession, tier_id: str) -> int:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                text("SELECT available_quantity FROM ticket_tiers "
                     "WHERE id=:t"), {"t": tier_id},
            )).scalar_one()


async def count(db: GatedAsyncSession, sql: str, **params) -> int:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(text(sql), params)).scalar_one()


def customer(user_id: str = "user-1") -> orders.Customer:
    return orders.Customer(name="Ayu Lestari", email="ayu@example.com",
                           phone="+628123456789", user_id=user_id)


async def awaiting_order(db: GatedAsyncSession, tier_id: str, qty: int,
                         ttl: int = 300) -> dict:
    """A ticket order with a payment instrument attached."""
    order = await orders.create_ticket_order(
        db, [(tier_id, qty)], customer(), ttl
    )
    res = await orders.attach_payment(db, order["id"], "VA",
                                      "pay_" + order["id"])
    assert res.applied
    return await orders.get_order(db, order["id"])


def signed_callback(order: dict, outcome: str = "succeeded"):
    return MockPay().build_callback(order, outcome)
