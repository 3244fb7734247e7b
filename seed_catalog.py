import asyncio
import os
import sys

from sqlalchemy import text

from luxetix.helpers import now_ts
from luxetix.infra.sql import make_async_engine
from luxetix.model.db import Base

# Config
CONCERT = dict(
    id="luxe-2026-jkt",
    title="LuxeTix Live",
    artist="Various Artists",
    venue="Istora Senayan",
    city="Jakarta",
    starts_at=now_ts() + 30 * 24 * 3600,
)

# id, name, price (IDR), quantity
TIERS = [
    ("luxe-2026-jkt-vip", "VIP", 2_500_000, 100),
    ("luxe-2026-jkt-cat1", "CAT 1", 1_250_000, 1_000),
    ("luxe-2026-jkt-cat2", "CAT 2", 750_000, 5_000),
]


async def seed(database_url: str) -> None:
    engine, SessionAsync, _, _ = make_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        await conn.execute(text("""
            INSERT INTO concerts(id, title, artist, venue, city, starts_at)
            VALUES(:id, :title, :artist, :venue, :city, :starts_at)
            ON CONFLICT (id) DO NOTHING
        """), CONCERT)
        print('✅ concert created')

        for tier_id, name, price, qty in TIERS:
            # re-running never resets a live counter
            await conn.execute(text("""
                INSERT INTO ticket_tiers(id, concert_id, name, price,
                                         total_quantity, available_quantity)
                VALUES(:id, :c, :n, :p, :q, :q)
                ON CONFLICT (id) DO NOTHING
            """), {"id": tier_id, "c": CONCERT["id"], "n": name, "p": price,
                   "q": qty})
        print('✅ ticket tiers created')
    await engine.dispose()


if __name__ == '__main__':
    url = os.getenv("DATABASE_URL")
    if not url:
        print("NEED DATABASE_URL! e.g. sqlite:///./luxetix.db")
        sys.exit(1)
    asyncio.run(seed(url))
