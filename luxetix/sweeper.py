"""
Periodic expiry sweep. Expiry is already applied lazily on access; the sweep
only gives abandoned reservations back sooner. It uses the same conditional
transition as the lazy path, so it can run next to live webhook traffic.
"""
from __future__ import annotations
import asyncio
import logging
from typing import AsyncContextManager, Callable, Optional

from .infra.sql import GatedAsyncSession
from .model import orders

logger = logging.getLogger(__name__)


async def sweep_expired(
    db: GatedAsyncSession, limit: int = 100, now: Optional[float] = None
) -> int:
    expired = 0
    for order_id in await orders.due_order_ids(db, limit=limit, now=now):
        if await orders.expire_if_due(db, order_id, now=now):
            expired += 1
    if expired:
        logger.info("sweep expired %d order(s)", expired)
    return expired


async def run_sweeper(
    session_factory: Callable[[], AsyncContextManager[GatedAsyncSession]],
    interval: float,
    stop: asyncio.Event,
) -> None:
    logger.info("expiry sweep every %.0fs", interval)
    while not stop.is_set():
        try:
            async with session_factory() as db:
                await sweep_expired(db)
        except Exception:
            # keep sweeping; the lazy path still guards correctness
            logger.exception("expiry sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
