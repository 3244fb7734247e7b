# model/callbackevents/__init__.py
import os
from typing import Optional

import redis.asyncio as redis

from ...infra.sql import GatedAsyncSession
from ._common import CLAIMED, RESUMED, DUPLICATE

BACKEND = os.getenv("DEDUP_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import CallbackEventStore as _CallbackEventStore
else:
    from ._sql import CallbackEventStore as _CallbackEventStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[GatedAsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CallbackEventStore(redis) requires r=redis.Redis"
            )
        return _CallbackEventStore(r=r, ttl_seconds=ttl_seconds)
    else:
        if db is None:
            raise RuntimeError(
                "CallbackEventStore(sql) requires db=GatedAsyncSession"
            )
        return _CallbackEventStore(db=db)


CallbackEventStore = _CallbackEventStore
__all__ = [
    "CallbackEventStore", "new_store", "BACKEND",
    "CLAIMED", "RESUMED", "DUPLICATE",
]
