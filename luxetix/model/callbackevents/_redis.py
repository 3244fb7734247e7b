from __future__ import annotations
import json
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import redis.asyncio as redis

from ...helpers import now_ts
from ._common import CLAIMED, DUPLICATE, RESUMED

if TYPE_CHECKING:
    from ...gateway import CallbackEvent


# ---- keys
def k_evt(event_id: str) -> str: return f"cbevt:{event_id}"


RECENT_INDEX = "cbevts"


class CallbackEventStore:
    """
    Dedup store on Redis. SET NX is the unique constraint; the value records
    whether the effects ran to completion so a crashed delivery is resumed
    rather than swallowed.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def claim(self, event: "CallbackEvent") -> str:
        record = {
            "event_id": event.event_id,
            "order_id": event.order_id,
            "reference": event.reference,
            "status": event.status,
            "payload": event.payload,
            "received_at": now_ts(),
            "completed_at": None,
            "outcome": None,
        }
        ok = await self.r.set(k_evt(event.event_id), json.dumps(record),
                              nx=True, ex=self.ttl)
        if ok:
            await self.r.zadd(RECENT_INDEX,
                              {event.event_id: record["received_at"]})
            return CLAIMED
        current = await self.get(event.event_id)
        if current and current.get("completed_at") is not None:
            return DUPLICATE
        return RESUMED

    async def complete(self, event_id: str, outcome: str) -> None:
        current = await self.get(event_id) or {"event_id": event_id}
        if current.get("completed_at") is not None:
            return
        current["completed_at"] = now_ts()
        current["outcome"] = outcome
        await self.r.set(k_evt(event_id), json.dumps(current), ex=self.ttl)

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.r.get(k_evt(event_id))
        return json.loads(raw) if raw else None

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        ids = await self.r.zrevrange(RECENT_INDEX, 0, max(0, limit - 1))
        pipe = self.r.pipeline()
        for event_id in ids:
            pipe.get(k_evt(event_id))
        rows = await pipe.execute()
        items = []
        for event_id, raw in zip(ids, rows):
            # house-keeping: key expired, drop it from the index
            if not raw:
                await self.r.zrem(RECENT_INDEX, event_id)
                continue
            items.append(json.loads(raw))
        return items
