from __future__ import annotations
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import JSON, bindparam, text

from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession
from ._common import CLAIMED, DUPLICATE, RESUMED

if TYPE_CHECKING:
    from ...gateway import CallbackEvent


_INSERT = text("""
    INSERT INTO payment_callback_events(
        event_id, order_id, reference, status, payload, received_at
    ) VALUES (:event_id, :order_id, :reference, :status, :payload, :now)
    ON CONFLICT (event_id) DO NOTHING
    RETURNING event_id
""").bindparams(bindparam("payload", type_=JSON))


class CallbackEventStore:
    """
    Dedup store on the `payment_callback_events` table. The primary key on
    event_id is the unique constraint every concurrent delivery races on.
    Rows double as the audit trail of raw callbacks.
    """

    def __init__(self, *, db: GatedAsyncSession) -> None:
        self.db = db

    async def claim(self, event: "CallbackEvent") -> str:
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(_INSERT, {
                    "event_id": event.event_id,
                    "order_id": event.order_id,
                    "reference": event.reference,
                    "status": event.status,
                    "payload": event.payload,
                    "now": now_ts(),
                })).first()
                if row is not None:
                    return CLAIMED
                done = (await self.db.session.execute(text("""
                    SELECT completed_at FROM payment_callback_events
                    WHERE event_id=:e
                """), {"e": event.event_id})).first()
        return DUPLICATE if done and done[0] is not None else RESUMED

    async def complete(self, event_id: str, outcome: str) -> None:
        async with self.db.gated():
            async with self.db.session.begin():
                await self.db.session.execute(text("""
                    UPDATE payment_callback_events
                    SET completed_at=:now, outcome=:o
                    WHERE event_id=:e AND completed_at IS NULL
                """), {"e": event_id, "o": outcome, "now": now_ts()})

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(text("""
                    SELECT event_id, order_id, reference, status, payload,
                           received_at, completed_at, outcome
                    FROM payment_callback_events WHERE event_id=:e
                """).columns(payload=JSON),
                    {"e": event_id})).mappings().first()
        return dict(row) if row else None

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.session.begin():
                rows = (await self.db.session.execute(text("""
                    SELECT event_id, order_id, reference, status,
                           received_at, completed_at, outcome
                    FROM payment_callback_events
                    ORDER BY received_at DESC LIMIT :lim
                """), {"lim": max(1, min(int(limit), 500))})).mappings().all()
        return [dict(r) for r in rows]
