"""
Webhook reconciliation: turn a gateway callback into exactly-once effects.

  1. no reference of ours              -> IGNORED
  2. event id completed before         -> DUPLICATE
  3. order already resolved            -> ALREADY_RESOLVED
  4. paid:   awaiting_payment -> paid, then fulfill
  5. failed: awaiting_payment -> failed, then release inventory

Fulfillment (finalize reservations, issue tickets, kind-specific grant,
stamp fulfilled_at) runs in one transaction after the paid transition has
committed. Every step in it is idempotent, so a delivery that died half way
is simply replayed by the next one: the event stays un-completed in the
dedup store and the order stays paid-but-unfulfilled until it succeeds.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import RetryLater
from .gateway import CB_FAILED, CB_PAID, CallbackEvent
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import agents, inventory, orders, tickets
from .model.callbackevents import DUPLICATE, CallbackEventStore

logger = logging.getLogger(__name__)

IGNORED = "ignored"
DUPLICATE_EVENT = "duplicate"
ALREADY_RESOLVED = "already_resolved"
PAID = "paid"
FULFILLED = "fulfilled"
FAILED = "failed"
NOOP = "noop"

Grant = Callable[[AsyncSession, str], Awaitable[bool]]


@dataclass
class ReconcileResult:
    outcome: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    tickets: int = 0

    def as_dict(self) -> Dict:
        return {
            "ok": True,
            "outcome": self.outcome,
            "order_id": self.order_id,
            "order_status": self.order_status,
            "tickets": self.tickets,
        }


class Reconciler:

    def __init__(self, db: GatedAsyncSession, events: CallbackEventStore,
                 *, agent_max_events: int = 5) -> None:
        self.db = db
        self.events = events
        self.grants: Dict[str, Grant] = {
            orders.KIND_AGENT_REGISTRATION: (
                lambda s, oid: agents._grant_agent(s, oid, agent_max_events)
            ),
        }

    async def handle(self, event: Optional[CallbackEvent]) -> ReconcileResult:
        if event is None:
            logger.info("callback without a reference of ours, ignored")
            return ReconcileResult(IGNORED)

        async with timeit("reconcile.claim"):
            claim = await self.events.claim(event)
        if claim == DUPLICATE:
            logger.info("callback %s for order %s already handled",
                        event.event_id, event.order_id)
            return ReconcileResult(DUPLICATE_EVENT, event.order_id)

        result = await self._apply(event)
        await self.events.complete(event.event_id, result.outcome)
        logger.info("callback %s (%s) for order %s: %s",
                    event.event_id, event.status, event.order_id,
                    result.outcome)
        return result

    async def _apply(self, event: CallbackEvent) -> ReconcileResult:
        order_id = event.order_id
        await orders.expire_if_due(self.db, order_id)
        order = await orders.get_order(self.db, order_id)
        if order is None:
            logger.warning("callback %s references unknown order %s",
                           event.event_id, order_id)
            return ReconcileResult(IGNORED, order_id)

        if event.status == CB_PAID:
            return await self._paid(event, order)
        if event.status == CB_FAILED:
            return await self._failed(event, order)
        return ReconcileResult(NOOP, order_id, order["status"])

    async def _paid(self, event: CallbackEvent, order: Dict) -> ReconcileResult:
        order_id = order["id"]
        status = order["status"]
        outcome = FULFILLED

        if status == orders.AWAITING_PAYMENT:
            async with timeit("reconcile.mark_paid"):
                res = await orders.mark_paid(self.db, order_id)
            status = res.current
            if res.applied:
                outcome = PAID
            else:
                order = await orders.get_order(self.db, order_id) or order

        if status == orders.PENDING:
            # the callback overtook attach_payment; let the gateway redeliver
            raise RetryLater(f"order {order_id} has no payment attached yet")

        if status == orders.PAID and (
                outcome == PAID or order.get("fulfilled_at") is None):
            issued = await self.fulfill(order_id, order["kind"])
            return ReconcileResult(outcome, order_id, orders.PAID, issued)

        if status != orders.PAID:
            # money arrived for an order we already gave up on
            logger.error("paid callback %s for %s order %s needs a refund",
                         event.event_id, status, order_id)
        return ReconcileResult(ALREADY_RESOLVED, order_id, status)

    async def _failed(
        self, event: CallbackEvent, order: Dict
    ) -> ReconcileResult:
        order_id = order["id"]
        if order["status"] == orders.PENDING:
            raise RetryLater(f"order {order_id} has no payment attached yet")
        if order["status"] == orders.AWAITING_PAYMENT:
            res = await orders.fail_order(self.db, order_id)
            if res.applied:
                return ReconcileResult(FAILED, order_id, orders.FAILED)
            return ReconcileResult(ALREADY_RESOLVED, order_id, res.current)
        return ReconcileResult(ALREADY_RESOLVED, order_id, order["status"])

    async def fulfill(self, order_id: str, kind: str) -> int:
        """
        Replayable fulfillment of a paid order. Returns the number of
        tickets the order holds afterwards.
        """
        async with timeit("reconcile.fulfill"):
            async with self.db.gated():
                async with self.db.session.begin():
                    s = self.db.session
                    await inventory._finalize_for_order(s, order_id)
                    issued = await tickets._issue_for_order(s, order_id)
                    grant = self.grants.get(kind)
                    if grant is not None:
                        await grant(s, order_id)
                    await orders._mark_fulfilled(s, order_id)
        logger.info("order %s fulfilled: %d ticket(s)", order_id, len(issued))
        return len(issued)
