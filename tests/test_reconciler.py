import asyncio
import json

import pytest

from luxetix import reconciler as rc
from luxetix.errors import InvalidOrder, RetryLater
from luxetix.gateway import MockPay, parse_callback
from luxetix.helpers import now_ts
from luxetix.model import agents, orders
from luxetix.model.callbackevents import CLAIMED, DUPLICATE, RESUMED
from luxetix.model.callbackevents._sql import CallbackEventStore
from luxetix.reconciler import Reconciler
from tests.helpers import available, awaiting_order, count, customer, \
    seed_tier


def _event(order, outcome="succeeded"):
    body, headers = MockPay().build_callback(order, outcome)
    return parse_callback(json.loads(body), headers)


def _reconciler(db):
    return Reconciler(db, CallbackEventStore(db=db), agent_max_events=7)


async def test_repeated_delivery_fulfills_once(db):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 3)
    assert await available(db, "ga") == 7
    event = _event(order)

    outcomes = []
    for _ in range(5):
        outcomes.append((await _reconciler(db).handle(event)).outcome)
    assert outcomes == [rc.PAID] + [rc.DUPLICATE_EVENT] * 4

    view = await orders.get_order_view(db, order["id"])
    assert view["status"] == orders.PAID
    assert view["fulfilled_at"] is not None
    assert len(view["items"][0]["tickets"]) == 3
    assert await count(db, "SELECT COUNT(*) FROM tickets") == 3
    assert await available(db, "ga") == 7
    assert await count(
        db, "SELECT COUNT(*) FROM reservations WHERE status='consumed'"
    ) == 1


async def test_concurrent_deliveries_fulfill_once(db, sessions):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 3)
    event = _event(order)

    results = await asyncio.gather(*[
        _reconciler(s).handle(event) for s in [sessions() for _ in range(5)]
    ])
    outcomes = [r.outcome for r in results]
    assert outcomes.count(rc.PAID) == 1
    assert set(outcomes) - {rc.PAID} <= {
        rc.DUPLICATE_EVENT, rc.ALREADY_RESOLVED, rc.FULFILLED,
    }
    assert await count(db, "SELECT COUNT(*) FROM tickets") == 3
    assert await available(db, "ga") == 7
    view = await orders.get_order_view(db, order["id"])
    assert view["status"] == orders.PAID


async def test_distinct_events_for_same_payment(db):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 2)

    first = await _reconciler(db).handle(_event(order))
    second = await _reconciler(db).handle(_event(order))
    assert first.outcome == rc.PAID and first.tickets == 2
    assert second.outcome == rc.ALREADY_RESOLVED
    assert await count(db, "SELECT COUNT(*) FROM tickets") == 2


async def test_unknown_reference_is_acknowledged(db):
    res = await _reconciler(db).handle(
        parse_callback({"external_id": "INV-1", "status": "PAID"})
    )
    assert res.outcome == rc.IGNORED
    assert await count(db, "SELECT COUNT(*) FROM payment_callback_events") \
        == 0


async def test_unknown_order_is_ignored(db):
    res = await _reconciler(db).handle(
        parse_callback({"external_id": "LTX-ORD-missing", "status": "PAID",
                        "id": "x1"})
    )
    assert res.outcome == rc.IGNORED
    assert res.order_id == "missing"


async def test_failed_payment_releases_inventory(db):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 4)

    res = await _reconciler(db).handle(_event(order, "failed"))
    assert res.outcome == rc.FAILED
    assert await available(db, "ga") == 10

    # money arriving after the failure does not resurrect the order
    late = await _reconciler(db).handle(_event(order))
    assert late.outcome == rc.ALREADY_RESOLVED
    assert late.order_status == orders.FAILED
    assert await count(db, "SELECT COUNT(*) FROM tickets") == 0


async def test_paid_after_expiry_is_not_fulfilled(db):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 2, ttl=60)
    await orders.expire_if_due(db, order["id"], now=now_ts() + 120)

    res = await _reconciler(db).handle(_event(order))
    assert res.outcome == rc.ALREADY_RESOLVED
    assert res.order_status == orders.EXPIRED
    assert await available(db, "ga") == 10


async def test_callback_before_payment_attached(db):
    await seed_tier(db, "ga", 10)
    order = await orders.create_ticket_order(db, [("ga", 1)], customer(),
                                             300)
    event = _event(order)
    with pytest.raises(RetryLater):
        await _reconciler(db).handle(event)

    # the redelivery after attach goes through
    await orders.attach_payment(db, order["id"], "VA", "pay_1")
    res = await _reconciler(db).handle(event)
    assert res.outcome == rc.PAID


async def test_interrupted_fulfillment_is_replayed(db, monkeypatch):
    await seed_tier(db, "ga", 10)
    order = await awaiting_order(db, "ga", 2)
    event = _event(order)

    async def boom(s, order_id):
        raise RuntimeError("db went away")

    monkeypatch.setattr(rc.tickets, "_issue_for_order", boom)
    with pytest.raises(RuntimeError):
        await _reconciler(db).handle(event)
    monkeypatch.undo()

    half = await orders.get_order(db, order["id"])
    assert half["status"] == orders.PAID
    assert half["fulfilled_at"] is None
    assert await count(db, "SELECT COUNT(*) FROM tickets") == 0

    res = await _reconciler(db).handle(event)
    assert res.outcome == rc.FULFILLED
    assert res.tickets == 2
    assert (await orders.get_order(db, order["id"]))["fulfilled_at"]


async def test_agent_registration_granted_once(db):
    reg = await agents.create_registration(
        db, customer=customer("agent-user"), business_name="Tix Nusantara",
        fee=500_000, ttl_seconds=3600,
    )
    assert reg["kind"] == orders.KIND_AGENT_REGISTRATION
    await orders.attach_payment(db, reg["id"], "QRIS", "qr_1")

    payload = {"external_id": "AGENT-REG-" + reg["id"],
               "status": "COMPLETED"}
    for i in range(3):
        await _reconciler(db).handle(
            parse_callback({**payload, "id": f"evt_{i}"})
        )
    # a manual replay re-runs the grant upserts
    await _reconciler(db).fulfill(reg["id"], reg["kind"])

    assert await count(db, "SELECT COUNT(*) FROM agents") == 1
    assert await count(db, "SELECT COUNT(*) FROM user_roles") == 1
    status = await agents.registration_status(db, "agent-user")
    assert status["agent"]["registration_status"] == "active"
    assert status["agent"]["max_events"] == 7
    assert status["roles"] == [agents.ROLE_AGENT]
    assert status["registration"]["processed_at"] is not None


async def test_agent_registration_same_payload_three_times(db):
    reg = await agents.create_registration(
        db, customer=customer("agent-user"), business_name="Tix Nusantara",
        fee=500_000, ttl_seconds=3600,
    )
    await orders.attach_payment(db, reg["id"], "QRIS", "qr_1")
    payload = {"external_id": "AGENT-REG-" + reg["id"],
               "status": "COMPLETED"}

    outcomes = []
    for _ in range(3):
        outcomes.append(
            (await _reconciler(db).handle(parse_callback(payload))).outcome
        )
    assert outcomes == [rc.PAID, rc.DUPLICATE_EVENT, rc.DUPLICATE_EVENT]
    assert await count(db, "SELECT COUNT(*) FROM agents") == 1
    assert await count(db, "SELECT COUNT(*) FROM user_roles") == 1


async def test_active_agent_cannot_register_again(db):
    reg = await agents.create_registration(
        db, customer=customer("agent-user"), business_name="Tix Nusantara",
        fee=500_000, ttl_seconds=3600,
    )
    await orders.attach_payment(db, reg["id"], "QRIS", "qr_1")
    await _reconciler(db).handle(parse_callback(
        {"external_id": "AGENT-REG-" + reg["id"], "status": "PAID"}
    ))
    with pytest.raises(InvalidOrder):
        await agents.create_registration(
            db, customer=customer("agent-user"), business_name="Again",
            fee=500_000, ttl_seconds=3600,
        )


async def test_dedup_store_claims(db):
    store = CallbackEventStore(db=db)
    event = parse_callback({"external_id": "LTX-ORD-1", "status": "PAID",
                            "id": "e1"})
    assert event.event_id == "e1:paid"
    assert await store.claim(event) == CLAIMED
    assert await store.claim(event) == RESUMED
    await store.complete(event.event_id, "paid")
    assert await store.claim(event) == DUPLICATE

    rec = await store.get(event.event_id)
    assert rec["outcome"] == "paid"
    assert rec["payload"]["id"] == "e1"
    assert [r["event_id"] for r in await store.recent()] == ["e1:paid"]
