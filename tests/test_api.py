import pytest

from luxetix import server
from luxetix.errors import GatewayUnavailable
from luxetix.gateway import MockPay, mock_signature
from luxetix.model import orders
from tests.helpers import available, seed_tier

CHECKOUT = {
    "customer_name": "Ayu Lestari",
    "customer_email": "ayu@example.com",
    "customer_phone": "+628123456789",
    "payment_method": "VA",
    "method_detail": "BCA",
}


async def _checkout(api, tier="ga", qty=2, **extra):
    return await api.post("/api/checkout", json={
        **CHECKOUT, **extra, "items": [{"tier_id": tier, "quantity": qty}],
    })


async def _login(api):
    r = await api.post("/admin/login", data={
        "username": "admin", "password": "letmein", "next": "/done",
    })
    assert r.status_code == 303
    assert r.headers["location"] == "/done"


async def test_buy_pay_and_check_in(api, api_db):
    await seed_tier(api_db, "ga", 10, price=150_000)

    r = await _checkout(api, qty=2)
    assert r.status_code == 201, r.text
    order = r.json()
    assert order["status"] == orders.AWAITING_PAYMENT
    assert order["total_amount"] == 300_000
    assert order["payment_id"].startswith("mock_")

    r = await api.post(f"/mockpay/{order['payment_id']}/emit",
                       data={"t": "succeeded"})
    assert r.status_code == 200, r.text
    assert r.json()["webhook_response"]["outcome"] == "paid"

    view = (await api.get(f"/api/orders/{order['order_id']}")).json()
    assert view["status"] == orders.PAID
    assert view["fulfilled"] is True
    codes = [t["code"] for t in view["items"][0]["tickets"]]
    assert len(codes) == 2

    r = await api.get("/api/inventory/ga")
    assert r.json()["available"] == 8
    assert r.json()["sold"] == 2

    ok = (await api.post("/api/checkin", json={
        "raw": f"TICKET:{codes[0]}|EVENT:c1", "operator": "gate-1",
    })).json()
    assert ok["status"] == "ACCEPTED"
    assert ok["holder"]["email"] == "ayu@example.com"

    again = (await api.post("/api/checkin", json={
        "code": codes[0], "operator": "gate-2",
    })).json()
    assert again["status"] == "REJECTED"
    assert again["reason_code"] == "ALREADY_REDEEMED"
    assert again["redeemed_by"] == "gate-1"
    assert again["redeemed_at"] == ok["redeemed_at"]


async def test_webhook_redelivery_is_deduplicated(api, api_db):
    await seed_tier(api_db, "ga", 5)
    order = (await _checkout(api, qty=1)).json()
    row = await orders.get_order(api_db, order["order_id"])
    body, headers = MockPay().build_callback(row, "succeeded")

    outcomes = []
    for _ in range(3):
        r = await api.post("/payments/webhook", content=body,
                           headers=headers)
        assert r.status_code == 200
        outcomes.append(r.json()["outcome"])
    assert outcomes == ["paid", "duplicate", "duplicate"]
    assert await available(api_db, "ga") == 4


async def test_webhook_rejects_bad_signature_and_json(api):
    r = await api.post("/payments/webhook", content=b"{}",
                       headers={"x-mockpay-signature": "nope"})
    assert r.status_code == 401

    body = b"not json"
    r = await api.post("/payments/webhook", content=body,
                       headers={"x-mockpay-signature": mock_signature(body)})
    assert r.status_code == 400


async def test_webhook_for_foreign_reference(api):
    body = b'{"external_id": "INV-42", "status": "PAID"}'
    r = await api.post("/payments/webhook", content=body,
                       headers={"x-mockpay-signature": mock_signature(body)})
    assert r.status_code == 200
    assert r.json()["outcome"] == "ignored"


async def test_webhook_before_payment_attached_asks_for_redelivery(
        api, api_db):
    await seed_tier(api_db, "ga", 5)
    row = await orders.create_ticket_order(
        api_db, [("ga", 1)],
        orders.Customer(name="Ayu", email="ayu@example.com"), 300,
    )
    body, headers = MockPay().build_callback(row, "succeeded")
    r = await api.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 503
    assert r.json()["error"] == "RETRY_LATER"


async def test_checkout_sold_out(api, api_db):
    await seed_tier(api_db, "ga", 1)
    r = await _checkout(api, qty=2)
    assert r.status_code == 409
    assert r.json()["error"] == "INSUFFICIENT_INVENTORY"
    assert r.json()["available"] == 1


async def test_checkout_rejected_method_cancels_order(api, api_db):
    await seed_tier(api_db, "ga", 5)
    r = await _checkout(api, qty=2, payment_method="CARD")
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_PAYMENT_REQUEST"
    assert await available(api_db, "ga") == 5


async def test_checkout_gateway_down_keeps_order(api, api_db, monkeypatch):
    await seed_tier(api_db, "ga", 5)

    class Down(MockPay):
        async def create_payment(self, order, method, method_detail=None):
            raise GatewayUnavailable("connect timeout")

    monkeypatch.setattr(server, "adapter", Down())
    r = await _checkout(api, qty=1)
    assert r.status_code == 503
    order_id = r.json()["order_id"]
    assert (await api.get(f"/api/orders/{order_id}")).json()["status"] == \
        orders.PENDING

    monkeypatch.undo()
    r = await api.post(f"/api/orders/{order_id}/payment",
                       json={"payment_method": "QRIS"})
    assert r.status_code == 201, r.text
    assert r.json()["status"] == orders.AWAITING_PAYMENT


async def test_cancel_checkout(api, api_db):
    await seed_tier(api_db, "ga", 5)
    row = await orders.create_ticket_order(
        api_db, [("ga", 3)],
        orders.Customer(name="Ayu", email="ayu@example.com"), 300,
    )
    r = await api.post(f"/api/orders/{row['id']}/cancel")
    assert r.json() == {"order_id": row["id"], "cancelled": True,
                        "status": orders.CANCELLED}
    assert await available(api_db, "ga") == 5


async def test_unknown_order(api):
    assert (await api.get("/api/orders/missing")).status_code == 404
    assert (await api.get("/api/inventory/missing")).status_code == 404


async def test_checkin_unreadable_and_unknown(api):
    r = (await api.post("/api/checkin", json={"raw": "garbage",
                                              "operator": "gate-1"})).json()
    assert r["reason_code"] == "UNREADABLE"
    r = (await api.post("/api/checkin", json={
        "code": "TKT-" + "7" * 16, "operator": "gate-1",
    })).json()
    assert r["status"] == "REJECTED"
    assert r["reason_code"] == "UNKNOWN_CODE"


async def test_agent_registration_flow(api):
    r = await api.post("/api/agents/register", json={
        **CHECKOUT, "user_id": "u-9", "business_name": "Tix Nusantara",
        "payment_method": "QRIS",
    })
    assert r.status_code == 201, r.text
    reg = r.json()
    assert reg["kind"] == "agent_registration"

    r = await api.post(f"/mockpay/{reg['payment_id']}/emit",
                       data={"t": "succeeded"})
    assert r.json()["webhook_response"]["outcome"] == "paid"

    status = (await api.get("/api/agents/u-9/status")).json()
    assert status["agent"]["registration_status"] == "active"
    assert status["roles"] == ["agent"]


@pytest.mark.parametrize("path", [
    "/api/admin/checkins", "/api/admin/timings", "/api/admin/callbacks",
])
async def test_admin_requires_login(api, path):
    assert (await api.get(path)).status_code == 401


async def test_admin_login_and_tools(api, api_db):
    r = await api.post("/admin/login", data={"username": "admin",
                                             "password": "wrong"})
    assert r.status_code == 401
    assert (await api.get("/admin/login")).status_code == 200

    await _login(api)
    await seed_tier(api_db, "ga", 5)
    order = (await _checkout(api, qty=1)).json()
    await api.post(f"/mockpay/{order['payment_id']}/emit",
                   data={"t": "succeeded"})
    code = (await api.get(f"/api/orders/{order['order_id']}")).json()[
        "items"][0]["tickets"][0]["code"]
    await api.post("/api/checkin", json={"code": code, "operator": "g1"})

    r = await api.post(f"/api/admin/tickets/{code}/unredeem")
    assert r.json() == {"code": code, "state": "issued"}
    r = await api.post(f"/api/admin/tickets/{code}/unredeem")
    assert r.status_code == 409

    items = (await api.get("/api/admin/checkins")).json()["items"]
    assert [i["outcome"] for i in items] == ["OVERRIDE", "ACCEPTED"]
    callbacks = (await api.get("/api/admin/callbacks")).json()["items"]
    assert callbacks[0]["outcome"] == "paid"

    r = await api.post(f"/api/admin/orders/{order['order_id']}/fulfill")
    assert r.json()["tickets"] == 1
    assert (await api.post("/api/admin/sweep")).json() == {"expired": 0}
    kinds = {t["kind"] for t in
             (await api.get("/api/admin/timings")).json()["items"]}
    assert "webhook.handle" in kinds

    await api.get("/admin/logout")
    assert (await api.get("/api/admin/checkins")).status_code == 401
