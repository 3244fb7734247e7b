from __future__ import annotations
import sys

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .checkin import decode_scan
from .errors import (
    AlreadyRedeemed, GatewayUnavailable, InsufficientInventory,
    InvalidPaymentRequest, LuxetixError, RetryLater,
)
from .gateway import (
    MockPay, PaymentAdapter, XenditGateway, create_payment_with_retry,
)
from .helpers import ct_equal, to_iso
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import install_shutdown_report, snapshot, timeit
from .model import agents, inventory, orders, tickets
from .model.callbackevents import BACKEND as DEDUP_BACKEND, new_store
from .model.db import Base
from .reconciler import Reconciler
from .sweeper import run_sweeper, sweep_expired

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("luxetix")

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.error("NEED DATABASE_URL! e.g. sqlite:///./luxetix.db")
    sys.exit(1)

PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "mock").lower()
XENDIT_SECRET_KEY = os.environ.get("XENDIT_SECRET_KEY", "")
XENDIT_CALLBACK_TOKEN = os.environ.get("XENDIT_CALLBACK_TOKEN", "")
XENDIT_BASE_URL = os.environ.get("XENDIT_BASE_URL", "https://api.xendit.co")
SUCCESS_REDIRECT_URL = os.environ.get(
    "SUCCESS_REDIRECT_URL", "http://localhost:8000/order-success"
)
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

# 5 minutes to pay for tickets, 24h for an agent registration
ORDER_TTL_SECONDS = int(os.environ.get("ORDER_TTL_SECONDS", "300"))
AGENT_REGISTRATION_TTL_SECONDS = int(
    os.environ.get("AGENT_REGISTRATION_TTL_SECONDS", str(24 * 3600))
)
AGENT_REGISTRATION_FEE = int(os.environ.get("AGENT_REGISTRATION_FEE",
                                            "500000"))
AGENT_DEFAULT_MAX_EVENTS = int(os.environ.get("AGENT_DEFAULT_MAX_EVENTS",
                                              "5"))

GATEWAY_TIMEOUT = float(os.environ.get("GATEWAY_TIMEOUT", "10"))
GATEWAY_MAX_ATTEMPTS = int(os.environ.get("GATEWAY_MAX_ATTEMPTS", "3"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS",
                                              "60"))
CHECKIN_DEVICE_TOKEN = os.environ.get("CHECKIN_DEVICE_TOKEN", "")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


@asynccontextmanager
async def db_session():
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


def _make_adapter() -> PaymentAdapter:
    if PAYMENT_GATEWAY == "xendit":
        if not XENDIT_SECRET_KEY:
            raise RuntimeError("XENDIT_SECRET_KEY is not configured")
        return XenditGateway(
            secret_key=XENDIT_SECRET_KEY,
            callback_token=XENDIT_CALLBACK_TOKEN,
            base_url=XENDIT_BASE_URL,
            timeout=GATEWAY_TIMEOUT,
            success_redirect_url=SUCCESS_REDIRECT_URL,
        )
    return MockPay()


adapter: PaymentAdapter = _make_adapter()

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

app = FastAPI(
    title="LuxeTix",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)

install_shutdown_report(app)


async def callback_events(db: GatedAsyncSession = Depends(get_db)):
    if DEDUP_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        yield new_store(db=db)


async def reconciler(
    db: GatedAsyncSession = Depends(get_db),
    events=Depends(callback_events),
) -> Reconciler:
    return Reconciler(db, events, agent_max_events=AGENT_DEFAULT_MAX_EVENTS)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("LuxeTix is starting up...")
    logger.info("   - Payment gateway: %s", PAYMENT_GATEWAY)
    logger.info("   - Callback dedup backend: %s", DEDUP_BACKEND)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=5.0)


@app.on_event("startup")
async def _redis_start():
    if DEDUP_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweep_stop = asyncio.Event()
    app.state.sweeper = None
    if SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(run_sweeper(
            db_session, SWEEP_INTERVAL_SECONDS, app.state.sweep_stop
        ))


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        app.state.sweep_stop.set()
        await task
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    await adapter.aclose()


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Errors
# ----------------------------
_STATUS_BY_ERROR = {
    "GATEWAY_UNAVAILABLE": 503,
    "RETRY_LATER": 503,
    "INVALID_PAYMENT_REQUEST": 400,
    "INVALID_ORDER": 400,
    "UNKNOWN_TIER": 404,
    "ORDER_NOT_FOUND": 404,
    "ILLEGAL_TRANSITION": 409,
    "INSUFFICIENT_INVENTORY": 409,
    "TICKET_CODE_EXHAUSTED": 500,
    "UNKNOWN_CODE": 404,
    "ALREADY_REDEEMED": 409,
    "NOT_REDEEMED": 409,
    "UNREADABLE": 422,
}


@app.exception_handler(LuxetixError)
async def _luxetix_error(request: Request, exc: LuxetixError):
    body = {"error": exc.code, "detail": str(exc),
            "retryable": exc.retryable}
    if isinstance(exc, InsufficientInventory):
        body.update(tier_id=exc.tier_id, requested=exc.requested,
                    available=exc.available)
    return ORJSONResponse(body, status_code=_STATUS_BY_ERROR.get(exc.code,
                                                                 500))


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")
    return request.session["admin_user"]


def require_device(request: Request) -> None:
    if not CHECKIN_DEVICE_TOKEN:
        return
    token = request.headers.get("x-device-token", "")
    if not ct_equal(token, CHECKIN_DEVICE_TOKEN):
        raise HTTPException(status_code=401, detail="unknown scanner")


def _order_out(order: dict) -> dict:
    out = {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "kind": order["kind"],
        "status": order["status"],
        "total_amount": order["total_amount"],
        "currency": order["currency"],
        "payment_method": order["payment_method"],
        "payment_id": order["payment_id"],
        "created_at": to_iso(order["created_at"]),
        "expires_at": to_iso(order["expires_at"]),
        "paid_at": to_iso(order["paid_at"]),
        "fulfilled": order["fulfilled_at"] is not None,
    }
    if "items" in order:
        out["items"] = order["items"]
    return out


async def _start_payment(
    db: GatedAsyncSession, order: dict, method: str,
    method_detail: Optional[str], cancel_on_reject: bool,
):
    try:
        async with timeit("gateway.create_payment"):
            payment = await create_payment_with_retry(
                adapter, order, method, method_detail,
                attempts=GATEWAY_MAX_ATTEMPTS,
            )
    except GatewayUnavailable as e:
        # order stays pending; the client retries with the same order
        return ORJSONResponse({
            "error": e.code, "detail": str(e), "retryable": True,
            "order_id": order["id"],
            "retry_url": f"/api/orders/{order['id']}/payment",
        }, status_code=503)
    except InvalidPaymentRequest:
        if cancel_on_reject:
            await orders.cancel_order(db, order["id"])
        raise

    res = await orders.attach_payment(
        db, order["id"], payment.method, payment.payment_id
    )
    if not res.applied and res.current != orders.AWAITING_PAYMENT:
        raise HTTPException(409, detail=f"order is {res.current}")
    view = await orders.get_order(db, order["id"])
    return ORJSONResponse({
        **_order_out(view),
        "display_url": payment.display_url,
        "payment_data": payment.raw,
    }, status_code=201)


# ----------------------------
# API: Checkout
# ----------------------------
class CheckoutItem(BaseModel):
    tier_id: str
    quantity: int = Field(gt=0)


class CustomerIn(BaseModel):
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    user_id: Optional[str] = None

    def as_customer(self) -> orders.Customer:
        return orders.Customer(
            name=self.customer_name,
            email=self.customer_email,
            phone=self.customer_phone,
            user_id=self.user_id,
        )


class CheckoutIn(CustomerIn):
    items: List[CheckoutItem]
    payment_method: str
    method_detail: Optional[str] = None


class PaymentIn(BaseModel):
    payment_method: str
    method_detail: Optional[str] = None


@app.post("/api/checkout")
async def create_checkout(
    payload: CheckoutIn,
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("orders.create"):
        order = await orders.create_ticket_order(
            db,
            [(i.tier_id, i.quantity) for i in payload.items],
            payload.as_customer(),
            ORDER_TTL_SECONDS,
        )
    return await _start_payment(db, order, payload.payment_method,
                                payload.method_detail,
                                cancel_on_reject=True)


@app.post("/api/orders/{order_id}/payment")
async def retry_payment(
    order_id: str, payload: PaymentIn,
    db: GatedAsyncSession = Depends(get_db),
):
    await orders.expire_if_due(db, order_id)
    order = await orders.get_order(db, order_id)
    if not order:
        raise HTTPException(404, detail="order not found")
    if order["status"] != orders.PENDING:
        raise HTTPException(409, detail=f"order is {order['status']}")
    return await _start_payment(db, order, payload.payment_method,
                                payload.method_detail,
                                cancel_on_reject=False)


@app.post("/api/orders/{order_id}/cancel")
async def cancel_checkout(order_id: str,
                          db: GatedAsyncSession = Depends(get_db)):
    res = await orders.cancel_order(db, order_id)
    return {"order_id": order_id, "cancelled": res.applied,
            "status": res.current}


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: GatedAsyncSession = Depends(get_db)):
    async with timeit("orders.view"):
        view = await orders.get_order_view(db, order_id)
    if not view:
        raise HTTPException(404, detail="order not found")
    return _order_out(view)


@app.get("/api/inventory/{tier_id}")
async def get_inventory(tier_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
    stock = await inventory.tier_stock(db, tier_id)
    if stock is None:
        raise HTTPException(404, detail="tier not found")
    return {"tier_id": tier_id, **stock}


# ----------------------------
# API: Agent registration
# ----------------------------
class AgentRegistrationIn(CustomerIn):
    user_id: str
    business_name: str
    business_description: Optional[str] = None
    bank_account_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_name: Optional[str] = None
    payment_method: str
    method_detail: Optional[str] = None


@app.post("/api/agents/register")
async def register_agent(
    payload: AgentRegistrationIn,
    db: GatedAsyncSession = Depends(get_db),
):
    order = await agents.create_registration(
        db,
        customer=payload.as_customer(),
        business_name=payload.business_name,
        business_description=payload.business_description,
        bank_account_name=payload.bank_account_name,
        bank_account_number=payload.bank_account_number,
        bank_name=payload.bank_name,
        fee=AGENT_REGISTRATION_FEE,
        ttl_seconds=AGENT_REGISTRATION_TTL_SECONDS,
    )
    return await _start_payment(db, order, payload.payment_method,
                                payload.method_detail,
                                cancel_on_reject=True)


@app.get("/api/agents/{user_id}/status")
async def agent_status(user_id: str,
                       db: GatedAsyncSession = Depends(get_db)):
    return await agents.registration_status(db, user_id)


# ----------------------------
# Webhook endpoint (Xendit / MockPay)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    rec: Reconciler = Depends(reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    adapter.verify_webhook(payload, headers)
    try:
        body = json.loads(payload.decode() or "null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    event = adapter.parse_callback(body, headers)
    try:
        async with timeit("webhook.handle"):
            result = await rec.handle(event)
    except RetryLater as e:
        logger.info("callback deferred: %s", e)
        return ORJSONResponse({"ok": False, "error": e.code,
                               "detail": str(e)}, status_code=503)
    except Exception:
        logger.exception("webhook processing failed (event %s)",
                         event.event_id if event else None)
        return ORJSONResponse({"ok": False, "error": "PROCESSING_FAILED"},
                              status_code=500)
    return result.as_dict()


# ----------------------------
# API: Check-in
# ----------------------------
class CheckinIn(BaseModel):
    operator: str = Field(min_length=1)
    code: Optional[str] = None
    raw: Optional[str] = None


@app.post("/api/checkin")
async def checkin(
    payload: CheckinIn,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    require_device(request)
    try:
        code = decode_scan(payload.code or payload.raw)
    except LuxetixError as e:
        return {"status": "REJECTED", "reason_code": e.code,
                "detail": str(e)}

    try:
        async with timeit("checkin.redeem"):
            res = await tickets.redeem_ticket(db, code, payload.operator)
    except AlreadyRedeemed as e:
        return {
            "status": "REJECTED",
            "reason_code": e.code,
            "code": code,
            "redeemed_at": to_iso(e.redeemed_at),
            "redeemed_by": e.redeemed_by,
        }
    except LuxetixError as e:
        return {"status": "REJECTED", "reason_code": e.code, "code": code}

    return {
        "status": "ACCEPTED",
        "reason_code": "OK",
        "code": res.code,
        "redeemed_at": to_iso(res.redeemed_at),
        "redeemed_by": res.redeemed_by,
        "order_number": res.order_number,
        "holder": {"name": res.holder_name, "email": res.holder_email},
        "tier": res.tier_name,
        "concert": res.concert,
    }


# ----------------------------
# Admin
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request,
                          next: Optional[str] = "/api/admin/checkins"):
    return templates.TemplateResponse(
        request, "login.html", {"next": next, "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/checkins"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/api/admin/checkins"),
            status_code=HTTP_303_SEE_OTHER
        )
    # auth failed
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.post("/api/admin/tickets/{code}/unredeem")
async def admin_unredeem(
    code: str,
    admin: str = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    return await tickets.unredeem_ticket(db, code, admin)


@app.get("/api/admin/checkins")
async def api_admin_checkins(
    limit: int = 50,
    _: str = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"items": await tickets.recent_checkins(db, limit), "limit": limit}


@app.get("/api/admin/callbacks")
async def api_admin_callbacks(
    limit: int = 100,
    _: str = Depends(require_admin),
    events=Depends(callback_events),
):
    return {"items": await events.recent(limit), "limit": limit}


@app.post("/api/admin/orders/{order_id}/fulfill")
async def api_admin_fulfill(
    order_id: str,
    _: str = Depends(require_admin),
    rec: Reconciler = Depends(reconciler),
    db: GatedAsyncSession = Depends(get_db),
):
    order = await orders.get_order(db, order_id)
    if not order:
        raise HTTPException(404, detail="order not found")
    if order["status"] != orders.PAID:
        raise HTTPException(409, detail=f"order is {order['status']}")
    issued = await rec.fulfill(order_id, order["kind"])
    return {"order_id": order_id, "tickets": issued}


@app.post("/api/admin/sweep")
async def api_admin_sweep(
    limit: int = 100,
    _: str = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"expired": await sweep_expired(db, limit=limit)}


@app.get("/api/admin/timings")
async def api_admin_timings(_: str = Depends(require_admin)):
    return {"items": snapshot()}


# ----------------------------
# MockPay: settle a payment by emitting its callback
# ----------------------------
@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(
    payment_id: str, request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    form = await request.form()
    kind = form.get("t")  # succeeded|failed
    if kind not in {"succeeded", "failed"}:
        raise HTTPException(400, detail="invalid kind")

    order = await orders.get_order_by_payment_id(db, payment_id)
    if not order:
        raise HTTPException(404, "payment not found")

    body, headers = adapter.build_callback(order, kind)
    client_http: httpx.AsyncClient = getattr(app.state, "http", None)
    try:
        if client_http is None:
            async with httpx.AsyncClient(timeout=5.0) as c:
                r = await c.post(MOCK_WEBHOOK_URL, content=body,
                                 headers=headers)
        else:
            r = await client_http.post(MOCK_WEBHOOK_URL, content=body,
                                       headers=headers)
    except httpx.HTTPError as e:
        # the gateway would redeliver; so can the user
        logger.warning("mock webhook delivery failed: %s", e)
        return ORJSONResponse({"delivered": False, "detail": str(e)},
                              status_code=502)
    return {"delivered": True, "webhook_status": r.status_code,
            "webhook_response": r.json()}
