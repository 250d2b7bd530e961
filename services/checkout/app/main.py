"""
Checkout Service — FastAPI エントリーポイント

Stripe Webhook を受けて注文を記録し、チェックアウトセッションを作成する。

┌────────┐  checkout.session.completed  ┌──────────────────┐
│ Stripe │ ───────────────────────────▶ │ Checkout Service │
└────────┘      POST /webhook           │  reconcile()     │
                                        └───┬──────────┬───┘
                                            │          │ OrderRecorded
                                     ┌──────▼───┐  ┌───▼────────────┐
                                     │ Orders DB│  │ Redis Pub/Sub  │
                                     └──────────┘  └────────────────┘

Webhook は再送される前提で設計する:
  - 同じセッションは何度届いても注文は1件（冪等）
  - 一時的な失敗には 503 を返し、Stripe に再送させる
"""

import json
import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import stripe
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, stripe_gateway
from .aggregate import Order
from .errors import (
    PaymentProviderError,
    ReconcileError,
    StoreUnavailable,
    WebhookVerificationError,
)
from .events import OrderRecorded
from .store import OrderStore, SqlOrderStore

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
STRIPE_SECRET_KEY = os.environ["STRIPE_SECRET_KEY"]
STRIPE_WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
APP_URL = os.environ.get("APP_URL", "http://localhost:3000")
RECONCILE_MAX_ATTEMPTS = int(os.environ.get("RECONCILE_MAX_ATTEMPTS", "5"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

stripe.api_key = STRIPE_SECRET_KEY

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
store = SqlOrderStore(async_session)
redis_pool: aioredis.Redis | None = None

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    logging.basicConfig(level=LOG_LEVEL)
    await store.create_schema()
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Checkout Service", lifespan=lifespan)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.warning("Store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


def get_store() -> OrderStore:
    return store


def get_redis() -> aioredis.Redis | None:
    return redis_pool


# ── Request Models ───────────────────────────────


class CheckoutItem(BaseModel):
    stripe_price_id: str
    quantity: int = Field(default=1, ge=1)


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = []
    user_id: str | None = None
    customer_email: str | None = None


# ── Webhook ──────────────────────────────────────


async def publish_order_recorded(redis: aioredis.Redis | None, order: Order) -> None:
    """注文記録イベントを発行する。失敗しても注文自体は確定済み。"""
    if redis is None:
        return
    event = OrderRecorded(**order.model_dump())
    try:
        await redis.publish(
            "order_events",
            json.dumps(
                {
                    "event_type": "OrderRecorded",
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish OrderRecorded for %s", order.session_id)


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    store: OrderStore = Depends(get_store),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """Stripe Webhook 受信"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = stripe_gateway.verify_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except WebhookVerificationError as e:
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    if event.get("type") != stripe_gateway.CHECKOUT_SESSION_COMPLETED:
        return {"received": True}

    try:
        payment_event = await stripe_gateway.load_payment_event(event["data"]["object"])
        order = await commands.reconcile_with_retries(
            store, payment_event, RECONCILE_MAX_ATTEMPTS
        )
    except (ReconcileError, PaymentProviderError) as e:
        # 503 を返すと Stripe が再送する
        logger.warning("Webhook %s not processed: %s", event.get("id"), e)
        raise HTTPException(status_code=503, detail=str(e))

    if order is not None:
        await publish_order_recorded(redis, order)
    return {"received": True}


# ── Checkout ─────────────────────────────────────


@app.post("/checkout")
async def create_checkout(req: CheckoutRequest):
    """チェックアウトセッションを作成し、決済ページの URL を返す"""
    if not req.items:
        raise HTTPException(status_code=400, detail="No items provided.")
    try:
        url = await stripe_gateway.create_checkout_session(
            [(item.stripe_price_id, item.quantity) for item in req.items],
            success_url=f"{APP_URL}/cart?success=true",
            cancel_url=f"{APP_URL}/cart?canceled=true",
            user_id=req.user_id,
            customer_email=req.customer_email,
        )
    except PaymentProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"url": url}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    limit: int = Query(50, ge=1, le=500),
    store: OrderStore = Depends(get_store),
):
    return [order.to_document() for order in await store.list_orders(limit)]


@app.get("/queries/orders/{session_id}")
async def query_get_order(session_id: str, store: OrderStore = Depends(get_store)):
    order = await store.get_order(session_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order.to_document()


@app.get("/queries/users/{user_id}/orders")
async def query_user_orders(user_id: str, store: OrderStore = Depends(get_store)):
    """ユーザーの注文履歴"""
    return [order.to_document() for order in await store.list_user_orders(user_id)]


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str, store: OrderStore = Depends(get_store)):
    product = await store.get_product(product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product.model_dump()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "checkout-service"}
