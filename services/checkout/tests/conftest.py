"""
Checkout Service のテスト共通設定

app.main はインポート時に環境変数を読むので、先に既定値を入れておく。
"""

import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.aggregate import Product
from app.events import PaymentEvent, PaymentLineItem
from app.memory_store import MemoryOrderStore
from app.store import SqlOrderStore

CATALOG = [
    {"id": "p1", "title": "Widget", "stock": 10, "price_id": "price_A"},
    {"id": "p2", "title": "Gadget", "stock": 2, "price_id": "price_B"},
    {"id": "p3", "title": None, "stock": 4, "price_id": "price_C"},
]


@pytest.fixture
def memory_store() -> MemoryOrderStore:
    return MemoryOrderStore([Product(**row) for row in CATALOG])


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store = SqlOrderStore(factory)
    await store.create_schema()
    async with factory() as session:
        async with session.begin():
            await session.execute(
                text("""
                    INSERT INTO products (id, title, stock, stripe_price_id, version)
                    VALUES (:id, :title, :stock, :price_id, 0)
                """),
                CATALOG,
            )
    yield store
    await engine.dispose()


@pytest.fixture
def example_event() -> PaymentEvent:
    """cs_1: price_A を2個、合計 30.00 EUR"""
    return PaymentEvent(
        session_id="cs_1",
        line_items=[PaymentLineItem(price_id="price_A", quantity=2, unit_amount=1500)],
        amount_total=3000,
        currency="eur",
        payment_status="paid",
    )


@pytest.fixture
def sign_payload():
    """Stripe と同じ形式の stripe-signature ヘッダを作る。"""

    def _sign(event: dict, secret: str | None = None) -> tuple[bytes, str]:
        secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
        payload = json.dumps(event)
        timestamp = int(time.time())
        signature = hmac.new(
            secret.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return payload.encode("utf-8"), f"t={timestamp},v1={signature}"

    return _sign
