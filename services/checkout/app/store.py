"""
Checkout Service — ストア (トランザクション境界)

注文照合は1つのアトミックなトランザクションで実行する。
ストアはグローバル変数ではなく、明示的に渡すハンドルとして扱う。

契約:
  - transaction() ブロックを正常に抜けるとコミット、例外ならロールバック
  - トランザクション内で読んだドキュメントはすべてコミットの前提条件になる
    (読んだ後に他者が書き換えていれば TransactionConflict)
  - ストアに到達できなければ StoreUnavailable

SqlOrderStore は商品の version 列による楽観的ロックと、
注文テーブルの主キー制約で競合を検知する。
"""

import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import Order, Product
from .errors import StoreUnavailable, TransactionConflict

# 40P01: deadlock_detected, 40001: serialization_failure
RETRYABLE_SQLSTATES = {"40P01", "40001"}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        title TEXT,
        stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        stripe_price_id TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_products_stripe_price_id ON products (stripe_price_id)",
    """
    CREATE TABLE IF NOT EXISTS orders (
        session_id TEXT PRIMARY KEY,
        user_id TEXT,
        user_email TEXT,
        items TEXT NOT NULL,
        total NUMERIC(12, 2) NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_orders (
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        user_email TEXT,
        items TEXT NOT NULL,
        total NUMERIC(12, 2) NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        PRIMARY KEY (user_id, session_id)
    )
    """,
]


class Transaction(ABC):
    """reconcile が使うトランザクション操作"""

    timestamp: datetime

    @abstractmethod
    async def get_order(self, session_id: str) -> Order | None: ...

    @abstractmethod
    async def find_product_by_price_id(self, price_id: str) -> Product | None: ...

    @abstractmethod
    async def update_stock(self, product: Product, stock: int) -> None: ...

    @abstractmethod
    async def set_order(self, order: Order) -> None: ...

    @abstractmethod
    async def set_user_order(self, user_id: str, order: Order) -> None: ...


class OrderStore(ABC):
    @abstractmethod
    def transaction(self) -> "AsyncIterator[Transaction]":
        """async with store.transaction() as tx: ..."""

    @abstractmethod
    async def get_order(self, session_id: str) -> Order | None: ...

    @abstractmethod
    async def list_orders(self, limit: int = 50) -> list[Order]: ...

    @abstractmethod
    async def list_user_orders(self, user_id: str) -> list[Order]: ...

    @abstractmethod
    async def get_product(self, product_id: str) -> Product | None: ...


# ── SQL 実装 ─────────────────────────────────────


class SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession, timestamp: datetime) -> None:
        self.session = session
        self.timestamp = timestamp

    async def get_order(self, session_id: str) -> Order | None:
        return await queries.get_order(self.session, session_id)

    async def find_product_by_price_id(self, price_id: str) -> Product | None:
        result = await self.session.execute(
            text("""
                SELECT id, title, stock, stripe_price_id, version
                FROM products
                WHERE stripe_price_id = :price_id
                ORDER BY id
                LIMIT 1
            """),
            {"price_id": price_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return queries.product_from_row(row)

    async def update_stock(self, product: Product, stock: int) -> None:
        """読んだ時点の version のままなら更新する。変わっていれば競合。"""
        result = await self.session.execute(
            text("""
                UPDATE products
                SET stock = :stock, version = version + 1, updated_at = :now
                WHERE id = :id AND version = :version
            """),
            {
                "stock": stock,
                "now": self.timestamp,
                "id": product.id,
                "version": product.version,
            },
        )
        if result.rowcount != 1:
            raise TransactionConflict(
                f"Product {product.id} changed since version {product.version}"
            )

    async def set_order(self, order: Order) -> None:
        await self.session.execute(
            text(f"""
                INSERT INTO orders ({queries.ORDER_COLUMNS})
                VALUES (:session_id, :user_id, :user_email, :items,
                        :total, :currency, :status, :created_at)
            """),
            _order_params(order),
        )

    async def set_user_order(self, user_id: str, order: Order) -> None:
        params = _order_params(order)
        params["user_id"] = user_id
        await self.session.execute(
            text(f"""
                INSERT INTO user_orders ({queries.ORDER_COLUMNS})
                VALUES (:session_id, :user_id, :user_email, :items,
                        :total, :currency, :status, :created_at)
            """),
            params,
        )


def _sqlstate(error: DBAPIError) -> str | None:
    # asyncpg アダプタは sqlstate、psycopg2 は pgcode を持つ
    for candidate in (error.orig, getattr(error.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def _order_params(order: Order) -> dict:
    return {
        "session_id": order.session_id,
        "user_id": order.user_id,
        "user_email": order.user_email,
        "items": json.dumps([item.model_dump() for item in order.items]),
        "total": order.total,
        "currency": order.currency,
        "status": order.status,
        "created_at": order.created_at,
    }


class SqlOrderStore(OrderStore):
    """SQLAlchemy (asyncio) によるストア実装"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield SqlTransaction(session, datetime.now(timezone.utc))
        except DBAPIError as e:
            if _sqlstate(e) in RETRYABLE_SQLSTATES or isinstance(e, IntegrityError):
                # デッドロック / シリアライズ失敗 / 同じセッション ID の並行挿入
                raise TransactionConflict(str(e.orig)) from e
            if isinstance(e, (OperationalError, InterfaceError)):
                raise StoreUnavailable(str(e)) from e
            raise
        except OSError as e:
            raise StoreUnavailable(str(e)) from e

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailable(str(e)) from e

    async def get_order(self, session_id: str) -> Order | None:
        async with self._read() as session:
            return await queries.get_order(session, session_id)

    async def list_orders(self, limit: int = 50) -> list[Order]:
        async with self._read() as session:
            return await queries.list_orders(session, limit)

    async def list_user_orders(self, user_id: str) -> list[Order]:
        async with self._read() as session:
            return await queries.list_user_orders(session, user_id)

    async def get_product(self, product_id: str) -> Product | None:
        async with self._read() as session:
            return await queries.get_product(session, product_id)

    async def create_schema(self) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                for statement in SCHEMA:
                    await session.execute(text(statement))
