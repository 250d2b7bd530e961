"""
Checkout Service — クエリハンドラ (Read 側)

注文と商品をストアから読み出す。行 → モデル変換は
トランザクション側 (store.py) でも共用する。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, Product

ORDER_COLUMNS = "session_id, user_id, user_email, items, total, currency, status, created_at"


def _parse_timestamp(value) -> datetime | None:
    # SQLite は文字列で返す
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def order_from_row(row) -> Order:
    return Order(
        session_id=row.session_id,
        user_id=row.user_id,
        user_email=row.user_email,
        items=json.loads(row.items) if isinstance(row.items, str) else row.items,
        total=float(row.total),
        currency=row.currency,
        status=row.status,
        created_at=_parse_timestamp(row.created_at),
    )


def product_from_row(row) -> Product:
    return Product(
        id=row.id,
        title=row.title,
        stock=row.stock,
        price_id=row.stripe_price_id,
        version=row.version,
    )


async def get_order(session: AsyncSession, session_id: str) -> Order | None:
    """グローバル台帳から注文を取得する。"""
    result = await session.execute(
        text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE session_id = :sid"),
        {"sid": session_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return order_from_row(row)


async def list_orders(session: AsyncSession, limit: int = 50) -> list[Order]:
    result = await session.execute(
        text(f"SELECT {ORDER_COLUMNS} FROM orders ORDER BY created_at DESC LIMIT :limit"),
        {"limit": limit},
    )
    return [order_from_row(row) for row in result.fetchall()]


async def list_user_orders(session: AsyncSession, user_id: str) -> list[Order]:
    """ユーザーごとの注文履歴（新しい順）"""
    result = await session.execute(
        text(f"""
            SELECT {ORDER_COLUMNS}
            FROM user_orders
            WHERE user_id = :uid
            ORDER BY created_at DESC
        """),
        {"uid": user_id},
    )
    return [order_from_row(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        text("""
            SELECT id, title, stock, stripe_price_id, version
            FROM products WHERE id = :id
        """),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return product_from_row(row)
