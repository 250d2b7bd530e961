"""
Checkout Service — コマンドハンドラ (Write 側)

チェックアウト完了イベントを注文として記録する（注文照合）。

1つのトランザクション内で:
  1. session_id の注文が既にあれば何もしない（冪等）
  2. 明細ごとに price_id から商品を1件解決する（見つからなければ明細ごと捨てる）
  3. 商品 ID 順に在庫を max(0, 在庫 - 数量) に減らす（同じ商品の明細は合算）
  4. 注文をグローバル台帳と、user_id があればユーザー履歴に書き込む

競合 (TransactionConflict) 時はトランザクション外に副作用を残さないので、
呼び出し側が reconcile を最初からやり直せる。
"""

import logging

from .aggregate import (
    DEFAULT_STATUS,
    Order,
    OrderLineItem,
    Product,
    normalize_currency,
    snapshot_title,
    to_major_units,
)
from .errors import TransactionConflict
from .events import PaymentEvent
from .store import OrderStore

logger = logging.getLogger(__name__)


async def reconcile(store: OrderStore, event: PaymentEvent) -> Order | None:
    """
    注文照合コマンド

    新しく記録した注文を返す。処理済みのセッションなら None。
    """
    async with store.transaction() as tx:
        existing = await tx.get_order(event.session_id)
        if existing is not None:
            logger.info("Session %s already recorded; skipping", event.session_id)
            return None

        # 在庫の更新は全明細を解決した後、商品 ID 順に行う
        products: dict[str, Product] = {}
        purchased: dict[str, int] = {}
        items: list[OrderLineItem] = []
        for line in event.line_items:
            product = await tx.find_product_by_price_id(line.price_id)
            if product is None:
                logger.warning(
                    "No product for price %s in session %s; dropping line item",
                    line.price_id,
                    event.session_id,
                )
                continue

            products.setdefault(product.id, product)
            purchased[product.id] = purchased.get(product.id, 0) + line.quantity

            items.append(
                OrderLineItem(
                    product_id=product.id,
                    title=snapshot_title(product, line.product_name),
                    quantity=line.quantity,
                    price=to_major_units(line.unit_amount),
                    currency=normalize_currency(line.currency),
                    price_id=line.price_id,
                )
            )

        for product_id in sorted(purchased):
            product = products[product_id]
            await tx.update_stock(product, max(0, product.stock - purchased[product_id]))

        order = Order(
            session_id=event.session_id,
            user_id=event.user_id,
            user_email=event.customer_email,
            items=items,
            total=to_major_units(event.amount_total),
            currency=normalize_currency(event.currency),
            status=event.payment_status or DEFAULT_STATUS,
            created_at=tx.timestamp,
        )

        await tx.set_order(order)
        if event.user_id:
            await tx.set_user_order(event.user_id, order)

    logger.info(
        "Recorded order %s (%d items, %.2f %s)",
        order.session_id,
        len(order.items),
        order.total,
        order.currency,
    )
    return order


async def reconcile_with_retries(
    store: OrderStore,
    event: PaymentEvent,
    max_attempts: int = 5,
) -> Order | None:
    """競合したら reconcile を最初からやり直す。最後の競合はそのまま送出する。"""
    attempt = 1
    while True:
        try:
            return await reconcile(store, event)
        except TransactionConflict as e:
            if attempt >= max_attempts:
                raise
            logger.warning(
                "Conflict reconciling session %s (attempt %d/%d): %s",
                event.session_id,
                attempt,
                max_attempts,
                e,
            )
            attempt += 1
