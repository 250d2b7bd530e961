"""
Checkout Service — インメモリストア

SqlOrderStore と同じトランザクション契約を持つメモリ実装。
reconcile とエンドポイントのテスト用フェイク（main.py からは使わない）。

各ドキュメントは version を持ち、トランザクションは読んだ version を記録する。
コミット時に記録した version がすべて変わっていなければ書き込みを適用し、
1つでも変わっていれば TransactionConflict でトランザクション全体を捨てる。
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from .aggregate import Order, Product
from .errors import TransactionConflict
from .store import OrderStore, Transaction

DocKey = tuple[str, ...]


class MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryOrderStore") -> None:
        self.store = store
        self.timestamp = datetime.now(timezone.utc)
        self.reads: dict[DocKey, int] = {}
        self.writes: dict[DocKey, Order | Product] = {}

    async def _read(self, key: DocKey):
        # ネットワーク越しの読み取りと同様にイベントループへ制御を返す
        await asyncio.sleep(0)
        if key in self.writes:
            return self.writes[key]
        self.reads.setdefault(key, self.store.versions.get(key, 0))
        return self.store.documents.get(key)

    async def get_order(self, session_id: str) -> Order | None:
        order = await self._read(("orders", session_id))
        return order.model_copy(deep=True) if order else None

    async def find_product_by_price_id(self, price_id: str) -> Product | None:
        await asyncio.sleep(0)
        for key in sorted(self.store.product_keys()):
            product = self.writes.get(key) or self.store.documents[key]
            if product.price_id == price_id:
                found = await self._read(key)
                return found.model_copy()
        return None

    async def update_stock(self, product: Product, stock: int) -> None:
        key = ("products", product.id)
        current = self.writes.get(key) or self.store.documents.get(key)
        if current is None or current.version != product.version:
            raise TransactionConflict(
                f"Product {product.id} changed since version {product.version}"
            )
        self.writes[key] = current.model_copy(
            update={"stock": stock, "version": current.version + 1}
        )

    async def set_order(self, order: Order) -> None:
        self.writes[("orders", order.session_id)] = order.model_copy(deep=True)

    async def set_user_order(self, user_id: str, order: Order) -> None:
        self.writes[("users", user_id, "orders", order.session_id)] = order.model_copy(deep=True)

    async def commit(self) -> None:
        async with self.store.lock:
            for key, version in self.reads.items():
                if self.store.versions.get(key, 0) != version:
                    raise TransactionConflict(f"Document {'/'.join(key)} changed during transaction")
            for key in self.writes:
                if key[0] == "orders" and key in self.store.documents:
                    raise TransactionConflict(f"Order {key[1]} already exists")
            for key, document in self.writes.items():
                self.store.documents[key] = document
                self.store.versions[key] = self.store.versions.get(key, 0) + 1
            self.store.commits += 1


class MemoryOrderStore(OrderStore):
    def __init__(self, products: list[Product] | None = None) -> None:
        self.documents: dict[DocKey, Order | Product] = {}
        self.versions: dict[DocKey, int] = {}
        self.lock = asyncio.Lock()
        self.commits = 0
        for product in products or []:
            self.add_product(product)

    def add_product(self, product: Product) -> None:
        key = ("products", product.id)
        self.documents[key] = product
        self.versions[key] = product.version

    def product_keys(self) -> list[DocKey]:
        return [key for key in self.documents if key[0] == "products"]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        tx = MemoryTransaction(self)
        yield tx
        await tx.commit()

    def _copy(self, key: DocKey):
        document = self.documents.get(key)
        return document.model_copy(deep=True) if document is not None else None

    async def get_order(self, session_id: str) -> Order | None:
        return self._copy(("orders", session_id))

    async def list_orders(self, limit: int = 50) -> list[Order]:
        keys = [key for key in self.documents if key[0] == "orders"]
        orders = [self._copy(key) for key in keys]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def list_user_orders(self, user_id: str) -> list[Order]:
        orders = [
            self._copy(key)
            for key in self.documents
            if key[:3] == ("users", user_id, "orders")
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    async def get_product(self, product_id: str) -> Product | None:
        return self._copy(("products", product_id))
