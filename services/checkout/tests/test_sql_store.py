"""Tests for the SQLAlchemy-backed store, run against SQLite (aiosqlite)."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app import commands
from app.aggregate import Order, OrderLineItem, Product
from app.errors import StoreUnavailable, TransactionConflict
from app.events import PaymentLineItem
from app.store import SqlOrderStore, SqlTransaction


class PostgresError(Exception):
    """asyncpg の例外と同じく sqlstate を持つ DBAPI 例外"""

    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def _dbapi_error(sqlstate: str) -> DBAPIError:
    return DBAPIError("UPDATE products", {}, PostgresError("deadlock detected", sqlstate))


class TestSqlReconcile:
    @pytest.mark.asyncio
    async def test_records_order_and_decrements_stock(self, sql_store, example_event) -> None:
        order = await commands.reconcile(sql_store, example_event)

        stored = await sql_store.get_order("cs_1")
        assert stored == order
        assert stored.items[0].title == "Widget"
        assert stored.total == 30.0

        product = await sql_store.get_product("p1")
        assert product.stock == 8
        assert product.version == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, sql_store, example_event) -> None:
        await commands.reconcile(sql_store, example_event)
        assert await commands.reconcile(sql_store, example_event) is None

        assert (await sql_store.get_product("p1")).stock == 8
        assert len(await sql_store.list_orders()) == 1

    @pytest.mark.asyncio
    async def test_user_history_matches_global_order(self, sql_store, example_event) -> None:
        event = example_event.model_copy(update={"user_id": "user-7"})

        order = await commands.reconcile(sql_store, event)

        history = await sql_store.list_user_orders("user-7")
        assert [o.to_document() for o in history] == [order.to_document()]
        assert (await sql_store.get_order("cs_1")).to_document() == order.to_document()

    @pytest.mark.asyncio
    async def test_no_user_history_without_user_id(self, sql_store, example_event) -> None:
        await commands.reconcile(sql_store, example_event)
        assert await sql_store.list_user_orders("user-7") == []

    @pytest.mark.asyncio
    async def test_floor_and_drop(self, sql_store, example_event) -> None:
        event = example_event.model_copy(
            update={
                "line_items": [
                    PaymentLineItem(price_id="price_B", quantity=5, unit_amount=100),
                    PaymentLineItem(price_id="price_nope", quantity=1, unit_amount=100),
                ]
            }
        )

        order = await commands.reconcile(sql_store, event)

        assert [item.product_id for item in order.items] == ["p2"]
        assert (await sql_store.get_product("p2")).stock == 0

    @pytest.mark.asyncio
    async def test_stock_updates_run_in_product_id_order(self, sql_store, example_event) -> None:
        event = example_event.model_copy(
            update={
                "line_items": [
                    PaymentLineItem(price_id="price_B", quantity=1, unit_amount=100),
                    PaymentLineItem(price_id="price_A", quantity=1, unit_amount=100),
                    PaymentLineItem(price_id="price_B", quantity=1, unit_amount=100),
                ]
            }
        )
        original = SqlTransaction.update_stock
        updated: list[tuple[str, int]] = []

        async def recording(self, product, stock):
            updated.append((product.id, stock))
            await original(self, product, stock)

        with patch.object(SqlTransaction, "update_stock", recording):
            order = await commands.reconcile(sql_store, event)

        assert updated == [("p1", 9), ("p2", 0)]
        assert [item.product_id for item in order.items] == ["p2", "p1", "p2"]

    @pytest.mark.asyncio
    async def test_deadlock_is_retried(self, sql_store, example_event) -> None:
        original = SqlTransaction.update_stock
        attempts: list[str] = []

        async def deadlock_once(self, product, stock):
            attempts.append(product.id)
            if len(attempts) == 1:
                raise _dbapi_error("40P01")
            await original(self, product, stock)

        with patch.object(SqlTransaction, "update_stock", deadlock_once):
            order = await commands.reconcile_with_retries(sql_store, example_event, 3)

        assert order is not None
        assert attempts == ["p1", "p1"]
        assert (await sql_store.get_product("p1")).stock == 8
        assert len(await sql_store.list_orders()) == 1

    @pytest.mark.asyncio
    async def test_persistent_deadlock_surfaces_as_conflict(self, sql_store, example_event) -> None:
        async def deadlock(self, product, stock):
            raise _dbapi_error("40P01")

        with patch.object(SqlTransaction, "update_stock", deadlock):
            with pytest.raises(TransactionConflict):
                await commands.reconcile_with_retries(sql_store, example_event, 2)

        assert (await sql_store.get_product("p1")).stock == 10
        assert await sql_store.get_order("cs_1") is None


class TestSqlTransaction:
    @pytest.mark.asyncio
    async def test_stale_version_conflicts_and_rolls_back(self, sql_store) -> None:
        with pytest.raises(TransactionConflict):
            async with sql_store.transaction() as tx:
                await tx.set_order(Order(session_id="cs_x", created_at=tx.timestamp))
                await tx.update_stock(Product(id="p1", stock=10, version=5), 3)

        assert (await sql_store.get_product("p1")).stock == 10
        assert await sql_store.get_order("cs_x") is None

    @pytest.mark.asyncio
    async def test_duplicate_order_insert_conflicts(self, sql_store) -> None:
        async with sql_store.transaction() as tx:
            await tx.set_order(Order(session_id="cs_dup", created_at=tx.timestamp))

        with pytest.raises(TransactionConflict):
            async with sql_store.transaction() as tx:
                await tx.set_order(Order(session_id="cs_dup", created_at=tx.timestamp))

    @pytest.mark.asyncio
    async def test_items_round_trip_through_json(self, sql_store) -> None:
        item = OrderLineItem(
            product_id="p1", title="Widget", quantity=2, price=15.0, currency="EUR", price_id="price_A"
        )
        async with sql_store.transaction() as tx:
            await tx.set_order(Order(session_id="cs_items", items=[item], created_at=tx.timestamp))

        stored = await sql_store.get_order("cs_items")
        assert stored.items == [item]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sqlstate", ["40P01", "40001"])
    async def test_deadlock_and_serialization_failure_conflict(self, sql_store, sqlstate) -> None:
        with pytest.raises(TransactionConflict):
            async with sql_store.transaction():
                raise _dbapi_error(sqlstate)

    @pytest.mark.asyncio
    async def test_other_database_errors_propagate(self, sql_store) -> None:
        with pytest.raises(DBAPIError):
            async with sql_store.transaction():
                raise _dbapi_error("22003")

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_store_unavailable(self, tmp_path) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        store = SqlOrderStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
        try:
            with pytest.raises(StoreUnavailable):
                async with store.transaction() as tx:
                    await tx.get_order("cs_1")
        finally:
            await engine.dispose()


class TestSqlQueries:
    @pytest.mark.asyncio
    async def test_missing_rows_return_none(self, sql_store) -> None:
        assert await sql_store.get_order("cs_missing") is None
        assert await sql_store.get_product("p_missing") is None

    @pytest.mark.asyncio
    async def test_product_fields(self, sql_store) -> None:
        product = await sql_store.get_product("p3")
        assert product == Product(id="p3", title=None, stock=4, price_id="price_C", version=0)
