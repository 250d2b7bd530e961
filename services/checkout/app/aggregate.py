"""
Checkout Service — 注文集約 (Order Aggregate)

注文はセッション ID ごとに一度だけ作成され、以後は更新も削除もしない。
グローバル台帳とユーザーごとの履歴に同じ内容を書き込むため、
ドキュメント形式 (to_document) は両方で共通にする。
"""

from datetime import datetime

from pydantic import BaseModel, Field

DEFAULT_CURRENCY = "EUR"
DEFAULT_STATUS = "paid"
DEFAULT_TITLE = "Product"


class Product(BaseModel):
    """カタログ商品。このサービスは在庫を減らすことしかしない。"""
    id: str
    title: str | None = None
    stock: int = Field(default=0, ge=0)
    price_id: str | None = None
    version: int = 0


class OrderLineItem(BaseModel):
    product_id: str
    title: str
    quantity: int
    price: float
    currency: str
    price_id: str | None = None


class Order(BaseModel):
    session_id: str
    user_id: str | None = None
    user_email: str | None = None
    items: list[OrderLineItem] = Field(default_factory=list)
    total: float = 0
    currency: str = DEFAULT_CURRENCY
    status: str = DEFAULT_STATUS
    created_at: datetime | None = None

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


def to_major_units(amount: int | None) -> float:
    """最小通貨単位 → 通常単位 (1500 → 15.0)"""
    return (amount or 0) / 100


def normalize_currency(currency: str | None) -> str:
    return (currency or DEFAULT_CURRENCY).upper()


def snapshot_title(product: Product, provider_name: str | None) -> str:
    """
    カタログのタイトル → プロバイダ側の商品名 → 汎用名 の順で採用する。
    None のときだけ次へ進む（空文字のタイトルはそのまま残す）。
    """
    if product.title is not None:
        return product.title
    if provider_name is not None:
        return provider_name
    return DEFAULT_TITLE
