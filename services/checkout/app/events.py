"""
Checkout Service — イベント定義

決済プロバイダから受け取る「チェックアウト完了」イベントと、
注文記録後に発行するイベントを定義する。
金額はすべて最小通貨単位 (例: セント) の整数で受け取る。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .aggregate import OrderLineItem


class PaymentLineItem(BaseModel):
    """決済セッション内の1明細"""
    price_id: str
    quantity: int = Field(default=1, ge=1)
    unit_amount: int = 0
    currency: str | None = None
    product_name: str | None = None


class PaymentEvent(BaseModel):
    """
    チェックアウトが完了した（署名検証済み）

    session_id が注文作成の冪等キーになる。
    user_id はチェックアウト開始時に埋め込んだ値が戻ってくる。
    """
    session_id: str
    line_items: list[PaymentLineItem] = Field(default_factory=list)
    amount_total: int | None = None
    currency: str | None = None
    payment_status: str | None = None
    customer_email: str | None = None
    user_id: str | None = None


class OrderRecorded(BaseModel):
    """注文が記録された（Redis order_events に発行）"""
    session_id: str
    user_id: str | None
    user_email: str | None
    items: list[OrderLineItem]
    total: float
    currency: str
    status: str
    created_at: datetime
