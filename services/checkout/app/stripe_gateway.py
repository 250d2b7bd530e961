"""
Checkout Service — Stripe ゲートウェイ

Stripe とのやり取りをこのモジュールに閉じ込める。
  - Webhook の署名検証
  - チェックアウトセッションの明細取得 → PaymentEvent への変換
  - チェックアウトセッションの作成

注文照合 (commands.reconcile) は Stripe を知らない。
"""

import json

import stripe

from .errors import PaymentProviderError, WebhookVerificationError
from .events import PaymentEvent, PaymentLineItem

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

# Checkout セッションの明細は最大 100 件
LINE_ITEMS_LIMIT = 100


def _as_dict(obj) -> dict:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def verify_event(payload: bytes, sig_header: str, secret: str) -> dict:
    """
    stripe-signature ヘッダを共有シークレットで検証し、イベントを dict で返す。
    """
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    try:
        stripe.WebhookSignature.verify_header(
            body, sig_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(str(e)) from e
    try:
        return json.loads(body)
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e


async def list_line_items(session_id: str) -> list[dict]:
    try:
        line_items = await stripe.checkout.Session.list_line_items_async(
            session_id,
            expand=["data.price.product"],
            limit=LINE_ITEMS_LIMIT,
        )
    except stripe.StripeError as e:
        raise PaymentProviderError(str(e)) from e
    return [_as_dict(item) for item in line_items.data]


def payment_event_from_session(session: dict, line_items: list[dict]) -> PaymentEvent:
    """
    Checkout セッションと明細から PaymentEvent を組み立てる。

    user_id は metadata.userId → client_reference_id の順、
    メールは customer_details.email → customer_email の順で採用する。
    price を持たない明細は照合できないので含めない。
    """
    items: list[PaymentLineItem] = []
    for item in line_items:
        price = item.get("price") or {}
        price_id = price.get("id")
        if not price_id:
            continue
        product = price.get("product")
        product_name = product.get("name") if isinstance(product, dict) else None
        items.append(
            PaymentLineItem(
                price_id=price_id,
                quantity=item.get("quantity") or 1,
                unit_amount=price.get("unit_amount") or 0,
                currency=price.get("currency"),
                product_name=product_name or item.get("description"),
            )
        )

    metadata = session.get("metadata") or {}
    customer_details = session.get("customer_details") or {}
    return PaymentEvent(
        session_id=session["id"],
        line_items=items,
        amount_total=session.get("amount_total"),
        currency=session.get("currency"),
        payment_status=session.get("payment_status"),
        customer_email=customer_details.get("email") or session.get("customer_email"),
        user_id=metadata.get("userId") or session.get("client_reference_id"),
    )


async def load_payment_event(session: dict) -> PaymentEvent:
    line_items = await list_line_items(session["id"])
    return payment_event_from_session(session, line_items)


async def create_checkout_session(
    items: list[tuple[str, int]],
    success_url: str,
    cancel_url: str,
    user_id: str | None = None,
    customer_email: str | None = None,
) -> str:
    """
    決済ページ (mode=payment) のセッションを作成し、その URL を返す。

    user_id はセッションに埋め込み、完了イベントで注文と紐付ける。
    """
    params: dict = {
        "mode": "payment",
        "line_items": [
            {"price": price_id, "quantity": quantity} for price_id, quantity in items
        ],
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    if user_id:
        params["client_reference_id"] = user_id
        params["metadata"] = {"userId": user_id}
    if customer_email:
        params["customer_email"] = customer_email

    try:
        session = await stripe.checkout.Session.create_async(**params)
    except stripe.StripeError as e:
        raise PaymentProviderError(str(e)) from e
    return session.url
