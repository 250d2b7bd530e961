"""
Checkout Service — 例外定義

ReconcileError はどちらも一時的な失敗で、呼び出し側が再試行するか、
Webhook が再送を要求するステータスを返す。
「処理済み」と「商品が見つからない」は例外にしない。
"""


class ReconcileError(Exception):
    """注文照合の失敗（一時的）"""


class TransactionConflict(ReconcileError):
    """楽観的ロックの競合。reconcile 全体を最初からやり直す。"""


class StoreUnavailable(ReconcileError):
    """ストアに到達できない。Webhook は再送を要求する。"""


class WebhookVerificationError(Exception):
    """署名またはペイロードが不正な Webhook"""


class PaymentProviderError(Exception):
    """決済プロバイダ API の呼び出しに失敗した"""
