"""課金ドメインのエラー分類

UIが具体的なメッセージを表示できるよう、種別 (kind) と関連ID (detail) を持つ。
"""
from typing import Optional


class BillingError(Exception):
    """課金エラー基底クラス"""

    kind = "billing_error"
    status_code = 400
    default_message = "課金処理に失敗しました"

    def __init__(self, message: Optional[str] = None, **detail):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message, **self.detail}


class InvalidTransition(BillingError):
    """現在の状態では許可されない遷移 (I/O前に拒否、修正後の再試行可)"""

    kind = "invalid_transition"
    status_code = 409
    default_message = "現在の購読状態ではこの操作はできません"


class NoOpRejected(BillingError):
    """現在と同じプラン・請求間隔への変更"""

    kind = "no_op"
    status_code = 400
    default_message = "既にこのプランをご利用中です"


class QuotaExceeded(BillingError):
    """月間利用上限に到達 (アップグレードで回復)"""

    kind = "quota_exceeded"
    status_code = 403
    default_message = "今月の利用上限に達しました。プランのアップグレードをご検討ください。"


class PaymentFailed(BillingError):
    """Stripeが決済を拒否 (ローカル状態は変更なし)"""

    kind = "payment_failed"
    status_code = 402
    default_message = "決済が承認されませんでした。お支払い方法をご確認ください。"


class GatewayUnavailable(BillingError):
    """Stripeへの一時的な接続障害 (呼び出し側がバックオフして再試行)"""

    kind = "gateway_unavailable"
    status_code = 503
    default_message = "決済システムに接続できません。しばらくしてから再度お試しください。"


class StaleState(BillingError):
    """楽観的排他制御の競合 (最新状態を再取得してユーザーに再判断させる)"""

    kind = "stale_state"
    status_code = 409
    default_message = "購読情報が更新されました。最新の状態を確認してから再度お試しください。"


class GatewayError(BillingError):
    """Stripeがリクエストを拒否 (存在しない購読、idempotency keyの不一致、認証エラー等)"""

    kind = "gateway_error"
    status_code = 502
    default_message = "決済システムでエラーが発生しました。サポートまでお問い合わせください。"
