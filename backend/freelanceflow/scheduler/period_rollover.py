"""請求期間の終了処理 (利用回数リセット・期限到来のダウングレード/解約の適用)"""
from freelanceflow.core.clock import utcnow
from freelanceflow.core.database import SessionLocal
from freelanceflow.services.subscription_service import roll_over_due_subscriptions
from freelanceflow.core.logging import get_logger

logger = get_logger(__name__)


def roll_over_periods():
    """スケジューラから呼ばれる: 期間終了を過ぎた購読を処理

    APIアクセス時にも同じ処理が走るため、ここでは利用のない購読を拾う。
    """
    db = SessionLocal()
    try:
        count = roll_over_due_subscriptions(db, utcnow())
        if count > 0:
            logger.info(f"請求期間更新完了: {count}件")
    except Exception as e:
        logger.error(f"請求期間更新エラー: {e}")
    finally:
        db.close()
