"""月間利用枠の管理"""
from dataclasses import dataclass
from datetime import datetime

from freelanceflow.models.subscription import Subscription
from freelanceflow.services import billing_cycle, plan_catalog


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    usage_count: int
    monthly_limit: int
    unlimited: bool = False


def check_and_consume(sub: Subscription) -> QuotaDecision:
    """上限チェックして1回分消費 (上限到達なら消費しない)

    呼び出し前に必ず reset_if_due を実行すること。
    """
    unlimited = plan_catalog.is_unlimited(sub.tier, sub.monthly_limit)
    if not unlimited and sub.usage_count >= sub.monthly_limit:
        return QuotaDecision(
            allowed=False,
            usage_count=sub.usage_count,
            monthly_limit=sub.monthly_limit,
        )

    # 無制限プランも表示用にカウントする
    sub.usage_count += 1
    return QuotaDecision(
        allowed=True,
        usage_count=sub.usage_count,
        monthly_limit=sub.monthly_limit,
        unlimited=unlimited,
    )


def reset_if_due(sub: Subscription, now: datetime) -> bool:
    """期間終了を過ぎていれば利用回数をリセットして期間を進める

    期限到来のダウングレード予約・解約予約も同じリセットの中で適用する。
    """
    if now < sub.period_end:
        return False

    billing_cycle.apply_due(sub, now)
    billing_cycle.expire_cancellation(sub, now)

    sub.usage_count = 0
    period_start, period_end = sub.period_start, sub.period_end
    while period_end <= now:
        period_start, period_end = period_end, billing_cycle.advance_period(period_end, sub.billing_interval)
    sub.period_start = period_start
    sub.period_end = period_end
    return True
