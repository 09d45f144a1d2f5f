"""請求サイクル: 即時適用か期間終了時適用かの判定と、ダウングレード予約の管理

ここでの関数はすべて純粋な計算 (購読オブジェクトの属性更新のみ)。
DBコミットとStripe呼び出しは subscription_service が行う。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from freelanceflow.models.subscription import Subscription
from freelanceflow.services import plan_catalog

UPGRADE = "upgrade"
DOWNGRADE = "downgrade"
LATERAL = "lateral"

REJECTED_CANCELLATION_PENDING = "cancellation_pending"


@dataclass(frozen=True)
class ScheduleResult:
    scheduled: bool
    reason: Optional[str] = None


def classify(current_tier: str, target_tier: str) -> str:
    """free < professional < premium の全順序で分類 (同一プランは請求間隔変更)"""
    current_rank = plan_catalog.tier_rank(current_tier)
    target_rank = plan_catalog.tier_rank(target_tier)
    if target_rank > current_rank:
        return UPGRADE
    if target_rank < current_rank:
        return DOWNGRADE
    return LATERAL


def advance_period(period_end: datetime, interval: Optional[str]) -> datetime:
    """1請求間隔分進める (monthly: +1暦月, annual: +1年, freeは月次)"""
    if interval == plan_catalog.ANNUAL:
        return period_end + relativedelta(years=1)
    return period_end + relativedelta(months=1)


def schedule(sub: Subscription, target_tier: str, target_interval: Optional[str]) -> ScheduleResult:
    """ダウングレードを期間終了時に予約

    期間終了までは現在のプランの利用権をそのまま維持する。
    解約予約中はダウングレード予約と両立しないため拒否。
    """
    if sub.cancel_at_period_end:
        return ScheduleResult(scheduled=False, reason=REJECTED_CANCELLATION_PENDING)

    sub.scheduled_tier = target_tier
    sub.scheduled_interval = None if target_tier == plan_catalog.FREE else target_interval
    sub.scheduled_change_date = sub.period_end
    return ScheduleResult(scheduled=True)


def cancel_scheduled(sub: Subscription) -> bool:
    """ダウングレード予約を取消 (予約がなければ何もしない)"""
    if sub.scheduled_tier is None and sub.scheduled_change_date is None:
        return False
    sub.scheduled_tier = None
    sub.scheduled_interval = None
    sub.scheduled_change_date = None
    return True


def apply_due(sub: Subscription, now: datetime) -> bool:
    """予約日時が到来していればダウングレードを確定"""
    if sub.scheduled_tier is None or sub.scheduled_change_date is None:
        return False
    if sub.scheduled_change_date > now:
        return False

    new_tier = sub.scheduled_tier
    sub.tier = new_tier
    sub.monthly_limit = plan_catalog.monthly_limit_for(new_tier)
    if new_tier == plan_catalog.FREE:
        sub.billing_interval = None
        sub.external_subscription_ref = None
        sub.status = "active"
    else:
        sub.billing_interval = sub.scheduled_interval or sub.billing_interval

    sub.scheduled_tier = None
    sub.scheduled_interval = None
    sub.scheduled_change_date = None
    return True


def expire_cancellation(sub: Subscription, now: datetime) -> bool:
    """解約予約の期間終了: 無料プランへ移行 (レコードは削除しない)"""
    if not sub.cancel_at_period_end or sub.period_end > now:
        return False

    sub.tier = plan_catalog.FREE
    sub.billing_interval = None
    sub.status = "cancelled"
    sub.monthly_limit = plan_catalog.monthly_limit_for(plan_catalog.FREE)
    sub.external_subscription_ref = None
    sub.cancel_at_period_end = False
    return True
