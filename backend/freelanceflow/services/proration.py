"""日割り計算 (即時適用されるアップグレード・請求間隔変更のみ)

金額はすべてセント単位の整数。残り期間比率のみ浮動小数点で計算し、
最終的な請求額を設定された丸め規則でセント単位に丸める。
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP, ROUND_HALF_EVEN
from typing import Optional

from freelanceflow.core.config import settings
from freelanceflow.services import plan_catalog
from freelanceflow.services.billing_cycle import advance_period

NOTE_DEFERRED = "no charge, applies at period end"
NOTE_TRIAL = "no charge during trial"
NOTE_PRORATED = "prorated for the remainder of the current period"
NOTE_FULL_PRICE = "full price for the first period"

_ROUNDING_MODES = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
}


@dataclass(frozen=True)
class ProrationQuote:
    amount_due_now: int
    period_end: datetime
    note: Optional[str] = None


def round_cents(value: float, rounding: Optional[str] = None) -> int:
    """セント単位に丸める (既定は PRORATION_ROUNDING)"""
    policy = rounding or settings.PRORATION_ROUNDING
    if policy not in _ROUNDING_MODES:
        raise ValueError(f"不明な丸め規則: {policy}")
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=_ROUNDING_MODES[policy]))


def fraction_remaining(period_start: datetime, period_end: datetime, now: datetime) -> float:
    """請求期間の残り比率 (0.0〜1.0)"""
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return 0.0
    remaining = (period_end - now).total_seconds() / total
    return min(1.0, max(0.0, remaining))


def quote(
    current_tier: str,
    current_interval: Optional[str],
    target_tier: str,
    target_interval: Optional[str],
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    rounding: Optional[str] = None,
) -> ProrationQuote:
    """即時変更時の請求額を計算

    ダウングレードは期間終了時に適用されるため呼び出し対象外。
    誤って呼ばれた場合は請求額0を返す。
    """
    if plan_catalog.tier_rank(target_tier) < plan_catalog.tier_rank(current_tier):
        return deferred_quote(period_end)

    fraction = fraction_remaining(period_start, period_end, now)
    current_remaining_value = plan_catalog.price_for(current_tier, current_interval) * fraction
    target_prorated_cost = plan_catalog.price_for(target_tier, target_interval) * fraction

    amount = round_cents(target_prorated_cost - current_remaining_value, rounding)
    return ProrationQuote(
        amount_due_now=max(0, amount),
        period_end=period_end,
        note=NOTE_PRORATED,
    )


def quote_new_subscription(target_tier: str, target_interval: str, now: datetime) -> ProrationQuote:
    """トライアル使用済みの無料ユーザーが有料プランを開始する場合 (初回は全額)

    period_end は見積もり。確定値はStripeのレスポンスで上書きされる。
    """
    return ProrationQuote(
        amount_due_now=plan_catalog.price_for(target_tier, target_interval),
        period_end=advance_period(now, target_interval),
        note=NOTE_FULL_PRICE,
    )


def trial_quote(now: datetime, trial_days: Optional[int] = None) -> ProrationQuote:
    days = settings.TRIAL_DAYS if trial_days is None else trial_days
    return ProrationQuote(amount_due_now=0, period_end=now + timedelta(days=days), note=NOTE_TRIAL)


def deferred_quote(period_end: datetime) -> ProrationQuote:
    return ProrationQuote(amount_due_now=0, period_end=period_end, note=NOTE_DEFERRED)
