"""購読ステートマシン

状態 = 基本状態 (free / active / trialing) × 予約状態 (なし / ダウングレード予約 / 解約予約)。
ダウングレード予約と解約予約は同時に存在しない。

ここでは遷移の判定のみ行い、I/O前に不正な遷移を型付きエラーで拒否する。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from freelanceflow.models.subscription import Subscription
from freelanceflow.services import billing_cycle, plan_catalog
from freelanceflow.services.errors import InvalidTransition, NoOpRejected

# 基本状態
BASE_FREE = "free"
BASE_ACTIVE = "active"
BASE_TRIALING = "trialing"

# 予約状態
PENDING_DOWNGRADE = "scheduled_downgrade"
PENDING_CANCELLATION = "scheduled_cancellation"

# 遷移種別
START_TRIAL = "trial"
CREATE_PAID = "create"
UPGRADE = billing_cycle.UPGRADE
LATERAL = billing_cycle.LATERAL
SCHEDULE_DOWNGRADE = billing_cycle.DOWNGRADE
REACTIVATE = "reactivate"
CANCEL_SCHEDULED = "cancel_scheduled"
CANCEL = "cancel"

IMMEDIATE_KINDS = (START_TRIAL, CREATE_PAID, UPGRADE, LATERAL)


@dataclass(frozen=True)
class SubscriptionState:
    base: str
    tier: str
    interval: Optional[str]
    pending: Optional[str] = None
    effective_date: Optional[datetime] = None
    scheduled_tier: Optional[str] = None
    scheduled_interval: Optional[str] = None

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionState":
        if sub.cancel_at_period_end and sub.scheduled_tier is not None:
            raise InvalidTransition(
                "購読データが不整合です (解約予約とダウングレード予約が同時に存在)",
                subscription_id=sub.id,
            )

        if sub.tier == plan_catalog.FREE:
            base = BASE_FREE
        elif sub.status == "trialing":
            base = BASE_TRIALING
        else:
            base = BASE_ACTIVE

        pending = None
        effective_date = None
        if sub.scheduled_tier is not None:
            pending = PENDING_DOWNGRADE
            effective_date = sub.scheduled_change_date
        elif sub.cancel_at_period_end:
            pending = PENDING_CANCELLATION
            effective_date = sub.period_end

        return cls(
            base=base,
            tier=sub.tier,
            interval=sub.billing_interval,
            pending=pending,
            effective_date=effective_date,
            scheduled_tier=sub.scheduled_tier,
            scheduled_interval=sub.scheduled_interval,
        )


@dataclass(frozen=True)
class Transition:
    kind: str
    # 解約予約を取り消してから変更する
    reactivate: bool = False
    # 既存のダウングレード予約を置き換える
    replaces_schedule: bool = False

    @property
    def immediate(self) -> bool:
        return self.kind in IMMEDIATE_KINDS


def validate_target(target_tier: str, target_interval: Optional[str]) -> Optional[str]:
    """変更先プランの検証。freeの請求間隔は無視してNoneを返す"""
    if target_tier not in plan_catalog.TIERS:
        raise InvalidTransition(f"不明なプランです: {target_tier}", target_tier=target_tier)
    if target_tier == plan_catalog.FREE:
        return None
    if target_interval not in plan_catalog.INTERVALS:
        raise InvalidTransition(
            "有料プランには請求間隔 (monthly / annual) の指定が必要です",
            target_tier=target_tier,
            target_interval=target_interval,
        )
    return target_interval


def plan_transition(
    state: SubscriptionState,
    target_tier: str,
    target_interval: Optional[str],
    has_used_trial: bool,
) -> Transition:
    """プラン変更リクエストの遷移を判定"""
    target_interval = validate_target(target_tier, target_interval)

    if state.base == BASE_FREE:
        if target_tier == plan_catalog.FREE:
            raise NoOpRejected(current_tier=state.tier)
        return Transition(kind=CREATE_PAID if has_used_trial else START_TRIAL)

    # 現在と同じプラン: 予約の取消として扱う
    if target_tier == state.tier and target_interval == state.interval:
        if state.pending == PENDING_CANCELLATION:
            return Transition(kind=REACTIVATE)
        if state.pending == PENDING_DOWNGRADE:
            return Transition(kind=CANCEL_SCHEDULED)
        raise NoOpRejected(current_tier=state.tier, current_interval=state.interval)

    direction = billing_cycle.classify(state.tier, target_tier)

    if direction == billing_cycle.DOWNGRADE:
        if state.pending == PENDING_CANCELLATION:
            raise InvalidTransition(
                "解約予約中はダウングレードできません。先に解約予約を取り消してください。",
                effective_date=_iso(state.effective_date),
            )
        if (
            state.pending == PENDING_DOWNGRADE
            and state.scheduled_tier == target_tier
            and state.scheduled_interval == target_interval
        ):
            raise NoOpRejected(
                "既に同じプラン変更が予約されています",
                scheduled_tier=state.scheduled_tier,
                effective_date=_iso(state.effective_date),
            )
        return Transition(
            kind=SCHEDULE_DOWNGRADE,
            replaces_schedule=state.pending == PENDING_DOWNGRADE,
        )

    return Transition(
        kind=UPGRADE if direction == billing_cycle.UPGRADE else LATERAL,
        reactivate=state.pending == PENDING_CANCELLATION,
        replaces_schedule=state.pending == PENDING_DOWNGRADE,
    )


def cancel_transition(state: SubscriptionState) -> Transition:
    """解約リクエストの遷移を判定 (期間終了時に無料プランへ)"""
    if state.base == BASE_FREE:
        raise InvalidTransition("無料プランは解約できません", current_tier=state.tier)
    if state.pending == PENDING_CANCELLATION:
        raise NoOpRejected("既に解約予約済みです", effective_date=_iso(state.effective_date))
    if state.pending == PENDING_DOWNGRADE:
        raise InvalidTransition(
            "プラン変更の予約中は解約できません。先に予約を取り消してください。",
            scheduled_tier=state.scheduled_tier,
            effective_date=_iso(state.effective_date),
        )
    return Transition(kind=CANCEL)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
