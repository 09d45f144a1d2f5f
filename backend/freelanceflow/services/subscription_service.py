"""購読ビジネスロジック

1購読の変更は1トランザクションで行う:
    行ロック (SELECT ... FOR UPDATE) → 期間終了処理 → 遷移判定 → Stripe呼び出し → ローカル更新 → コミット
Stripeが失敗した場合はローカル状態を一切変更しない。
version列による楽観的排他制御の競合は StaleState として返す。
"""
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from freelanceflow.core.clock import utcnow
from freelanceflow.core.config import settings
from freelanceflow.core.logging import get_logger
from freelanceflow.models.subscription import Subscription
from freelanceflow.models.subscription_plan_change import SubscriptionPlanChange
from freelanceflow.schemas.subscription import SubscriptionInfo, UsageInfo
from freelanceflow.services import (
    billing_cycle,
    plan_catalog,
    proration,
    state_machine,
    stripe_service,
    subscription_cache,
    usage_quota,
)
from freelanceflow.services.errors import (
    BillingError,
    GatewayUnavailable,
    InvalidTransition,
    QuotaExceeded,
    StaleState,
)
from freelanceflow.services.proration import ProrationQuote
from freelanceflow.services.state_machine import SubscriptionState, Transition
from freelanceflow.services.stripe_service import GatewaySubscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanChangeResult:
    transition: str
    amount_due_now: int
    effective_date: Optional[datetime]
    subscription: SubscriptionInfo
    replayed: bool = False


@dataclass(frozen=True)
class PlanChangePreview:
    transition: Transition
    quote: ProrationQuote
    gateway_amount_due: Optional[int] = None


# =========================================================
# 購読の取得・トランザクション
# =========================================================

def _new_free_subscription(user_id: str, now: datetime) -> Subscription:
    return Subscription(
        user_id=user_id,
        tier=plan_catalog.FREE,
        billing_interval=None,
        status="active",
        cancel_at_period_end=False,
        period_start=now,
        period_end=billing_cycle.advance_period(now, None),
        usage_count=0,
        monthly_limit=plan_catalog.monthly_limit_for(plan_catalog.FREE),
        has_used_trial=False,
    )


def get_or_create_subscription(db: Session, user_id: str, now: Optional[datetime] = None) -> Subscription:
    """購読取得 (初回アクセス時は無料プランで作成)"""
    sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if sub:
        return sub

    db.add(_new_free_subscription(user_id, now or utcnow()))
    try:
        db.commit()
    except IntegrityError:
        # 同時リクエストで作成済み
        db.rollback()
        sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if not sub:
            raise
        return sub

    logger.info(f"無料プラン購読作成: user_id={user_id}")
    return db.query(Subscription).filter(Subscription.user_id == user_id).one()


def _lock_subscription(db: Session, user_id: str) -> Subscription:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .populate_existing()
        .with_for_update()
        .one()
    )


def _commit(db: Session, user_id: str):
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"購読の同時更新を検出: user_id={user_id}")
        raise StaleState(user_id=user_id) from e
    subscription_cache.invalidate(user_id)


@contextmanager
def _subscription_transaction(db: Session, user_id: str, now: datetime):
    """行ロックを取得し、期間終了処理を済ませた購読を渡す。正常終了でコミット"""
    get_or_create_subscription(db, user_id, now)
    sub = _lock_subscription(db, user_id)
    try:
        _roll_over(db, sub, now)
        yield sub
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"購読の同時更新を検出: user_id={user_id}")
        raise StaleState(user_id=user_id) from e
    except Exception:
        db.rollback()
        raise
    _commit(db, user_id)


def _roll_over(db: Session, sub: Subscription, now: datetime) -> bool:
    """請求期間の終了処理 (利用回数リセット + 期限到来の予約を適用)"""
    had_pending = sub.scheduled_tier is not None or sub.cancel_at_period_end
    old_tier = sub.tier
    if not usage_quota.reset_if_due(sub, now):
        return False

    if had_pending and sub.scheduled_tier is None and not sub.cancel_at_period_end:
        _close_pending_plan_changes(db, sub.id)

    logger.info(
        f"請求期間更新: user_id={sub.user_id}, tier {old_tier} → {sub.tier}, "
        f"period={sub.period_start} - {sub.period_end}"
    )
    return True


def _require_gateway_ref(sub: Subscription) -> str:
    if not sub.external_subscription_ref:
        raise InvalidTransition("Stripe購読が見つかりません", user_id=sub.user_id, tier=sub.tier)
    return sub.external_subscription_ref


def _apply_plan(sub: Subscription, tier: str, interval: Optional[str]):
    sub.tier = tier
    sub.billing_interval = None if tier == plan_catalog.FREE else interval
    sub.monthly_limit = plan_catalog.monthly_limit_for(tier)


def _apply_gateway_period(sub: Subscription, gateway_sub: GatewaySubscription):
    """請求期間はStripeが正"""
    if gateway_sub.period_start:
        sub.period_start = gateway_sub.period_start
    if gateway_sub.period_end:
        sub.period_end = gateway_sub.period_end
    if gateway_sub.trial_end:
        sub.trial_end = gateway_sub.trial_end


# =========================================================
# 変更履歴
# =========================================================

def _record_change(
    db: Session,
    sub: Subscription,
    change_type: str,
    old_tier: Optional[str],
    old_interval: Optional[str],
    new_tier: Optional[str],
    new_interval: Optional[str],
    amount_due: int = 0,
    effective_at: Optional[datetime] = None,
    applied: bool = True,
    request_id: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
):
    db.add(SubscriptionPlanChange(
        subscription_id=sub.id,
        request_id=request_id,
        old_tier=old_tier,
        old_interval=old_interval,
        new_tier=new_tier,
        new_interval=new_interval,
        change_type=change_type,
        amount_due=amount_due,
        effective_at=effective_at,
        applied=applied,
        stripe_event_id=stripe_event_id,
    ))


def _close_pending_plan_changes(db: Session, subscription_id: int):
    """未適用のプラン変更履歴を閉じる (適用・取消とも applied=True)"""
    pending = db.query(SubscriptionPlanChange).filter(
        SubscriptionPlanChange.subscription_id == subscription_id,
        SubscriptionPlanChange.applied == False,
    ).all()
    for p in pending:
        p.applied = True
    if pending:
        db.flush()


def _replayed_result(db: Session, user_id: str, request_id: Optional[str]) -> Optional[PlanChangeResult]:
    """同じrequest_idの再送なら記録済みの結果を返す (Stripeは呼ばない)"""
    if not request_id:
        return None
    change = db.query(SubscriptionPlanChange).filter(
        SubscriptionPlanChange.request_id == request_id
    ).first()
    if not change:
        return None

    sub = db.query(Subscription).filter(Subscription.id == change.subscription_id).first()
    if sub is None or sub.user_id != user_id:
        raise InvalidTransition("request_idが他の購読で使用済みです", request_id=request_id)

    logger.info(f"プラン変更リクエスト再送: user_id={user_id}, request_id={request_id}")
    return PlanChangeResult(
        transition=change.change_type,
        amount_due_now=change.amount_due,
        effective_date=change.effective_at,
        subscription=subscription_cache.snapshot(sub),
        replayed=True,
    )


# =========================================================
# 参照・利用枠
# =========================================================

def get_subscription_info(db: Session, user_id: str, now: Optional[datetime] = None) -> SubscriptionInfo:
    """購読スナップショット (キャッシュ優先、期間終了済みなら再計算)"""
    now = now or utcnow()
    cached = subscription_cache.get_cached(user_id)
    if cached and cached.period_end > now:
        return cached

    with _subscription_transaction(db, user_id, now) as sub:
        info = subscription_cache.snapshot(sub)
    subscription_cache.store(info)
    return info


def consume_quota(db: Session, user_id: str, now: Optional[datetime] = None) -> UsageInfo:
    """利用枠を1回分消費。上限到達なら QuotaExceeded"""
    now = now or utcnow()
    with _subscription_transaction(db, user_id, now) as sub:
        decision = usage_quota.check_and_consume(sub)
        if not decision.allowed:
            logger.info(f"利用上限到達: user_id={user_id}, {decision.usage_count}/{decision.monthly_limit}")
            raise QuotaExceeded(
                usage_count=decision.usage_count,
                monthly_limit=decision.monthly_limit,
                resets_at=sub.period_end.isoformat(),
                tier=sub.tier,
            )
        usage = UsageInfo(
            allowed=True,
            usage_count=decision.usage_count,
            monthly_limit=decision.monthly_limit,
            unlimited=decision.unlimited,
            period_end=sub.period_end,
        )
    return usage


# =========================================================
# プラン変更
# =========================================================

def _quote_for(
    sub: Subscription,
    transition: Transition,
    target_tier: str,
    target_interval: Optional[str],
    now: datetime,
) -> ProrationQuote:
    kind = transition.kind
    if kind == state_machine.START_TRIAL:
        return proration.trial_quote(now)
    if kind == state_machine.CREATE_PAID:
        return proration.quote_new_subscription(target_tier, target_interval, now)
    if kind in (state_machine.UPGRADE, state_machine.LATERAL):
        if sub.status == "trialing":
            return ProrationQuote(
                amount_due_now=0,
                period_end=sub.trial_end or sub.period_end,
                note=proration.NOTE_TRIAL,
            )
        return proration.quote(
            sub.tier,
            sub.billing_interval,
            target_tier,
            target_interval,
            sub.period_start,
            sub.period_end,
            now,
        )
    if kind == state_machine.SCHEDULE_DOWNGRADE:
        return proration.deferred_quote(sub.period_end)
    return ProrationQuote(amount_due_now=0, period_end=sub.period_end)


def preview_plan_change(
    db: Session,
    user_id: str,
    target_tier: str,
    target_interval: Optional[str],
    now: Optional[datetime] = None,
) -> PlanChangePreview:
    """プラン変更の請求額プレビュー (購読は変更しない)"""
    now = now or utcnow()
    with _subscription_transaction(db, user_id, now) as sub:
        state = SubscriptionState.from_subscription(sub)
        transition = state_machine.plan_transition(state, target_tier, target_interval, sub.has_used_trial)
        target_interval = state_machine.validate_target(target_tier, target_interval)
        quote = _quote_for(sub, transition, target_tier, target_interval, now)

        gateway_amount = None
        if (
            transition.kind in (state_machine.UPGRADE, state_machine.LATERAL)
            and sub.status != "trialing"
            and sub.external_subscription_ref
        ):
            try:
                gateway_amount = stripe_service.preview_proration(
                    sub.external_subscription_ref,
                    plan_catalog.price_ref_for(target_tier, target_interval),
                )
            except GatewayUnavailable:
                logger.warning(f"Stripe請求額プレビュー取得失敗: user_id={user_id}")

    return PlanChangePreview(transition=transition, quote=quote, gateway_amount_due=gateway_amount)


def request_plan_change(
    db: Session,
    user_id: str,
    target_tier: str,
    target_interval: Optional[str],
    request_id: str,
    now: Optional[datetime] = None,
) -> PlanChangeResult:
    """プラン変更リクエスト

    アップグレード・請求間隔変更は即時適用 (日割り請求)、
    ダウングレードは期間終了時に適用 (それまでは現在のプランを維持)。
    """
    now = now or utcnow()
    replayed = _replayed_result(db, user_id, request_id)
    if replayed:
        return replayed

    state_machine.validate_target(target_tier, target_interval)
    if target_tier != plan_catalog.FREE:
        _ensure_customer(db, user_id, request_id, now)

    with _subscription_transaction(db, user_id, now) as sub:
        state = SubscriptionState.from_subscription(sub)
        transition = state_machine.plan_transition(state, target_tier, target_interval, sub.has_used_trial)
        target_interval = state_machine.validate_target(target_tier, target_interval)
        old_tier, old_interval = sub.tier, sub.billing_interval

        kind = transition.kind
        if kind in (state_machine.START_TRIAL, state_machine.CREATE_PAID):
            quote = _start_paid_subscription(sub, transition, target_tier, target_interval, request_id, now)
        elif kind in (state_machine.UPGRADE, state_machine.LATERAL):
            quote = _change_immediately(db, sub, transition, target_tier, target_interval, request_id, now)
        elif kind == state_machine.SCHEDULE_DOWNGRADE:
            quote = _schedule_downgrade(db, sub, transition, target_tier, target_interval, request_id)
        elif kind == state_machine.REACTIVATE:
            quote = _reactivate(db, sub, request_id)
        else:
            quote = _revert_scheduled_change(db, sub, request_id)

        deferred = kind == state_machine.SCHEDULE_DOWNGRADE
        _record_change(
            db,
            sub,
            change_type=kind,
            old_tier=old_tier,
            old_interval=old_interval,
            new_tier=target_tier,
            new_interval=target_interval,
            amount_due=quote.amount_due_now,
            effective_at=sub.scheduled_change_date if deferred else now,
            applied=not deferred,
            request_id=request_id,
        )
        result = PlanChangeResult(
            transition=kind,
            amount_due_now=quote.amount_due_now,
            effective_date=sub.scheduled_change_date if deferred else now,
            subscription=subscription_cache.snapshot(sub),
        )

    logger.info(
        f"プラン変更: user_id={user_id}, {old_tier}/{old_interval} → {target_tier}/{target_interval} "
        f"[{kind}], amount_due={quote.amount_due_now}"
    )
    return result


def _ensure_customer(db: Session, user_id: str, request_id: str, now: datetime):
    """無料プランのユーザーにStripe Customerを作成して単独でコミット

    購読作成が失敗してロールバックされても、再試行時に同じCustomerを使う。
    """
    with _subscription_transaction(db, user_id, now) as sub:
        if sub.tier == plan_catalog.FREE and not sub.external_customer_ref:
            sub.external_customer_ref = stripe_service.create_customer(
                sub.user_id,
                idempotency_key=f"{request_id}:customer",
            )


def _start_paid_subscription(
    sub: Subscription,
    transition: Transition,
    target_tier: str,
    target_interval: str,
    request_id: str,
    now: datetime,
) -> ProrationQuote:
    """無料 → 有料 (トライアル未使用なら14日間トライアル)"""
    quote = _quote_for(sub, transition, target_tier, target_interval, now)
    start_trial = transition.kind == state_machine.START_TRIAL

    if not sub.external_customer_ref:
        # Customer作成後に別リクエストで状態が変わった
        raise StaleState(user_id=sub.user_id)

    gateway_sub = stripe_service.create_subscription(
        sub.external_customer_ref,
        plan_catalog.price_ref_for(target_tier, target_interval),
        trial_days=settings.TRIAL_DAYS if start_trial else None,
        idempotency_key=request_id,
        metadata={"user_id": sub.user_id},
    )

    sub.external_subscription_ref = gateway_sub.ref
    _apply_plan(sub, target_tier, target_interval)
    _apply_gateway_period(sub, gateway_sub)
    sub.status = gateway_sub.status
    sub.cancel_at_period_end = False
    sub.usage_count = 0
    if start_trial:
        sub.has_used_trial = True
    return quote


def _release_gateway_schedule(sub: Subscription, ref: str, idempotency_key: str) -> GatewaySubscription:
    """Stripe側の予約を取り消す (無料へのダウングレードは解約予約、有料へはPrice変更予約)"""
    if sub.scheduled_tier == plan_catalog.FREE:
        return stripe_service.reactivate_subscription(ref, idempotency_key=idempotency_key)
    return stripe_service.release_price_change(ref, idempotency_key=idempotency_key)


def _restore_gateway_schedule(sub: Subscription, ref: str, idempotency_key: str) -> GatewaySubscription:
    """ローカルに残っている予約をStripe側に再設定"""
    if sub.scheduled_tier == plan_catalog.FREE:
        return stripe_service.cancel_subscription(ref, at_period_end=True, idempotency_key=idempotency_key)
    return stripe_service.schedule_price_change(
        ref,
        plan_catalog.price_ref_for(sub.scheduled_tier, sub.scheduled_interval),
        idempotency_key=idempotency_key,
    )


@contextmanager
def _replacing_gateway_schedule(sub: Subscription, ref: str, request_id: str):
    """Stripe側の予約を取り消してから変更する

    変更が失敗した場合はローカルがロールバックされるため、Stripe側の予約も元に戻す。
    """
    _release_gateway_schedule(sub, ref, f"{request_id}:revert")
    try:
        yield
    except BillingError:
        try:
            _restore_gateway_schedule(sub, ref, f"{request_id}:restore")
        except BillingError as e:
            logger.error(
                f"Stripe側の予約の復元に失敗: user_id={sub.user_id}, "
                f"scheduled={sub.scheduled_tier}/{sub.scheduled_interval}, {e.kind}"
            )
        raise


def _change_immediately(
    db: Session,
    sub: Subscription,
    transition: Transition,
    target_tier: str,
    target_interval: str,
    request_id: str,
    now: datetime,
) -> ProrationQuote:
    """アップグレード・請求間隔変更 (即時適用、日割り請求)"""
    ref = _require_gateway_ref(sub)
    quote = _quote_for(sub, transition, target_tier, target_interval, now)

    replacing = _replacing_gateway_schedule(sub, ref, request_id) if transition.replaces_schedule else nullcontext()
    with replacing:
        gateway_sub = stripe_service.update_subscription(
            ref,
            plan_catalog.price_ref_for(target_tier, target_interval),
            "none" if sub.status == "trialing" else "always_invoice",
            reactivate=transition.reactivate,
            idempotency_key=request_id,
        )

    if transition.replaces_schedule or transition.reactivate:
        billing_cycle.cancel_scheduled(sub)
        _close_pending_plan_changes(db, sub.id)

    _apply_plan(sub, target_tier, target_interval)
    _apply_gateway_period(sub, gateway_sub)
    sub.status = gateway_sub.status
    sub.cancel_at_period_end = False
    return quote


def _schedule_downgrade(
    db: Session,
    sub: Subscription,
    transition: Transition,
    target_tier: str,
    target_interval: Optional[str],
    request_id: str,
) -> ProrationQuote:
    """ダウングレード予約

    Stripe側: 有料プランへは次回更新からのPrice変更 (Subscription Schedule)、
    無料プランへは期間終了時キャンセル。現在の請求期間は変えない。
    """
    ref = _require_gateway_ref(sub)

    replacing = _replacing_gateway_schedule(sub, ref, request_id) if transition.replaces_schedule else nullcontext()
    with replacing:
        if target_tier == plan_catalog.FREE:
            stripe_service.cancel_subscription(ref, at_period_end=True, idempotency_key=request_id)
        else:
            stripe_service.schedule_price_change(
                ref,
                plan_catalog.price_ref_for(target_tier, target_interval),
                idempotency_key=request_id,
            )

    if transition.replaces_schedule:
        billing_cycle.cancel_scheduled(sub)
        _close_pending_plan_changes(db, sub.id)

    # 予約日はローカルの請求期間終了日 (Stripe応答の期間では上書きしない)
    result = billing_cycle.schedule(sub, target_tier, target_interval)
    if not result.scheduled:
        raise InvalidTransition("ダウングレードを予約できません", reason=result.reason)
    return proration.deferred_quote(sub.scheduled_change_date)


def _reactivate(db: Session, sub: Subscription, request_id: Optional[str]) -> ProrationQuote:
    """解約予約の取消"""
    gateway_sub = stripe_service.reactivate_subscription(_require_gateway_ref(sub), idempotency_key=request_id)
    sub.cancel_at_period_end = False
    _apply_gateway_period(sub, gateway_sub)
    _close_pending_plan_changes(db, sub.id)
    return ProrationQuote(amount_due_now=0, period_end=sub.period_end)


def _revert_scheduled_change(db: Session, sub: Subscription, request_id: Optional[str]) -> ProrationQuote:
    """ダウングレード予約の取消 (Stripe側の予約も取り消す)"""
    gateway_sub = _release_gateway_schedule(sub, _require_gateway_ref(sub), request_id)
    billing_cycle.cancel_scheduled(sub)
    _close_pending_plan_changes(db, sub.id)
    _apply_gateway_period(sub, gateway_sub)
    return ProrationQuote(amount_due_now=0, period_end=sub.period_end)


# =========================================================
# 解約・予約取消
# =========================================================

def cancel_subscription(
    db: Session,
    user_id: str,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PlanChangeResult:
    """解約 (期間終了時に無料プランへ。それまでは現在のプランを利用可能)"""
    now = now or utcnow()
    replayed = _replayed_result(db, user_id, request_id)
    if replayed:
        return replayed

    with _subscription_transaction(db, user_id, now) as sub:
        state_machine.cancel_transition(SubscriptionState.from_subscription(sub))
        gateway_sub = stripe_service.cancel_subscription(
            _require_gateway_ref(sub),
            at_period_end=True,
            idempotency_key=request_id,
        )
        _apply_gateway_period(sub, gateway_sub)
        sub.cancel_at_period_end = True

        _record_change(
            db,
            sub,
            change_type=state_machine.CANCEL,
            old_tier=sub.tier,
            old_interval=sub.billing_interval,
            new_tier=plan_catalog.FREE,
            new_interval=None,
            effective_at=sub.period_end,
            applied=False,
            request_id=request_id,
        )
        result = PlanChangeResult(
            transition=state_machine.CANCEL,
            amount_due_now=0,
            effective_date=sub.period_end,
            subscription=subscription_cache.snapshot(sub),
        )

    logger.info(f"解約予約: user_id={user_id}, 終了予定={result.effective_date}")
    return result


def cancel_scheduled_change(
    db: Session,
    user_id: str,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PlanChangeResult:
    """予約の取消 (ダウングレード予約・解約予約のどちらも対象)

    予約がなければ何もせず現在の状態を返す。
    """
    now = now or utcnow()
    replayed = _replayed_result(db, user_id, request_id)
    if replayed:
        return replayed

    with _subscription_transaction(db, user_id, now) as sub:
        state = SubscriptionState.from_subscription(sub)
        if state.pending == state_machine.PENDING_DOWNGRADE:
            kind = state_machine.CANCEL_SCHEDULED
            _revert_scheduled_change(db, sub, request_id)
        elif state.pending == state_machine.PENDING_CANCELLATION:
            kind = state_machine.REACTIVATE
            _reactivate(db, sub, request_id)
        else:
            kind = None

        if kind:
            _record_change(
                db,
                sub,
                change_type=kind,
                old_tier=sub.tier,
                old_interval=sub.billing_interval,
                new_tier=sub.tier,
                new_interval=sub.billing_interval,
                effective_at=now,
                request_id=request_id,
            )
        result = PlanChangeResult(
            transition=kind or state_machine.CANCEL_SCHEDULED,
            amount_due_now=0,
            effective_date=now if kind else None,
            subscription=subscription_cache.snapshot(sub),
        )

    logger.info(f"予約取消: user_id={user_id}, kind={kind}")
    return result


# =========================================================
# スケジューラ: 期間終了処理
# =========================================================

def roll_over_due_subscriptions(db: Session, now: datetime) -> int:
    """期間終了を過ぎた購読を一括処理 (スケジューラから呼ばれる)

    1購読ずつロック・コミットする。競合した購読は次回に回す。
    """
    user_ids = [
        row.user_id
        for row in db.query(Subscription.user_id).filter(Subscription.period_end <= now).all()
    ]

    processed = 0
    for user_id in user_ids:
        try:
            with _subscription_transaction(db, user_id, now):
                pass
            processed += 1
        except StaleState:
            logger.warning(f"期間終了処理スキップ (同時更新): user_id={user_id}")

    return processed


# =========================================================
# Stripe Webhook
# =========================================================

def _lock_by_gateway_ref(db: Session, subscription_ref: str) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.external_subscription_ref == subscription_ref)
        .populate_existing()
        .with_for_update()
        .first()
    )


def link_gateway_subscription(db: Session, gateway_sub: GatewaySubscription, stripe_event_id: Optional[str] = None):
    """customer.subscription.created: API以外 (Stripeダッシュボード等) で作成された購読を紐付け"""
    existing = db.query(Subscription).filter(
        Subscription.external_subscription_ref == gateway_sub.ref
    ).first()
    if existing:
        logger.info(f"subscription.created: 既存レコード stripe_subscription_id={gateway_sub.ref}")
        return

    sub = (
        db.query(Subscription)
        .filter(Subscription.external_customer_ref == gateway_sub.customer_ref)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not sub:
        logger.warning(f"subscription.created: ユーザー不明 customer={gateway_sub.customer_ref}")
        return
    if sub.external_subscription_ref:
        logger.warning(
            f"subscription.created: 別の購読が有効です user_id={sub.user_id}, "
            f"existing={sub.external_subscription_ref}, new={gateway_sub.ref}"
        )
        return

    plan = plan_catalog.plan_for_price_ref(gateway_sub.price_ref) if gateway_sub.price_ref else None
    if plan is None:
        logger.warning(f"subscription.created: プラン不明 price_id={gateway_sub.price_ref}")
        return

    tier, interval = plan
    old_tier = sub.tier
    sub.external_subscription_ref = gateway_sub.ref
    _apply_plan(sub, tier, interval)
    _apply_gateway_period(sub, gateway_sub)
    sub.status = gateway_sub.status
    sub.cancel_at_period_end = gateway_sub.cancel_at_period_end
    sub.usage_count = 0
    if gateway_sub.status == "trialing":
        sub.has_used_trial = True
    _record_change(
        db,
        sub,
        change_type=state_machine.CREATE_PAID,
        old_tier=old_tier,
        old_interval=None,
        new_tier=tier,
        new_interval=interval,
        effective_at=utcnow(),
        stripe_event_id=stripe_event_id,
    )
    _commit(db, sub.user_id)
    logger.info(f"subscription.created: 購読紐付け user_id={sub.user_id}, tier={tier}, status={sub.status}")


def sync_from_gateway(db: Session, gateway_sub: GatewaySubscription, stripe_event_id: Optional[str] = None):
    """customer.subscription.updated: Stripeの状態をローカルに反映"""
    sub = _lock_by_gateway_ref(db, gateway_sub.ref)
    if not sub:
        logger.warning(f"購読が見つかりません: stripe_subscription_id={gateway_sub.ref}")
        return

    # 更新 (新しい請求期間) ならローカルの期間終了処理を先に行う
    if gateway_sub.period_start and gateway_sub.period_start >= sub.period_end:
        _roll_over(db, sub, max(utcnow(), sub.period_end))
        if sub.tier == plan_catalog.FREE:
            _commit(db, sub.user_id)
            return

    _reconcile_price(db, sub, gateway_sub, stripe_event_id)

    # 無料プランへのダウングレード予約はStripe上では期間終了時キャンセルで表現される
    if sub.scheduled_tier == plan_catalog.FREE:
        if not gateway_sub.cancel_at_period_end:
            logger.info(f"Stripe側で解約が取り消されたため予約を取消: user_id={sub.user_id}")
            billing_cycle.cancel_scheduled(sub)
            _close_pending_plan_changes(db, sub.id)
    elif gateway_sub.cancel_at_period_end and sub.scheduled_tier is not None:
        logger.info(f"Stripe側で解約されたためダウングレード予約を取消: user_id={sub.user_id}")
        billing_cycle.cancel_scheduled(sub)
        _close_pending_plan_changes(db, sub.id)
        sub.cancel_at_period_end = True
    else:
        sub.cancel_at_period_end = gateway_sub.cancel_at_period_end

    sub.status = gateway_sub.status
    _apply_gateway_period(sub, gateway_sub)
    _commit(db, sub.user_id)


def _reconcile_price(
    db: Session,
    sub: Subscription,
    gateway_sub: GatewaySubscription,
    stripe_event_id: Optional[str],
):
    """Stripe側のPrice変更 (Billing Portal等) を検知してプランに反映"""
    if not gateway_sub.price_ref:
        return
    plan = plan_catalog.plan_for_price_ref(gateway_sub.price_ref)
    if plan is None:
        logger.warning(f"プラン変更検知: 不明なprice_id={gateway_sub.price_ref}")
        return

    new_tier, new_interval = plan
    if (new_tier, new_interval) == (sub.tier, sub.billing_interval):
        # Price変更予約のScheduleが解除された → 有料プランへのダウングレード予約をクリア
        if (
            sub.scheduled_tier is not None
            and sub.scheduled_tier != plan_catalog.FREE
            and not gateway_sub.schedule_ref
        ):
            logger.info(f"プラン変更取消: user_id={sub.user_id}, Stripe側でPrice変更予約が解除されました")
            billing_cycle.cancel_scheduled(sub)
            _close_pending_plan_changes(db, sub.id)
        return

    # 予約済みの変更先と同じ → 何もしない
    if (new_tier, new_interval) == (sub.scheduled_tier, sub.scheduled_interval):
        return

    old_tier, old_interval = sub.tier, sub.billing_interval
    billing_cycle.cancel_scheduled(sub)
    _close_pending_plan_changes(db, sub.id)

    if billing_cycle.classify(old_tier, new_tier) == billing_cycle.DOWNGRADE:
        result = billing_cycle.schedule(sub, new_tier, new_interval)
        if not result.scheduled:
            logger.warning(f"ダウングレード予約不可: user_id={sub.user_id}, reason={result.reason}")
            return
        change_type = state_machine.SCHEDULE_DOWNGRADE
        effective_at = sub.scheduled_change_date
        applied = False
    else:
        _apply_plan(sub, new_tier, new_interval)
        change_type = billing_cycle.classify(old_tier, new_tier)
        effective_at = utcnow()
        applied = True

    _record_change(
        db,
        sub,
        change_type=change_type,
        old_tier=old_tier,
        old_interval=old_interval,
        new_tier=new_tier,
        new_interval=new_interval,
        effective_at=effective_at,
        applied=applied,
        stripe_event_id=stripe_event_id,
    )
    logger.info(
        f"Stripe側プラン変更を反映: user_id={sub.user_id}, "
        f"{old_tier}/{old_interval} → {new_tier}/{new_interval} [{change_type}]"
    )


def handle_subscription_deleted(db: Session, subscription_ref: str):
    """購読削除 → 無料プランへ (レコードは残す)"""
    sub = _lock_by_gateway_ref(db, subscription_ref)
    if not sub:
        logger.info(f"購読削除: ローカルでは終了処理済み stripe_subscription_id={subscription_ref}")
        return

    now = utcnow()
    old_tier = sub.tier
    # 無料プランへのダウングレード予約による終了はユーザーの選択なので active のまま
    scheduled_free = sub.scheduled_tier == plan_catalog.FREE

    _apply_plan(sub, plan_catalog.FREE, None)
    sub.status = "active" if scheduled_free else "cancelled"
    sub.external_subscription_ref = None
    sub.cancel_at_period_end = False
    billing_cycle.cancel_scheduled(sub)
    _close_pending_plan_changes(db, sub.id)

    sub.usage_count = 0
    sub.period_start = now
    sub.period_end = billing_cycle.advance_period(now, None)
    _commit(db, sub.user_id)
    logger.info(f"購読終了: user_id={sub.user_id}, {old_tier} → free")


def handle_payment_failed(db: Session, subscription_ref: str):
    """決済失敗 → past_due"""
    sub = _lock_by_gateway_ref(db, subscription_ref)
    if not sub:
        return

    sub.status = "past_due"
    _commit(db, sub.user_id)


def handle_invoice_paid(db: Session, subscription_ref: Optional[str]):
    """決済成功 → past_due から active に復帰

    トライアル開始時の0円請求でも届くため、trialing は変更しない。
    """
    if not subscription_ref:
        return

    sub = _lock_by_gateway_ref(db, subscription_ref)
    if not sub:
        return

    if sub.status == "past_due":
        sub.status = "active"
        _commit(db, sub.user_id)
        logger.info(f"購読復帰: user_id={sub.user_id}, past_due -> active")
