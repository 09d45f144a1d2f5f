"""Stripe API操作サービス (決済ゲートウェイアダプター)

Stripeのエラーは課金ドメインのエラーに変換する:
    カード拒否 → PaymentFailed
    接続障害・レート制限・Stripe側5xx → GatewayUnavailable
    その他 (存在しない購読、idempotency keyの不一致、認証エラー等) → GatewayError
状態を変更する呼び出しには必ずidempotency keyを付与する。
"""
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import stripe

from freelanceflow.core.clock import from_timestamp
from freelanceflow.core.config import settings
from freelanceflow.core.logging import get_logger
from freelanceflow.services.errors import GatewayError, GatewayUnavailable, PaymentFailed

logger = get_logger(__name__)

# Stripe status → ローカル status
_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "cancelled",
    "incomplete": "past_due",
    "incomplete_expired": "expired",
    "paused": "past_due",
}


@dataclass(frozen=True)
class GatewaySubscription:
    ref: str
    status: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool
    price_ref: Optional[str] = None
    item_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    # 次回更新からのPrice変更を予約している Subscription Schedule
    schedule_ref: Optional[str] = None


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES


def _field(obj, key: str):
    """StripeObject / dict どちらからでも値を取得"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def local_status(stripe_status: Optional[str]) -> str:
    return _STATUS_MAP.get(stripe_status or "", "active")


def to_gateway_subscription(obj) -> GatewaySubscription:
    """Stripe Subscription (APIレスポンス / Webhookペイロード) を変換

    API 2025-03-31以降は請求期間がsubscription itemに移動しているため、
    トップレベルになければitems[0]から読む。
    """
    items = _field(_field(obj, "items"), "data") or []
    first_item = items[0] if items else None

    period_start = _field(obj, "current_period_start") or _field(first_item, "current_period_start")
    period_end = _field(obj, "current_period_end") or _field(first_item, "current_period_end")

    customer = _field(obj, "customer")
    if customer is not None and not isinstance(customer, str):
        customer = _field(customer, "id")

    schedule = _field(obj, "schedule")
    if schedule is not None and not isinstance(schedule, str):
        schedule = _field(schedule, "id")

    return GatewaySubscription(
        ref=_field(obj, "id"),
        status=local_status(_field(obj, "status")),
        period_start=from_timestamp(period_start),
        period_end=from_timestamp(period_end),
        trial_end=from_timestamp(_field(obj, "trial_end")),
        cancel_at_period_end=bool(_field(obj, "cancel_at_period_end")),
        price_ref=_field(_field(first_item, "price"), "id"),
        item_ref=_field(first_item, "id"),
        customer_ref=customer,
        schedule_ref=schedule,
    )


def _gateway_call(func):
    """Stripe呼び出しの初期化とエラー変換"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        _init_stripe()
        try:
            return func(*args, **kwargs)
        except stripe.CardError as e:
            logger.warning(f"Stripe決済拒否: {func.__name__}, code={e.code}, message={e.user_message}")
            raise PaymentFailed(decline_code=e.code, gateway_message=e.user_message) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.error(f"Stripe接続障害: {func.__name__}, {type(e).__name__}: {e}")
            raise GatewayUnavailable(retry_after=30) from e
        except stripe.StripeError as e:
            logger.error(f"Stripeエラー: {func.__name__}, {type(e).__name__}: {e}")
            raise GatewayError(
                gateway_code=e.code or type(e).__name__,
                request_id=e.request_id,
                gateway_message=e.user_message,
            ) from e

    return wrapper


@_gateway_call
def create_customer(user_id: str, idempotency_key: Optional[str] = None) -> str:
    """Stripe Customer 作成"""
    customer = stripe.Customer.create(
        metadata={"user_id": user_id},
        idempotency_key=idempotency_key,
    )
    logger.info(f"Stripe Customer作成: user_id={user_id}, customer={customer.id}")
    return customer.id


@_gateway_call
def create_subscription(
    customer_ref: str,
    price_ref: str,
    trial_days: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    metadata: dict = None,
) -> GatewaySubscription:
    """Stripe Subscription 作成 (トライアルなしの場合は初回請求を即時決済)"""
    params = {
        "customer": customer_ref,
        "items": [{"price": price_ref}],
        "payment_behavior": "error_if_incomplete",
        "metadata": metadata or {},
    }
    if trial_days and trial_days > 0:
        params["trial_period_days"] = trial_days

    stripe_sub = stripe.Subscription.create(idempotency_key=idempotency_key, **params)
    logger.info(f"Stripe Subscription作成: customer={customer_ref}, subscription={stripe_sub.id}, trial_days={trial_days}")
    return to_gateway_subscription(stripe_sub)


def _subscription_item_ref(subscription_ref: str) -> str:
    stripe_sub = stripe.Subscription.retrieve(subscription_ref)
    gateway_sub = to_gateway_subscription(stripe_sub)
    if not gateway_sub.item_ref:
        raise GatewayError(gateway_code="missing_subscription_item", subscription_ref=subscription_ref)
    return gateway_sub.item_ref


@_gateway_call
def update_subscription(
    subscription_ref: str,
    new_price_ref: str,
    proration_behavior: str,
    reactivate: bool = False,
    idempotency_key: Optional[str] = None,
) -> GatewaySubscription:
    """Price変更

    proration_behavior:
        always_invoice: 即時変更 (日割り額を即時請求、決済失敗なら変更されない)
        none: トライアル中の変更 (請求なし)
    """
    item_ref = _subscription_item_ref(subscription_ref)
    params = {
        "items": [{"id": item_ref, "price": new_price_ref}],
        "proration_behavior": proration_behavior,
    }
    if proration_behavior == "always_invoice":
        params["payment_behavior"] = "error_if_incomplete"
    if reactivate:
        params["cancel_at_period_end"] = False

    stripe_sub = stripe.Subscription.modify(subscription_ref, idempotency_key=idempotency_key, **params)
    logger.info(
        f"Stripe Subscription更新: subscription={subscription_ref}, price={new_price_ref}, "
        f"proration={proration_behavior}, reactivate={reactivate}"
    )
    return to_gateway_subscription(stripe_sub)


@_gateway_call
def cancel_subscription(
    subscription_ref: str,
    at_period_end: bool = True,
    idempotency_key: Optional[str] = None,
) -> GatewaySubscription:
    """購読をキャンセル"""
    if at_period_end:
        stripe_sub = stripe.Subscription.modify(
            subscription_ref,
            cancel_at_period_end=True,
            idempotency_key=idempotency_key,
        )
    else:
        stripe_sub = stripe.Subscription.cancel(subscription_ref, idempotency_key=idempotency_key)
    logger.info(f"Stripe Subscriptionキャンセル: subscription={subscription_ref}, at_period_end={at_period_end}")
    return to_gateway_subscription(stripe_sub)


@_gateway_call
def reactivate_subscription(subscription_ref: str, idempotency_key: Optional[str] = None) -> GatewaySubscription:
    """期間終了時キャンセルを取り消す"""
    stripe_sub = stripe.Subscription.modify(
        subscription_ref,
        cancel_at_period_end=False,
        idempotency_key=idempotency_key,
    )
    logger.info(f"Stripe Subscription再開: subscription={subscription_ref}")
    return to_gateway_subscription(stripe_sub)


@_gateway_call
def schedule_price_change(
    subscription_ref: str,
    new_price_ref: str,
    idempotency_key: Optional[str] = None,
) -> GatewaySubscription:
    """次回更新からPriceを変更 (ダウングレード予約)

    Subscription.modify でPriceを変えると請求間隔が変わる場合に請求サイクルがリセットされるため、
    Subscription Schedule の2フェーズ目として登録する。現在の請求期間はそのまま。
    """
    stripe_sub = stripe.Subscription.retrieve(subscription_ref)
    current = to_gateway_subscription(stripe_sub)

    if current.schedule_ref:
        schedule = stripe.SubscriptionSchedule.retrieve(current.schedule_ref)
    else:
        schedule = stripe.SubscriptionSchedule.create(
            from_subscription=subscription_ref,
            idempotency_key=f"{idempotency_key}:schedule" if idempotency_key else None,
        )

    current_phase = _field(schedule, "current_phase")
    stripe.SubscriptionSchedule.modify(
        schedule.id,
        end_behavior="release",
        proration_behavior="none",
        phases=[
            {
                "items": [{"price": current.price_ref, "quantity": 1}],
                "start_date": _field(current_phase, "start_date"),
                "end_date": _field(current_phase, "end_date"),
            },
            {
                "items": [{"price": new_price_ref, "quantity": 1}],
                "iterations": 1,
            },
        ],
        idempotency_key=idempotency_key,
    )
    logger.info(
        f"Stripe Price変更予約: subscription={subscription_ref}, schedule={schedule.id}, "
        f"{current.price_ref} → {new_price_ref}"
    )
    return to_gateway_subscription(stripe.Subscription.retrieve(subscription_ref))


@_gateway_call
def release_price_change(subscription_ref: str, idempotency_key: Optional[str] = None) -> GatewaySubscription:
    """Price変更予約を取消 (Scheduleを解除し、購読は現在のPriceのまま継続)"""
    current = to_gateway_subscription(stripe.Subscription.retrieve(subscription_ref))
    if not current.schedule_ref:
        return current

    stripe.SubscriptionSchedule.release(current.schedule_ref, idempotency_key=idempotency_key)
    logger.info(f"Stripe Price変更予約取消: subscription={subscription_ref}, schedule={current.schedule_ref}")
    return to_gateway_subscription(stripe.Subscription.retrieve(subscription_ref))


@_gateway_call
def preview_proration(subscription_ref: str, new_price_ref: str) -> int:
    """Stripe側の日割り請求額プレビュー (セント)"""
    item_ref = _subscription_item_ref(subscription_ref)
    invoice = stripe.Invoice.create_preview(
        subscription=subscription_ref,
        subscription_details={
            "items": [{"id": item_ref, "price": new_price_ref}],
            "proration_behavior": "always_invoice",
        },
    )
    return int(_field(invoice, "amount_due") or 0)


@_gateway_call
def retrieve_subscription(subscription_ref: str) -> GatewaySubscription:
    """Stripe Subscription を取得"""
    return to_gateway_subscription(stripe.Subscription.retrieve(subscription_ref))


def construct_webhook_event(payload: bytes, sig_header: str, secret: str):
    """Webhook イベントを構築・検証"""
    return stripe.Webhook.construct_event(payload, sig_header, secret)
