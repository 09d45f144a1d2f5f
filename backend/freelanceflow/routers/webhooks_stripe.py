"""Stripe Webhook ルーター"""
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.orm import Session

from freelanceflow.core.config import settings
from freelanceflow.core.database import get_db
from freelanceflow.services import stripe_service, subscription_service
from freelanceflow.models.processed_stripe_event import ProcessedStripeEvent
from freelanceflow.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe Webhook エンドポイント (署名検証)

    処理に失敗した場合は5xx/409を返し、Stripeの再送に任せる。
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = stripe_service.construct_webhook_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Stripe webhook署名検証失敗: {e}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]
    data = event["data"]["object"]

    # 冪等性チェック: 同一イベントの重複処理を防止
    if _is_event_processed(db, event_id):
        logger.info(f"Stripe webhook重複スキップ: {event_id} ({event_type})")
        return {"received": True}

    try:
        if event_type == "customer.subscription.created":
            subscription_ref = _handle_subscription_created(db, data, event_id)
        elif event_type == "customer.subscription.updated":
            subscription_ref = _handle_subscription_updated(db, data, event_id)
        elif event_type == "customer.subscription.deleted":
            subscription_ref = _handle_subscription_deleted(db, data)
        elif event_type == "invoice.paid":
            subscription_ref = _handle_invoice_paid(db, data)
        elif event_type == "invoice.payment_failed":
            subscription_ref = _handle_invoice_payment_failed(db, data)
        else:
            logger.info(f"未処理のStripeイベント: {event_type}")
            return {"received": True}
    except Exception as e:
        logger.error(f"Stripe webhook処理エラー: {event_type} - {e}")
        raise

    # 処理済みとして記録
    _record_processed_event(db, event_id, event_type, subscription_ref)
    return {"received": True}


# =========================================================
# 冪等性ヘルパー
# =========================================================

def _is_event_processed(db: Session, event_id: str) -> bool:
    return db.query(ProcessedStripeEvent).filter(
        ProcessedStripeEvent.event_id == event_id
    ).first() is not None


def _record_processed_event(db: Session, event_id: str, event_type: str, subscription_ref: Optional[str]):
    db.add(ProcessedStripeEvent(
        event_id=event_id,
        event_type=event_type,
        external_subscription_ref=subscription_ref,
    ))
    db.commit()


def _invoice_subscription_ref(data) -> Optional[str]:
    """Invoiceの購読ID (API 2025-03-31以降は parent.subscription_details に移動)"""
    subscription_ref = data.get("subscription")
    if subscription_ref:
        return subscription_ref if isinstance(subscription_ref, str) else subscription_ref.get("id")
    parent = data.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


# =========================================================
# イベントハンドラ
# =========================================================

def _handle_subscription_created(db: Session, data, event_id: str) -> str:
    """customer.subscription.created: API経由で作成済みなら何もしない"""
    gateway_sub = stripe_service.to_gateway_subscription(data)
    subscription_service.link_gateway_subscription(db, gateway_sub, event_id)
    return gateway_sub.ref


def _handle_subscription_updated(db: Session, data, event_id: str) -> str:
    """customer.subscription.updated: ステータス・期間・プラン変更の反映

    イベントの到着順は保証されないため、Stripeから最新の状態を取得して反映する。
    """
    subscription_ref = data.get("id")
    gateway_sub = stripe_service.retrieve_subscription(subscription_ref)
    subscription_service.sync_from_gateway(db, gateway_sub, event_id)
    return subscription_ref


def _handle_subscription_deleted(db: Session, data) -> str:
    """customer.subscription.deleted"""
    subscription_ref = data.get("id")
    subscription_service.handle_subscription_deleted(db, subscription_ref)
    return subscription_ref


def _handle_invoice_paid(db: Session, data) -> Optional[str]:
    """invoice.paid: 請求成功 → past_due から active への復帰"""
    subscription_ref = _invoice_subscription_ref(data)
    if subscription_ref:
        subscription_service.handle_invoice_paid(db, subscription_ref)
    logger.info(f"請求成功: subscription={subscription_ref}")
    return subscription_ref


def _handle_invoice_payment_failed(db: Session, data) -> Optional[str]:
    """invoice.payment_failed: 決済失敗 → past_due"""
    subscription_ref = _invoice_subscription_ref(data)
    if subscription_ref:
        subscription_service.handle_payment_failed(db, subscription_ref)
    logger.warning(f"決済失敗: subscription={subscription_ref}")
    return subscription_ref
