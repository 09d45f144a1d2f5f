"""購読ルーター: 参照, プラン変更プレビュー・実行, 解約, 予約取消, 利用枠消費"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from freelanceflow.core.database import get_db
from freelanceflow.core.rate_limit import (
    limiter,
    PLAN_CHANGE_RATE_LIMIT,
    PREVIEW_RATE_LIMIT,
    USAGE_RATE_LIMIT,
)
from freelanceflow.schemas.subscription import (
    CancelRequest,
    PlanChangeRequest,
    PlanChangeResponse,
    ProrationQuoteInfo,
    SubscriptionInfo,
    UsageInfo,
)
from freelanceflow.services import subscription_service
from freelanceflow.services.subscription_service import PlanChangeResult
from freelanceflow.routers.deps import require_user_id

router = APIRouter(prefix="/api", tags=["subscriptions"])


def _to_response(result: PlanChangeResult) -> PlanChangeResponse:
    return PlanChangeResponse(
        transition=result.transition,
        amount_due_now=result.amount_due_now,
        effective_date=result.effective_date,
        replayed=result.replayed,
        subscription=result.subscription,
    )


@router.get("/subscription", response_model=SubscriptionInfo)
def get_subscription(
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """現在の購読状態 (プラン・利用状況・予約)"""
    return subscription_service.get_subscription_info(db, user_id)


@router.post("/subscription/preview", response_model=ProrationQuoteInfo)
@limiter.limit(PREVIEW_RATE_LIMIT)
def preview_plan_change(
    request: Request,
    req: PlanChangeRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """プラン変更の請求額プレビュー"""
    preview = subscription_service.preview_plan_change(db, user_id, req.target_tier, req.target_interval)
    return ProrationQuoteInfo(
        amount_due_now=preview.quote.amount_due_now,
        period_end=preview.quote.period_end,
        note=preview.quote.note,
        transition=preview.transition.kind,
        effective_immediately=preview.transition.immediate,
        gateway_amount_due=preview.gateway_amount_due,
    )


@router.post("/subscription/change", response_model=PlanChangeResponse)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
def change_plan(
    request: Request,
    req: PlanChangeRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """プラン変更 (アップグレードは即時、ダウングレードは期間終了時)"""
    result = subscription_service.request_plan_change(
        db, user_id, req.target_tier, req.target_interval, req.request_id
    )
    return _to_response(result)


@router.post("/subscription/cancel", response_model=PlanChangeResponse)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
def cancel_subscription(
    request: Request,
    req: CancelRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """解約 (期間終了時に無料プランへ)"""
    return _to_response(subscription_service.cancel_subscription(db, user_id, req.request_id))


@router.post("/subscription/scheduled-change/cancel", response_model=PlanChangeResponse)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
def cancel_scheduled_change(
    request: Request,
    req: CancelRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """ダウングレード予約・解約予約の取消"""
    return _to_response(subscription_service.cancel_scheduled_change(db, user_id, req.request_id))


@router.post("/usage/consume", response_model=UsageInfo)
@limiter.limit(USAGE_RATE_LIMIT)
def consume_usage(
    request: Request,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    """利用枠を1回分消費 (上限到達なら403)"""
    return subscription_service.consume_quota(db, user_id)
