from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime
from uuid import uuid4


Tier = Literal["free", "professional", "premium"]
Interval = Literal["monthly", "annual"]


class PlanChangeRequest(BaseModel):
    target_tier: Tier
    target_interval: Optional[Interval] = None  # freeは不要
    # Stripe idempotency key を兼ねる (再送時は同じ値を送る)
    request_id: str = Field(default_factory=lambda: uuid4().hex, min_length=8, max_length=64)


class CancelRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: uuid4().hex, min_length=8, max_length=64)


class SubscriptionInfo(BaseModel):
    user_id: str
    tier: str
    billing_interval: Optional[str] = None
    status: str
    cancel_at_period_end: bool
    period_start: datetime
    period_end: datetime
    trial_end: Optional[datetime] = None
    scheduled_tier: Optional[str] = None
    scheduled_interval: Optional[str] = None
    scheduled_change_date: Optional[datetime] = None
    usage_count: int
    monthly_limit: int
    unlimited: bool = False
    has_used_trial: bool

    model_config = {"from_attributes": True}


class ProrationQuoteInfo(BaseModel):
    amount_due_now: int  # セント
    period_end: datetime
    note: Optional[str] = None
    transition: str
    effective_immediately: bool
    # Stripe側の試算額 (取得できた場合のみ)
    gateway_amount_due: Optional[int] = None


class PlanChangeResponse(BaseModel):
    transition: str
    amount_due_now: int
    effective_date: Optional[datetime] = None
    replayed: bool = False
    subscription: SubscriptionInfo


class UsageInfo(BaseModel):
    allowed: bool
    usage_count: int
    monthly_limit: int
    unlimited: bool = False
    period_end: datetime
