from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from freelanceflow.core.database import Base


class SubscriptionPlanChange(Base):
    __tablename__ = "subscription_plan_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    request_id = Column(String(64), nullable=True, unique=True, comment="PlanChangeRequest ID (Stripe idempotency key)")
    old_tier = Column(String(20), nullable=True)
    old_interval = Column(String(20), nullable=True)
    new_tier = Column(String(20), nullable=True)
    new_interval = Column(String(20), nullable=True)
    change_type = Column(String(20), nullable=False, comment="trial / create / upgrade / lateral / downgrade / cancel / reactivate")
    amount_due = Column(Integer, nullable=False, default=0, comment="即時請求額 (セント)")
    effective_at = Column(DateTime, nullable=True, comment="変更適用予定日時 (NULLなら即時適用済み)")
    applied = Column(Boolean, nullable=False, default=False, comment="適用済みフラグ")
    stripe_event_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
