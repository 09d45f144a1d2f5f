from sqlalchemy import Column, Integer, String, DateTime, func
from freelanceflow.core.database import Base


class ProcessedStripeEvent(Base):
    """Webhook冪等性: 処理済みStripeイベント"""
    __tablename__ = "processed_stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    external_subscription_ref = Column(String(255), nullable=True, index=True, comment="対象のStripe Subscription ID")
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
