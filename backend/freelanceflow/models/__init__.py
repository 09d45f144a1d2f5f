# 全モデルをインポート (Alembic autogenerate用)
from freelanceflow.models.subscription import Subscription
from freelanceflow.models.subscription_plan_change import SubscriptionPlanChange
from freelanceflow.models.processed_stripe_event import ProcessedStripeEvent

__all__ = [
    "Subscription",
    "SubscriptionPlanChange",
    "ProcessedStripeEvent",
]
