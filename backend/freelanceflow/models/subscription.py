from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum as SAEnum, func
from freelanceflow.core.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True, comment="認証基盤のユーザーID")
    tier = Column(
        SAEnum("free", "professional", "premium", name="subscription_tier"),
        nullable=False,
        default="free",
    )
    billing_interval = Column(
        SAEnum("monthly", "annual", name="billing_interval"),
        nullable=True,
        comment="請求間隔 (freeはNULL)",
    )
    status = Column(
        SAEnum("active", "trialing", "past_due", "cancelled", "expired", name="subscription_status"),
        nullable=False,
        default="active",
    )
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # ダウングレード予約
    scheduled_tier = Column(
        SAEnum("free", "professional", "premium", name="subscription_scheduled_tier"),
        nullable=True,
        comment="ダウングレード予定プラン",
    )
    scheduled_interval = Column(
        SAEnum("monthly", "annual", name="subscription_scheduled_interval"),
        nullable=True,
        comment="ダウングレード予定の請求間隔",
    )
    scheduled_change_date = Column(DateTime, nullable=True, comment="プラン変更予定日時 (予約時点のperiod_end)")

    # 請求期間 (Stripeが正、ローカルはキャッシュ)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False, index=True)
    trial_end = Column(DateTime, nullable=True)

    # 利用枠
    usage_count = Column(Integer, nullable=False, default=0)
    monthly_limit = Column(Integer, nullable=False, default=10)
    has_used_trial = Column(Boolean, nullable=False, default=False, comment="トライアル使用済み")

    # Stripe連携
    external_customer_ref = Column(String(255), nullable=True, unique=True, comment="Stripe Customer ID")
    external_subscription_ref = Column(String(255), nullable=True, unique=True, comment="Stripe Subscription ID")

    # 楽観的排他制御
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
