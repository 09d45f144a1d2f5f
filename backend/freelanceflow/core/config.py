from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://flowuser:flowpassword@db:3306/freelanceflow?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_MAX_NETWORK_RETRIES: int = 2  # 同一idempotency keyで再送される

    # Stripe Price ID (プラン × 請求間隔)
    STRIPE_PROFESSIONAL_MONTHLY_PRICE_ID: str = ""
    STRIPE_PROFESSIONAL_ANNUAL_PRICE_ID: str = ""
    STRIPE_PREMIUM_MONTHLY_PRICE_ID: str = ""
    STRIPE_PREMIUM_ANNUAL_PRICE_ID: str = ""

    # 料金表 (セント)
    PRICE_PROFESSIONAL_MONTHLY: int = 1000
    PRICE_PROFESSIONAL_ANNUAL: int = 9600
    PRICE_PREMIUM_MONTHLY: int = 1900
    PRICE_PREMIUM_ANNUAL: int = 18000

    # 課金ポリシー
    TRIAL_DAYS: int = 14
    PRORATION_ROUNDING: str = "half_up"  # half_up / half_even

    # 購読スナップショットキャッシュ
    SUBSCRIPTION_CACHE_TTL_SECONDS: int = 300

    # レート制限
    RATE_LIMIT_ENABLED: bool = True

    # スケジューラ
    SCHEDULER_TIMEZONE: str = "UTC"

    # サービス設定
    SITE_NAME: str = "FreelanceFlow Billing"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
