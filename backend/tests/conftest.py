"""共通フィクスチャ: SQLiteインメモリDB, Stripeゲートウェイのフェイク, Redisのフェイク"""
import os

# 設定はインポート時に読み込まれるため、アプリのインポートより前に環境変数を設定
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["DEBUG"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PROFESSIONAL_MONTHLY_PRICE_ID"] = "price_pro_monthly"
os.environ["STRIPE_PROFESSIONAL_ANNUAL_PRICE_ID"] = "price_pro_annual"
os.environ["STRIPE_PREMIUM_MONTHLY_PRICE_ID"] = "price_premium_monthly"
os.environ["STRIPE_PREMIUM_ANNUAL_PRICE_ID"] = "price_premium_annual"

from datetime import datetime, timedelta  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from freelanceflow.core.clock import utcnow  # noqa: E402
from freelanceflow.core.database import Base, get_db  # noqa: E402
from freelanceflow.main import app  # noqa: E402
from freelanceflow.models.subscription import Subscription  # noqa: E402
from freelanceflow.services import plan_catalog, stripe_service, subscription_cache  # noqa: E402
from freelanceflow.services.stripe_service import GatewaySubscription  # noqa: E402

NOW = datetime(2026, 1, 15, 12, 0, 0)
PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = datetime(2026, 1, 31)


class FakeRedis:
    """get / setex / delete / ping のみのインメモリ実装"""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    def ping(self):
        return True


class FakeGateway:
    """stripe_service の状態変更系関数を置き換えるフェイク

    fail_with に例外を設定すると次の状態変更呼び出しで送出する。
    fail_after を指定すると、その回数だけ成功させた後に送出する。
    period_shift を設定すると、Price変更予約でStripeが請求期間を動かした状態を再現する。
    """

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self.fail_with: Optional[Exception] = None
        self.fail_after = 0
        self.period_shift: Optional[timedelta] = None
        self.preview_amount = 450
        self.now = NOW
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _maybe_fail(self):
        if self.fail_with is None:
            return
        if self.fail_after > 0:
            self.fail_after -= 1
            return
        exc, self.fail_with = self.fail_with, None
        raise exc

    def _snapshot(self, ref: str) -> GatewaySubscription:
        s = self.subscriptions[ref]
        return GatewaySubscription(
            ref=ref,
            status=s["status"],
            period_start=s["period_start"],
            period_end=s["period_end"],
            trial_end=s.get("trial_end"),
            cancel_at_period_end=s["cancel_at_period_end"],
            price_ref=s["price_ref"],
            item_ref=f"si_{ref}",
            customer_ref=s["customer_ref"],
            schedule_ref=f"sub_sched_{ref}" if s.get("scheduled_price_ref") else None,
        )

    def add_subscription(
        self,
        ref: str,
        price_ref: str,
        period_start: datetime,
        period_end: datetime,
        status: str = "active",
        customer_ref: str = "cus_existing",
        cancel_at_period_end: bool = False,
    ):
        self.subscriptions[ref] = {
            "status": status,
            "price_ref": price_ref,
            "period_start": period_start,
            "period_end": period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "customer_ref": customer_ref,
            "scheduled_price_ref": None,
        }

    def call_names(self) -> list:
        return [name for name, _ in self.calls]

    # --- stripe_service 置き換え ---

    def create_customer(self, user_id, idempotency_key=None):
        self.calls.append(("create_customer", {"user_id": user_id, "idempotency_key": idempotency_key}))
        self._maybe_fail()
        return self._next_id("cus")

    def create_subscription(self, customer_ref, price_ref, trial_days=None, idempotency_key=None, metadata=None):
        self.calls.append(("create_subscription", {
            "customer_ref": customer_ref,
            "price_ref": price_ref,
            "trial_days": trial_days,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        ref = self._next_id("sub")
        if trial_days:
            period_end = self.now + timedelta(days=trial_days)
            self.add_subscription(ref, price_ref, self.now, period_end, status="trialing", customer_ref=customer_ref)
            self.subscriptions[ref]["trial_end"] = period_end
        else:
            self.add_subscription(ref, price_ref, self.now, self.now + timedelta(days=30), customer_ref=customer_ref)
        return self._snapshot(ref)

    def update_subscription(self, subscription_ref, new_price_ref, proration_behavior, reactivate=False, idempotency_key=None):
        self.calls.append(("update_subscription", {
            "subscription_ref": subscription_ref,
            "new_price_ref": new_price_ref,
            "proration_behavior": proration_behavior,
            "reactivate": reactivate,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        s = self.subscriptions[subscription_ref]
        s["price_ref"] = new_price_ref
        if reactivate:
            s["cancel_at_period_end"] = False
        return self._snapshot(subscription_ref)

    def cancel_subscription(self, subscription_ref, at_period_end=True, idempotency_key=None):
        self.calls.append(("cancel_subscription", {
            "subscription_ref": subscription_ref,
            "at_period_end": at_period_end,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        self.subscriptions[subscription_ref]["cancel_at_period_end"] = True
        return self._snapshot(subscription_ref)

    def reactivate_subscription(self, subscription_ref, idempotency_key=None):
        self.calls.append(("reactivate_subscription", {
            "subscription_ref": subscription_ref,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        self.subscriptions[subscription_ref]["cancel_at_period_end"] = False
        return self._snapshot(subscription_ref)

    def schedule_price_change(self, subscription_ref, new_price_ref, idempotency_key=None):
        self.calls.append(("schedule_price_change", {
            "subscription_ref": subscription_ref,
            "new_price_ref": new_price_ref,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        s = self.subscriptions[subscription_ref]
        s["scheduled_price_ref"] = new_price_ref
        if self.period_shift is not None:
            s["period_end"] = s["period_end"] + self.period_shift
        return self._snapshot(subscription_ref)

    def release_price_change(self, subscription_ref, idempotency_key=None):
        self.calls.append(("release_price_change", {
            "subscription_ref": subscription_ref,
            "idempotency_key": idempotency_key,
        }))
        self._maybe_fail()
        self.subscriptions[subscription_ref]["scheduled_price_ref"] = None
        return self._snapshot(subscription_ref)

    def preview_proration(self, subscription_ref, new_price_ref):
        self.calls.append(("preview_proration", {"subscription_ref": subscription_ref, "new_price_ref": new_price_ref}))
        self._maybe_fail()
        return self.preview_amount

    def retrieve_subscription(self, subscription_ref):
        self.calls.append(("retrieve_subscription", {"subscription_ref": subscription_ref}))
        return self._snapshot(subscription_ref)


@pytest.fixture
def gateway(monkeypatch) -> FakeGateway:
    fake = FakeGateway()
    for name in (
        "create_customer",
        "create_subscription",
        "update_subscription",
        "cancel_subscription",
        "reactivate_subscription",
        "schedule_price_change",
        "release_price_change",
        "preview_proration",
        "retrieve_subscription",
    ):
        monkeypatch.setattr(stripe_service, name, getattr(fake, name))
    return fake


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(subscription_cache, "get_sync_redis", lambda: fake)
    return fake


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory, fake_redis):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory, gateway, fake_redis):
    gateway.now = utcnow()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_subscription(
    db,
    user_id: str = "user_1",
    tier: str = "professional",
    interval: Optional[str] = "monthly",
    status: str = "active",
    period_start: datetime = PERIOD_START,
    period_end: datetime = PERIOD_END,
    gateway: Optional[FakeGateway] = None,
    **fields,
) -> Subscription:
    """指定状態の購読を作成 (gatewayを渡すとStripe側にも同じ購読を登録)"""
    paid = tier != plan_catalog.FREE
    sub = Subscription(
        user_id=user_id,
        tier=tier,
        billing_interval=interval if paid else None,
        status=status,
        cancel_at_period_end=fields.pop("cancel_at_period_end", False),
        period_start=period_start,
        period_end=period_end,
        usage_count=fields.pop("usage_count", 0),
        monthly_limit=fields.pop("monthly_limit", plan_catalog.monthly_limit_for(tier)),
        has_used_trial=fields.pop("has_used_trial", paid),
        external_customer_ref=fields.pop("external_customer_ref", f"cus_{user_id}" if paid else None),
        external_subscription_ref=fields.pop("external_subscription_ref", f"sub_{user_id}" if paid else None),
        **fields,
    )
    db.add(sub)
    db.commit()

    if gateway is not None and paid:
        gateway.add_subscription(
            sub.external_subscription_ref,
            plan_catalog.price_ref_for(tier, interval),
            period_start,
            period_end,
            status=status,
            customer_ref=sub.external_customer_ref,
            cancel_at_period_end=sub.cancel_at_period_end,
        )
        if sub.scheduled_tier and sub.scheduled_tier != plan_catalog.FREE:
            gateway.subscriptions[sub.external_subscription_ref]["scheduled_price_ref"] = plan_catalog.price_ref_for(
                sub.scheduled_tier, sub.scheduled_interval
            )
    return sub


def current_period(days_before: int = 10, days_after: int = 20) -> tuple[datetime, datetime]:
    """実時刻を含む請求期間 (API経由のテスト用)"""
    now = utcnow()
    return now - timedelta(days=days_before), now + timedelta(days=days_after)
