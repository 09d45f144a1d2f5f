"""Stripe Webhook のテスト"""
import json
from datetime import timedelta

import pytest

from freelanceflow.core.clock import utcnow
from freelanceflow.models.processed_stripe_event import ProcessedStripeEvent
from freelanceflow.models.subscription import Subscription
from freelanceflow.services import stripe_service
from tests.conftest import current_period, make_subscription

WEBHOOK_URL = "/api/webhooks/stripe"


@pytest.fixture
def signed_events(monkeypatch):
    """署名検証をスキップしてペイロードをそのままイベントとして扱う"""
    monkeypatch.setattr(
        stripe_service,
        "construct_webhook_event",
        lambda payload, sig_header, secret: json.loads(payload),
    )


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _post(client, event: dict):
    return client.post(
        WEBHOOK_URL,
        content=json.dumps(event),
        headers={"stripe-signature": "t=0,v1=dummy", "Content-Type": "application/json"},
    )


def _load(session_factory, user_id: str = "user_1") -> Subscription:
    db = session_factory()
    try:
        return db.query(Subscription).filter(Subscription.user_id == user_id).one()
    finally:
        db.close()


def test_invalid_signature_rejected(client):
    response = client.post(
        WEBHOOK_URL,
        content=b'{"id": "evt_1"}',
        headers={"stripe-signature": "t=0,v1=invalid"},
    )
    assert response.status_code == 401


def test_unknown_event_acknowledged(client, signed_events):
    response = _post(client, _event("evt_unknown", "customer.created", {"id": "cus_1"}))
    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_payment_failed_then_paid(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, period_start=start, period_end=end, gateway=gateway)
    db.close()

    _post(client, _event("evt_fail", "invoice.payment_failed", {"subscription": "sub_user_1"}))
    assert _load(session_factory).status == "past_due"

    # API 2025-03-31以降の形式
    paid = {"parent": {"subscription_details": {"subscription": "sub_user_1"}}}
    _post(client, _event("evt_paid", "invoice.paid", paid))
    assert _load(session_factory).status == "active"


def test_invoice_paid_keeps_trialing(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, status="trialing", period_start=start, period_end=end, gateway=gateway)
    db.close()

    _post(client, _event("evt_trial_invoice", "invoice.paid", {"subscription": "sub_user_1"}))
    assert _load(session_factory).status == "trialing"


def test_duplicate_event_processed_once(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, period_start=start, period_end=end, gateway=gateway)
    db.close()

    _post(client, _event("evt_fail_dup", "invoice.payment_failed", {"subscription": "sub_user_1"}))
    _post(client, _event("evt_paid_dup", "invoice.paid", {"subscription": "sub_user_1"}))
    response = _post(client, _event("evt_fail_dup", "invoice.payment_failed", {"subscription": "sub_user_1"}))

    assert response.status_code == 200
    assert _load(session_factory).status == "active"
    db = session_factory()
    assert db.query(ProcessedStripeEvent).filter(ProcessedStripeEvent.event_id == "evt_fail_dup").count() == 1
    db.close()


def test_subscription_deleted_moves_to_free(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, period_start=start, period_end=end, usage_count=40, gateway=gateway)
    db.close()

    _post(client, _event("evt_deleted", "customer.subscription.deleted", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "free"
    assert sub.status == "cancelled"
    assert sub.monthly_limit == 10
    assert sub.usage_count == 0
    assert sub.external_subscription_ref is None
    assert sub.billing_interval is None


def test_subscription_deleted_after_scheduled_free_downgrade(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(
        db,
        period_start=start,
        period_end=end,
        scheduled_tier="free",
        scheduled_change_date=end,
        gateway=gateway,
    )
    db.close()

    _post(client, _event("evt_deleted_free", "customer.subscription.deleted", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "free"
    assert sub.status == "active"
    assert sub.scheduled_tier is None


def test_portal_upgrade_applied_immediately(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, period_start=start, period_end=end, gateway=gateway)
    db.close()
    gateway.subscriptions["sub_user_1"]["price_ref"] = "price_premium_monthly"

    # ペイロードの内容ではなくStripeから取得した最新状態を反映する
    _post(client, _event("evt_portal_up", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "premium"
    assert sub.monthly_limit == 999999
    assert "retrieve_subscription" in gateway.call_names()


def test_portal_downgrade_scheduled(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, tier="premium", period_start=start, period_end=end, gateway=gateway)
    db.close()
    gateway.subscriptions["sub_user_1"]["price_ref"] = "price_pro_monthly"

    _post(client, _event("evt_portal_down", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "premium"
    assert sub.scheduled_tier == "professional"
    assert sub.scheduled_interval == "monthly"
    assert sub.scheduled_change_date == end


def _user_with_paid_downgrade_pending(session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(
        db,
        tier="premium",
        period_start=start,
        period_end=end,
        scheduled_tier="professional",
        scheduled_interval="monthly",
        scheduled_change_date=end,
        gateway=gateway,
    )
    db.close()


def test_pending_price_schedule_kept(client, signed_events, session_factory, gateway):
    _user_with_paid_downgrade_pending(session_factory, gateway)

    _post(client, _event("evt_sched_kept", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "premium"
    assert sub.scheduled_tier == "professional"


def test_released_price_schedule_clears_pending_downgrade(client, signed_events, session_factory, gateway):
    _user_with_paid_downgrade_pending(session_factory, gateway)
    # Billing Portal等でScheduleが解除された
    gateway.subscriptions["sub_user_1"]["scheduled_price_ref"] = None

    _post(client, _event("evt_sched_released", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.tier == "premium"
    assert sub.scheduled_tier is None
    assert sub.scheduled_change_date is None


def test_portal_cancellation_reflected(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(db, period_start=start, period_end=end, gateway=gateway)
    db.close()
    gateway.subscriptions["sub_user_1"]["cancel_at_period_end"] = True

    _post(client, _event("evt_portal_cancel", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.cancel_at_period_end is True
    assert sub.tier == "professional"


def test_renewal_resets_usage(client, signed_events, session_factory, gateway):
    now = utcnow()
    old_start, old_end = now - timedelta(days=40), now - timedelta(days=10)
    new_end = old_end + timedelta(days=30)
    db = session_factory()
    make_subscription(db, period_start=old_start, period_end=old_end, usage_count=60, gateway=gateway)
    db.close()
    gateway.subscriptions["sub_user_1"]["period_start"] = old_end
    gateway.subscriptions["sub_user_1"]["period_end"] = new_end

    _post(client, _event("evt_renewal", "customer.subscription.updated", {"id": "sub_user_1"}))

    sub = _load(session_factory)
    assert sub.usage_count == 0
    assert sub.tier == "professional"
    assert sub.period_start == old_end
    assert sub.period_end == new_end


def test_subscription_created_outside_api_is_linked(client, signed_events, session_factory, gateway):
    db = session_factory()
    start, end = current_period()
    make_subscription(
        db,
        user_id="user_9",
        tier="free",
        period_start=start,
        period_end=end,
        usage_count=7,
        external_customer_ref="cus_user_9",
    )
    db.close()

    now = utcnow()
    obj = {
        "id": "sub_dashboard",
        "customer": "cus_user_9",
        "status": "active",
        "cancel_at_period_end": False,
        "items": {"data": [{
            "id": "si_dashboard",
            "price": {"id": "price_pro_annual"},
            "current_period_start": int(now.timestamp()),
            "current_period_end": int((now + timedelta(days=365)).timestamp()),
        }]},
    }
    _post(client, _event("evt_created", "customer.subscription.created", obj))

    sub = _load(session_factory, "user_9")
    assert sub.tier == "professional"
    assert sub.billing_interval == "annual"
    assert sub.external_subscription_ref == "sub_dashboard"
    assert sub.usage_count == 0
    assert sub.monthly_limit == 75
