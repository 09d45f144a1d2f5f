"""請求サイクル (ダウングレード予約) のテスト"""
from datetime import datetime, timedelta

import pytest

from freelanceflow.models.subscription import Subscription
from freelanceflow.services import billing_cycle
from freelanceflow.services.billing_cycle import (
    DOWNGRADE,
    LATERAL,
    UPGRADE,
    REJECTED_CANCELLATION_PENDING,
    advance_period,
    apply_due,
    cancel_scheduled,
    classify,
    expire_cancellation,
    schedule,
)

PERIOD_END = datetime(2025, 3, 1)


def _subscription(**overrides) -> Subscription:
    values = dict(
        user_id="user_1",
        tier="premium",
        billing_interval="monthly",
        status="active",
        cancel_at_period_end=False,
        period_start=datetime(2025, 2, 1),
        period_end=PERIOD_END,
        usage_count=42,
        monthly_limit=999999,
        has_used_trial=True,
        external_subscription_ref="sub_1",
    )
    values.update(overrides)
    return Subscription(**values)


class TestClassify:
    @pytest.mark.parametrize("current,target,expected", [
        ("free", "professional", UPGRADE),
        ("free", "premium", UPGRADE),
        ("professional", "premium", UPGRADE),
        ("premium", "professional", DOWNGRADE),
        ("premium", "free", DOWNGRADE),
        ("professional", "free", DOWNGRADE),
        ("professional", "professional", LATERAL),
        ("premium", "premium", LATERAL),
    ])
    def test_total_order(self, current, target, expected):
        assert classify(current, target) == expected

    def test_unknown_tier(self):
        with pytest.raises(ValueError):
            classify("enterprise", "free")


class TestAdvancePeriod:
    def test_monthly_is_calendar_month(self):
        assert advance_period(datetime(2026, 1, 31), "monthly") == datetime(2026, 2, 28)

    def test_annual(self):
        assert advance_period(datetime(2024, 2, 29), "annual") == datetime(2025, 2, 28)

    def test_free_uses_monthly(self):
        assert advance_period(datetime(2026, 3, 15), None) == datetime(2026, 4, 15)


class TestSchedule:
    def test_downgrade_keeps_current_entitlement(self):
        sub = _subscription()
        result = schedule(sub, "professional", "annual")

        assert result.scheduled
        assert sub.tier == "premium"
        assert sub.billing_interval == "monthly"
        assert sub.usage_count == 42
        assert sub.monthly_limit == 999999
        assert sub.scheduled_tier == "professional"
        assert sub.scheduled_interval == "annual"
        assert sub.scheduled_change_date == PERIOD_END

    def test_downgrade_to_free_has_no_interval(self):
        sub = _subscription()
        schedule(sub, "free", "monthly")
        assert sub.scheduled_tier == "free"
        assert sub.scheduled_interval is None

    def test_rejected_while_cancellation_pending(self):
        sub = _subscription(cancel_at_period_end=True)
        result = schedule(sub, "professional", "monthly")

        assert not result.scheduled
        assert result.reason == REJECTED_CANCELLATION_PENDING
        assert sub.scheduled_tier is None


class TestCancelScheduled:
    def test_clears_schedule(self):
        sub = _subscription()
        schedule(sub, "free", None)
        assert cancel_scheduled(sub) is True
        assert sub.scheduled_tier is None
        assert sub.scheduled_interval is None
        assert sub.scheduled_change_date is None
        assert sub.tier == "premium"

    def test_twice_is_same_as_once(self):
        sub = _subscription()
        schedule(sub, "professional", "monthly")
        cancel_scheduled(sub)
        state_after_first = (sub.tier, sub.scheduled_tier, sub.scheduled_interval, sub.scheduled_change_date)

        assert cancel_scheduled(sub) is False
        assert (sub.tier, sub.scheduled_tier, sub.scheduled_interval, sub.scheduled_change_date) == state_after_first


class TestApplyDue:
    def test_applies_exactly_at_change_date(self):
        sub = _subscription()
        schedule(sub, "professional", "monthly")

        assert apply_due(sub, PERIOD_END) is True
        assert sub.tier == "professional"
        assert sub.billing_interval == "monthly"
        assert sub.monthly_limit == 75
        assert sub.scheduled_tier is None
        assert sub.scheduled_change_date is None

    def test_no_op_before_change_date(self):
        sub = _subscription()
        schedule(sub, "professional", "monthly")

        assert apply_due(sub, PERIOD_END - timedelta(seconds=1)) is False
        assert sub.tier == "premium"
        assert sub.scheduled_tier == "professional"

    def test_no_op_without_schedule(self):
        sub = _subscription()
        assert apply_due(sub, PERIOD_END + timedelta(days=1)) is False
        assert sub.tier == "premium"

    def test_downgrade_to_free_drops_gateway_subscription(self):
        sub = _subscription()
        schedule(sub, "free", None)

        apply_due(sub, PERIOD_END)
        assert sub.tier == "free"
        assert sub.billing_interval is None
        assert sub.monthly_limit == 10
        assert sub.external_subscription_ref is None
        assert sub.status == "active"


class TestExpireCancellation:
    def test_moves_to_free_at_period_end(self):
        sub = _subscription(cancel_at_period_end=True)

        assert expire_cancellation(sub, PERIOD_END) is True
        assert sub.tier == "free"
        assert sub.status == "cancelled"
        assert sub.monthly_limit == 10
        assert sub.cancel_at_period_end is False
        assert sub.external_subscription_ref is None

    def test_retains_entitlement_before_period_end(self):
        sub = _subscription(cancel_at_period_end=True)
        assert billing_cycle.expire_cancellation(sub, PERIOD_END - timedelta(days=1)) is False
        assert sub.tier == "premium"
