"""
Subscription state machine tests.

Covers:
- New subscription charges the full cost
- Upgrade charges cost minus pro-rate credit (never below zero)
- Downgrade is deferred to the end of the current interval
- Same tier is rejected
- Cancelling a scheduled downgrade
- Store failures surface as tagged errors with nothing committed
"""

import pytest
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

from pymongo.errors import OperationFailure

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_wallet.errors import (
    AlreadySubscribed,
    DuplicateOperation,
    InsufficientBalance,
    InternalError,
    InvalidArgument,
    NotFound,
    SubscriptionNotFound,
)
from media_wallet.plan_resolver import add_billing_periods, parse_iso, utcnow, to_iso
from media_wallet.subscription_service import SubscriptionService


@pytest.fixture
def service(fake_db, synchronizer):
    return SubscriptionService(fake_db, synchronizer=synchronizer)


def active_subscriptions(db, user_id="user-1"):
    return [s for s in db.all("subscriptions") if s["user_id"] == user_id and s["status"] == "active"]


def assert_interval_starts_now(subscription, before, after, billing_period="monthly", duration=1):
    start = parse_iso(subscription["start_date"])
    assert before <= start <= after
    assert parse_iso(subscription["end_date"]) == add_billing_periods(start, billing_period, duration)


class TestCreate:

    @pytest.mark.asyncio
    async def test_new_subscription(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=1000)

        before = utcnow()
        result = await service.change_subscription("user-1", "standard", "monthly", 1)
        after = utcnow()

        assert result["action"] == "created"
        assert result["token_cost"] == 60
        assert balance("user-1") == 940

        [subscription] = active_subscriptions(fake_db)
        assert subscription["subscription_id"] == result["subscription_id"]
        assert subscription["plan_id"] == "standard"
        assert subscription["auto_renew"] is False
        assert subscription["end_date"] == result["end_date"]
        assert_interval_starts_now(subscription, before, after)

        [redemption] = fake_db.all("redemptions")
        assert redemption["product_type"] == "mediaSubscription"
        assert redemption["token_cost"] == 60
        assert [h["action"] for h in fake_db.all("subscription_history")] == ["created"]

        user = fake_db.all("users")[0]
        assert user["services"]["emby"]["current_plan"] == "standard"
        assert user["services"]["emby"]["subscription_status"] == "active"

        synchronizer.apply_plan.assert_awaited_once()
        assert synchronizer.apply_plan.call_args.args[1] == "standard"

    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=59)

        with pytest.raises(InsufficientBalance):
            await service.change_subscription("user-1", "standard", "monthly", 1)

        assert balance("user-1") == 59
        assert fake_db.all("subscriptions") == []
        assert fake_db.all("redemptions") == []
        synchronizer.apply_plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_request_touches_nothing(self, fake_db, add_user, service):
        add_user(token_balance=1000)
        with pytest.raises(InvalidArgument):
            await service.change_subscription("user-1", "standard", "monthly", 13)
        assert fake_db.transactions == 0

    @pytest.mark.asyncio
    async def test_expired_record_is_reconciled_before_creating(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=1000)
        first = await service.change_subscription("user-1", "standard", "monthly", 1)
        fake_db.data["subscriptions"][0]["end_date"] = to_iso(utcnow() - timedelta(minutes=1))

        second = await service.change_subscription("user-1", "standard", "monthly", 1)

        assert second["action"] == "created"
        assert second["subscription_id"] != first["subscription_id"]
        assert balance("user-1") == 880
        synchronizer.disable.assert_awaited_once()
        statuses = sorted(s["status"] for s in fake_db.all("subscriptions"))
        assert statuses == ["active", "expired"]


class TestUpgrade:

    @pytest.mark.asyncio
    async def test_upgrade_with_pro_rate_credit(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=1000)
        first = await service.change_subscription("user-1", "standard", "monthly", 1)
        assert balance("user-1") == 940

        before = utcnow()
        result = await service.change_subscription("user-1", "family", "monthly", 1, pro_rate_credit=20)
        after = utcnow()

        assert result["action"] == "upgraded"
        assert result["token_cost"] == 100
        assert balance("user-1") == 840

        old = next(s for s in fake_db.all("subscriptions") if s["subscription_id"] == first["subscription_id"])
        assert old["status"] == "upgraded"
        assert old["upgraded_to"] == result["subscription_id"]

        [current] = active_subscriptions(fake_db)
        assert current["plan_id"] == "family"
        assert current["upgraded_from"] == first["subscription_id"]
        assert_interval_starts_now(current, before, after)
        assert parse_iso(current["start_date"]) < parse_iso(old["end_date"])
        assert synchronizer.apply_plan.call_args.args[1] == "family"

    @pytest.mark.asyncio
    async def test_credit_larger_than_cost_charges_zero(self, add_user, balance, service):
        add_user(token_balance=60)
        await service.change_subscription("user-1", "standard", "monthly", 1)

        result = await service.change_subscription("user-1", "duo", "monthly", 1, pro_rate_credit=500)

        assert result["token_cost"] == 0
        assert balance("user-1") == 0

    @pytest.mark.asyncio
    async def test_upgrade_insufficient_keeps_current_plan(self, fake_db, add_user, balance, service):
        add_user(token_balance=100)
        first = await service.change_subscription("user-1", "standard", "monthly", 1)

        with pytest.raises(InsufficientBalance):
            await service.change_subscription("user-1", "ultimate", "monthly", 1)

        assert balance("user-1") == 40
        [current] = active_subscriptions(fake_db)
        assert current["subscription_id"] == first["subscription_id"]

    @pytest.mark.asyncio
    async def test_upgrade_drops_scheduled_downgrade(self, fake_db, add_user, service):
        add_user(token_balance=2000)
        await service.change_subscription("user-1", "family", "monthly", 1)
        await service.change_subscription("user-1", "basic", "monthly", 1)

        await service.change_subscription("user-1", "vip", "monthly", 1)

        [current] = active_subscriptions(fake_db)
        assert current["plan_id"] == "vip"
        assert "scheduled_downgrade" not in current
        scheduled = [r for r in fake_db.all("redemptions") if r["product_type"] == "scheduledDowngrade"]
        assert [r["status"] for r in scheduled] == ["cancelled"]


class TestDowngrade:

    @pytest.mark.asyncio
    async def test_downgrade_is_scheduled_not_charged(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "family", "monthly", 1)
        synchronizer.apply_plan.reset_mock()

        result = await service.change_subscription("user-1", "basic", "yearly", 1)

        assert result["action"] == "downgrade_scheduled"
        assert result["token_cost"] == 0
        assert balance("user-1") == 880

        [current] = active_subscriptions(fake_db)
        assert current["plan_id"] == "family"
        assert current["auto_renew"] is False
        assert current["scheduled_downgrade"] == {
            "plan_id": "basic",
            "billing_period": "yearly",
            "duration": 1,
            "scheduled_for": current["end_date"]
        }
        assert result["scheduled_for"] == current["end_date"]

        scheduled = [r for r in fake_db.all("redemptions") if r["product_type"] == "scheduledDowngrade"]
        assert len(scheduled) == 1
        assert scheduled[0]["status"] == "scheduled"
        assert scheduled[0]["token_cost"] == 0
        synchronizer.apply_plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_downgrade_twice_is_duplicate(self, add_user, service):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "family", "monthly", 1)
        await service.change_subscription("user-1", "basic", "monthly", 1)

        with pytest.raises(DuplicateOperation):
            await service.change_subscription("user-1", "basic", "monthly", 1)

    @pytest.mark.asyncio
    async def test_new_downgrade_replaces_earlier_one(self, fake_db, add_user, service):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "family", "monthly", 1)
        await service.change_subscription("user-1", "basic", "monthly", 1)

        await service.change_subscription("user-1", "duo", "monthly", 2)

        [current] = active_subscriptions(fake_db)
        assert current["scheduled_downgrade"]["plan_id"] == "duo"
        assert current["scheduled_downgrade"]["duration"] == 2
        statuses = [r["status"] for r in fake_db.all("redemptions") if r["product_type"] == "scheduledDowngrade"]
        assert statuses == ["cancelled", "scheduled"]


class TestSameTier:

    @pytest.mark.asyncio
    async def test_same_tier_rejected(self, add_user, balance, service):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "duo", "monthly", 1)

        with pytest.raises(AlreadySubscribed):
            await service.change_subscription("user-1", "duo", "yearly", 1)
        assert balance("user-1") == 920


class TestCancelScheduledDowngrade:

    @pytest.mark.asyncio
    async def test_cancel(self, fake_db, add_user, service):
        add_user(token_balance=1000)
        created = await service.change_subscription("user-1", "family", "monthly", 1)
        await service.change_subscription("user-1", "basic", "monthly", 1)

        result = await service.cancel_scheduled_downgrade("user-1")

        assert result == {"success": True, "subscription_id": created["subscription_id"]}
        [current] = active_subscriptions(fake_db)
        assert "scheduled_downgrade" not in current
        assert current["auto_renew"] is False
        [redemption] = [r for r in fake_db.all("redemptions") if r["product_type"] == "scheduledDowngrade"]
        assert redemption["status"] == "cancelled"
        assert fake_db.all("subscription_history")[-1]["action"] == "downgrade_cancelled"

    @pytest.mark.asyncio
    async def test_nothing_scheduled(self, add_user, service):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "family", "monthly", 1)
        with pytest.raises(NotFound):
            await service.cancel_scheduled_downgrade("user-1")

    @pytest.mark.asyncio
    async def test_no_active_subscription(self, add_user, service):
        add_user()
        with pytest.raises(SubscriptionNotFound):
            await service.cancel_scheduled_downgrade("user-1")


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_second_active_subscription_is_duplicate(self, fake_db, add_user, balance, service, synchronizer):
        add_user(token_balance=1000)
        await service.change_subscription("user-1", "standard", "monthly", 1)
        synchronizer.reset_mock()

        # A racing request that did not see the first record
        with patch("media_wallet.subscription_service.find_active_subscription", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateOperation):
                await service.change_subscription("user-1", "family", "monthly", 1)

        assert balance("user-1") == 940
        assert len(active_subscriptions(fake_db)) == 1
        synchronizer.apply_plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_database_error_is_internal(self, fake_db, add_user, balance, service):
        add_user(token_balance=1000)

        with patch(
            "media_wallet.subscription_service.insert_subscription",
            AsyncMock(side_effect=OperationFailure("not primary"))
        ):
            with pytest.raises(InternalError):
                await service.change_subscription("user-1", "standard", "monthly", 1)

        assert balance("user-1") == 1000
        assert fake_db.all("subscriptions") == []
