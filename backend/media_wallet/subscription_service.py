"""
Subscription Service - create, upgrade and deferred downgrade of media plans

Rules:
- No active subscription: charge the full cost and start a new interval now
- Higher tier: charge max(0, cost - pro_rate_credit), retire the current
  record as "upgraded" and start the new one now
- Lower tier: nothing is charged now; the change is scheduled for the end
  of the current interval and auto-renew is turned off
- Same tier: rejected

All ledger and record writes for one change commit together. Provisioning
runs only after the commit.
"""

import logging
from typing import Optional, Dict, Any

from pymongo.errors import DuplicateKeyError

from .config import COLLECTIONS
from .errors import AlreadySubscribed, DuplicateOperation, NotFound, SubscriptionNotFound
from .ledger_service import LedgerService
from .models import ScheduledDowngrade, SubscriptionChangeResponse
from .plan_resolver import utcnow, to_iso, compare_tiers, plan_cost
from .provisioning import ProvisioningSynchronizer
from .reconciler import SubscriptionReconciler
from .records import (
    build_subscription,
    close_scheduled_redemptions,
    find_active_subscription,
    insert_subscription,
    mirror_user_service,
    write_history,
    write_redemption,
)
from .transactions import run_transaction
from .validators import validate_subscription_request

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Service for subscription plan changes."""

    def __init__(self, db, synchronizer: Optional[ProvisioningSynchronizer] = None):
        self.db = db
        self.synchronizer = synchronizer or ProvisioningSynchronizer()
        self.ledger = LedgerService(db)
        self.reconciler = SubscriptionReconciler(db, self.synchronizer)

    @property
    def subscriptions(self):
        return self.db[COLLECTIONS["subscriptions"]]

    async def change_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_period: str,
        duration: int,
        pro_rate_credit: int = 0
    ) -> Dict[str, Any]:
        """Create, upgrade or schedule a downgrade to `plan_id`."""
        validate_subscription_request(plan_id, billing_period, duration, pro_rate_credit)

        # Decide against the reconciled state, not a stale expired record
        await self.reconciler.get_subscription_status(user_id)

        async def _apply(session):
            now = utcnow()
            user = await self.ledger.get_user(user_id, session=session)
            active = await find_active_subscription(self.db, user_id, session=session)

            if not active:
                return user, await self._create(session, user_id, plan_id, billing_period, duration, now)

            direction = compare_tiers(plan_id, active["plan_id"])
            if direction > 0:
                return user, await self._upgrade(
                    session, user_id, active, plan_id, billing_period, duration, pro_rate_credit, now
                )
            if direction < 0:
                return user, await self._schedule_downgrade(
                    session, user_id, active, plan_id, billing_period, duration, now
                )
            raise AlreadySubscribed("User is already subscribed to this plan.")

        try:
            user, response = await run_transaction(self.db, _apply)
        except DuplicateKeyError:
            # Single-active-subscription index caught a concurrent change
            logger.warning(f"Concurrent subscription change rejected for user {user_id}")
            raise DuplicateOperation("Another subscription change for this user is already in progress.")

        logger.info(
            f"Subscription {response['action']} for user {user_id}: "
            f"{plan_id} ({billing_period} x{duration}), cost {response['token_cost']}"
        )
        if response["action"] != "downgrade_scheduled":
            await self.synchronizer.apply_plan(user, plan_id)
        return response

    async def _create(self, session, user_id, plan_id, billing_period, duration, now) -> Dict[str, Any]:
        cost = plan_cost(plan_id, billing_period, duration)
        await self.ledger.debit(user_id, cost, session=session)

        subscription = build_subscription(user_id, plan_id, billing_period, duration, cost, now)
        doc = await insert_subscription(self.db, subscription, session=session)
        await write_redemption(self.db, user_id, "mediaSubscription", doc, cost, now, session=session)
        await write_history(
            self.db, user_id, subscription.subscription_id, "created", now,
            plan_id=plan_id, token_cost=cost, session=session
        )
        await mirror_user_service(self.db, user_id, doc, session=session)

        return SubscriptionChangeResponse(
            action="created",
            subscription_id=subscription.subscription_id,
            plan_id=plan_id,
            token_cost=cost,
            end_date=subscription.end_date
        ).model_dump()

    async def _upgrade(
        self, session, user_id, active, plan_id, billing_period, duration, pro_rate_credit, now
    ) -> Dict[str, Any]:
        cost = max(0, plan_cost(plan_id, billing_period, duration) - pro_rate_credit)
        await self.ledger.debit(user_id, cost, session=session)

        subscription = build_subscription(
            user_id, plan_id, billing_period, duration, cost, now,
            upgraded_from=active["subscription_id"]
        )
        result = await self.subscriptions.update_one(
            {"subscription_id": active["subscription_id"], "status": "active"},
            {
                "$set": {
                    "status": "upgraded",
                    "upgraded_to": subscription.subscription_id,
                    "updated_at": to_iso(now)
                },
                "$unset": {"scheduled_downgrade": ""}
            },
            session=session
        )
        if result.modified_count == 0:
            raise SubscriptionNotFound("Active subscription changed during upgrade.")

        await close_scheduled_redemptions(
            self.db, active["subscription_id"], "cancelled", now, session=session
        )
        doc = await insert_subscription(self.db, subscription, session=session)
        await write_redemption(self.db, user_id, "mediaSubscription", doc, cost, now, session=session)
        await write_history(
            self.db, user_id, subscription.subscription_id, "upgraded", now,
            plan_id=plan_id, token_cost=cost,
            details={
                "previous_subscription_id": active["subscription_id"],
                "previous_plan_id": active["plan_id"],
                "pro_rate_credit": pro_rate_credit
            },
            session=session
        )
        await mirror_user_service(self.db, user_id, doc, session=session)

        return SubscriptionChangeResponse(
            action="upgraded",
            subscription_id=subscription.subscription_id,
            plan_id=plan_id,
            token_cost=cost,
            end_date=subscription.end_date
        ).model_dump()

    async def _schedule_downgrade(
        self, session, user_id, active, plan_id, billing_period, duration, now
    ) -> Dict[str, Any]:
        existing = active.get("scheduled_downgrade")
        if existing and existing.get("plan_id") == plan_id:
            raise DuplicateOperation(f"A downgrade to {plan_id} is already scheduled.")

        subscription_id = active["subscription_id"]
        scheduled = ScheduledDowngrade(
            plan_id=plan_id,
            billing_period=billing_period,
            duration=duration,
            scheduled_for=active["end_date"]
        )

        # A new schedule replaces any earlier one
        await close_scheduled_redemptions(self.db, subscription_id, "cancelled", now, session=session)
        await self.subscriptions.update_one(
            {"subscription_id": subscription_id, "status": "active"},
            {
                "$set": {
                    "scheduled_downgrade": scheduled.model_dump(),
                    "auto_renew": False,
                    "updated_at": to_iso(now)
                }
            },
            session=session
        )
        await write_redemption(
            self.db,
            user_id,
            "scheduledDowngrade",
            {**scheduled.model_dump(), "subscription_id": subscription_id},
            0,
            now,
            status="scheduled",
            session=session
        )
        await write_history(
            self.db, user_id, subscription_id, "downgrade_scheduled", now,
            plan_id=plan_id, details={"scheduled_for": scheduled.scheduled_for}, session=session
        )

        return SubscriptionChangeResponse(
            action="downgrade_scheduled",
            subscription_id=subscription_id,
            plan_id=plan_id,
            token_cost=0,
            end_date=active["end_date"],
            scheduled_for=scheduled.scheduled_for
        ).model_dump()

    async def cancel_scheduled_downgrade(self, user_id: str) -> Dict[str, Any]:
        """Remove the pending downgrade from the user's active subscription."""

        async def _apply(session):
            now = utcnow()
            active = await find_active_subscription(self.db, user_id, session=session)
            if not active:
                raise SubscriptionNotFound("No active subscription found.")
            scheduled = active.get("scheduled_downgrade")
            if not scheduled:
                raise NotFound("No scheduled downgrade to cancel.")

            subscription_id = active["subscription_id"]
            await self.subscriptions.update_one(
                {"subscription_id": subscription_id, "status": "active"},
                {"$unset": {"scheduled_downgrade": ""}, "$set": {"updated_at": to_iso(now)}},
                session=session
            )
            await close_scheduled_redemptions(self.db, subscription_id, "cancelled", now, session=session)
            await write_history(
                self.db, user_id, subscription_id, "downgrade_cancelled", now,
                plan_id=scheduled["plan_id"], session=session
            )
            return subscription_id

        subscription_id = await run_transaction(self.db, _apply)
        logger.info(f"Cancelled scheduled downgrade on subscription {subscription_id} for user {user_id}")
        return {"success": True, "subscription_id": subscription_id}
