"""
Subscription Reconciler - read-time advancement of subscription state

There is no background scheduler requirement: every status read checks the
active record and applies whatever is due.

Order of checks on the active record:
1. A due scheduled downgrade executes (or force-expires the record when the
   balance cannot cover the new plan)
2. An ended record expires and the media account is disabled
3. Otherwise the record is returned unchanged, with any pending downgrade

The optional sweep calls the same per-user path, so read-time correctness
does not depend on the sweep cadence.
"""

import logging
from typing import Optional, Dict, Any, Tuple

from .config import COLLECTIONS
from .ledger_service import LedgerService
from .models import SubscriptionInfo, SubscriptionStatusResponse
from .plan_resolver import utcnow, to_iso, parse_iso, plan_cost, days_remaining
from .provisioning import ProvisioningSynchronizer
from .records import (
    build_subscription,
    close_scheduled_redemptions,
    find_active_subscription,
    insert_subscription,
    mirror_user_service,
    write_history,
)
from .transactions import run_transaction

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION = {"has_active_subscription": False, "subscription": None}


class SubscriptionReconciler:
    """Detects expiry and due scheduled downgrades and applies them transactionally."""

    def __init__(self, db, synchronizer: Optional[ProvisioningSynchronizer] = None):
        self.db = db
        self.synchronizer = synchronizer or ProvisioningSynchronizer()
        self.ledger = LedgerService(db)

    async def get_subscription_status(self, user_id: str) -> Dict[str, Any]:
        """Reconcile the user's active subscription and return its current view."""
        # Each pass either returns or advances the stored state
        while True:
            active = await find_active_subscription(self.db, user_id)
            if not active:
                return dict(NO_SUBSCRIPTION)

            now = utcnow()
            scheduled = active.get("scheduled_downgrade")
            if scheduled and parse_iso(scheduled["scheduled_for"]) <= now:
                result = await self._execute_downgrade(user_id, active["subscription_id"])
            elif parse_iso(active["end_date"]) <= now:
                result = await self._expire(user_id, active["subscription_id"])
            else:
                return self.status_payload(active, now)

            if result is not None:
                return result
            # Another reader advanced this record first; look again

    @staticmethod
    def status_payload(subscription: Dict[str, Any], now=None) -> Dict[str, Any]:
        now = now or utcnow()
        info = SubscriptionInfo(
            subscription_id=subscription["subscription_id"],
            plan_id=subscription["plan_id"],
            billing_period=subscription["billing_period"],
            start_date=subscription["start_date"],
            end_date=subscription["end_date"],
            status=subscription["status"],
            auto_renew=subscription.get("auto_renew", False),
            days_remaining=days_remaining(parse_iso(subscription["end_date"]), now),
            movie_requests_used=subscription.get("movie_requests_used", 0),
            tv_requests_used=subscription.get("tv_requests_used", 0),
            from_downgrade=subscription.get("from_downgrade", False),
            scheduled_downgrade=subscription.get("scheduled_downgrade")
        )
        return SubscriptionStatusResponse(has_active_subscription=True, subscription=info).model_dump()

    # ==================== EXPIRY ====================

    async def _expire_in_session(
        self,
        session,
        subscription: Dict[str, Any],
        reason: str,
        now
    ) -> Optional[Dict[str, Any]]:
        """Mark `subscription` expired. Returns the owner's user document (None if missing)."""
        user_id = subscription["user_id"]
        subscription_id = subscription["subscription_id"]

        await self.db[COLLECTIONS["subscriptions"]].update_one(
            {"subscription_id": subscription_id, "status": "active"},
            {
                "$set": {"status": "expired", "expired_reason": reason, "updated_at": to_iso(now)},
                "$unset": {"scheduled_downgrade": ""}
            },
            session=session
        )
        if subscription.get("scheduled_downgrade"):
            await close_scheduled_redemptions(
                self.db, subscription_id, "cancelled", now, session=session
            )
        await mirror_user_service(self.db, user_id, None, session=session)
        await write_history(
            self.db, user_id, subscription_id, "expired", now,
            plan_id=subscription["plan_id"], details={"reason": reason}, session=session
        )
        return await self.db[COLLECTIONS["users"]].find_one({"id": user_id}, {"_id": 0}, session=session)

    async def _expire(self, user_id: str, subscription_id: str) -> Optional[Dict[str, Any]]:
        async def _apply(session) -> Tuple[bool, Optional[Dict[str, Any]]]:
            current = await self.db[COLLECTIONS["subscriptions"]].find_one(
                {"subscription_id": subscription_id, "status": "active"},
                {"_id": 0},
                session=session
            )
            if not current:
                return False, None
            user = await self._expire_in_session(session, current, "ended", utcnow())
            return True, user

        applied, user = await run_transaction(self.db, _apply)
        if not applied:
            return None

        logger.info(f"Subscription {subscription_id} for user {user_id} expired")
        if user:
            await self.synchronizer.disable(user)
        return dict(NO_SUBSCRIPTION)

    # ==================== SCHEDULED DOWNGRADE ====================

    async def _execute_downgrade(self, user_id: str, subscription_id: str) -> Optional[Dict[str, Any]]:
        async def _apply(session):
            now = utcnow()
            current = await self.db[COLLECTIONS["subscriptions"]].find_one(
                {"subscription_id": subscription_id, "status": "active"},
                {"_id": 0},
                session=session
            )
            scheduled = (current or {}).get("scheduled_downgrade")
            if not current or not scheduled or parse_iso(scheduled["scheduled_for"]) > now:
                return "stale", None, None

            user = await self.ledger.get_user(user_id, session=session)
            cost = plan_cost(scheduled["plan_id"], scheduled["billing_period"], scheduled["duration"])

            if user.get("token_balance", 0) < cost:
                user = await self._expire_in_session(
                    session, current, "insufficient_tokens_for_downgrade", now
                )
                return "expired", user, None

            await self.ledger.debit(user_id, cost, session=session)

            replacement = build_subscription(
                user_id,
                scheduled["plan_id"],
                scheduled["billing_period"],
                scheduled["duration"],
                cost,
                now,
                from_downgrade=True
            )
            await self.db[COLLECTIONS["subscriptions"]].update_one(
                {"subscription_id": subscription_id, "status": "active"},
                {
                    "$set": {
                        "status": "completed",
                        "downgraded_to": replacement.subscription_id,
                        "updated_at": to_iso(now)
                    },
                    "$unset": {"scheduled_downgrade": ""}
                },
                session=session
            )
            new_doc = await insert_subscription(self.db, replacement, session=session)
            await close_scheduled_redemptions(
                self.db, subscription_id, "completed", now,
                extra={"token_cost": cost, "new_subscription_id": replacement.subscription_id},
                session=session
            )
            await write_history(
                self.db, user_id, replacement.subscription_id, "downgraded", now,
                plan_id=replacement.plan_id, token_cost=cost,
                details={"previous_subscription_id": subscription_id}, session=session
            )
            await mirror_user_service(self.db, user_id, new_doc, session=session)
            return "downgraded", user, new_doc

        outcome, user, new_doc = await run_transaction(self.db, _apply)

        if outcome == "stale":
            return None

        if outcome == "expired":
            logger.warning(
                f"Scheduled downgrade for user {user_id} cancelled: insufficient tokens, "
                f"subscription {subscription_id} expired"
            )
            if user:
                await self.synchronizer.disable(user)
            return dict(NO_SUBSCRIPTION)

        logger.info(
            f"Executed scheduled downgrade for user {user_id}: "
            f"{subscription_id} -> {new_doc['subscription_id']} ({new_doc['plan_id']})"
        )
        await self.synchronizer.apply_plan(user, new_doc["plan_id"])
        return self.status_payload(new_doc)

    # ==================== SWEEP ====================

    async def sweep_due_subscriptions(self, limit: int = 500) -> Dict[str, int]:
        """Reconcile every user whose active record is ended or has a due downgrade."""
        now_iso = to_iso(utcnow())
        due = await self.db[COLLECTIONS["subscriptions"]].find(
            {
                "status": "active",
                "$or": [
                    {"end_date": {"$lte": now_iso}},
                    {"scheduled_downgrade.scheduled_for": {"$lte": now_iso}}
                ]
            },
            {"_id": 0, "user_id": 1}
        ).limit(limit).to_list(length=limit)

        user_ids = list(dict.fromkeys(doc["user_id"] for doc in due))
        processed = 0
        errors = 0
        for user_id in user_ids:
            try:
                await self.get_subscription_status(user_id)
                processed += 1
            except Exception as e:
                logger.error(f"Reconcile sweep failed for user {user_id}: {e}")
                errors += 1

        if user_ids:
            logger.info(f"Reconcile sweep: {processed} users reconciled, {errors} errors")
        return {"due": len(user_ids), "processed": processed, "errors": errors}
