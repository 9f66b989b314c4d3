"""
Subscription record helpers shared by the state machine and the reconciler.

Every helper takes the session of the surrounding transaction.
"""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any

from .config import COLLECTIONS, MEDIA_SERVICE
from .models import Subscription, SubscriptionHistoryEntry, Redemption
from .plan_resolver import add_billing_periods, to_iso


async def find_active_subscription(db, user_id: str, session=None) -> Optional[Dict[str, Any]]:
    """Newest `active` subscription for the user, or None."""
    return await db[COLLECTIONS["subscriptions"]].find_one(
        {"user_id": user_id, "status": "active"},
        {"_id": 0},
        sort=[("created_at", -1)],
        session=session
    )


def build_subscription(
    user_id: str,
    plan_id: str,
    billing_period: str,
    duration: int,
    token_cost: int,
    now: datetime,
    from_downgrade: bool = False,
    upgraded_from: Optional[str] = None
) -> Subscription:
    stamp = to_iso(now)
    return Subscription(
        subscription_id=str(uuid.uuid4()),
        user_id=user_id,
        plan_id=plan_id,
        billing_period=billing_period,
        duration=duration,
        token_cost=token_cost,
        start_date=stamp,
        end_date=to_iso(add_billing_periods(now, billing_period, duration)),
        status="active",
        auto_renew=False,
        movie_requests_used=0,
        tv_requests_used=0,
        last_reset_date=stamp,
        from_downgrade=from_downgrade,
        upgraded_from=upgraded_from,
        created_at=stamp,
        updated_at=stamp
    )


async def insert_subscription(db, subscription: Subscription, session=None) -> Dict[str, Any]:
    doc = subscription.model_dump(exclude_none=True)
    await db[COLLECTIONS["subscriptions"]].insert_one(dict(doc), session=session)
    return doc


async def write_redemption(
    db,
    user_id: str,
    product_type: str,
    subscription: Dict[str, Any],
    token_cost: int,
    now: datetime,
    status: str = "completed",
    session=None
) -> None:
    redemption = Redemption(
        redemption_id=str(uuid.uuid4()),
        user_id=user_id,
        product_type=product_type,
        plan_id=subscription["plan_id"],
        billing_period=subscription["billing_period"],
        duration=subscription["duration"],
        token_cost=token_cost,
        subscription_id=subscription["subscription_id"],
        status=status,
        created_at=to_iso(now)
    )
    await db[COLLECTIONS["redemptions"]].insert_one(redemption.model_dump(), session=session)


async def close_scheduled_redemptions(
    db,
    subscription_id: str,
    status: str,
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
    session=None
) -> None:
    """Move pending scheduled-downgrade redemptions of a subscription to `status`."""
    await db[COLLECTIONS["redemptions"]].update_many(
        {
            "subscription_id": subscription_id,
            "product_type": "scheduledDowngrade",
            "status": "scheduled"
        },
        {"$set": {"status": status, "updated_at": to_iso(now), **(extra or {})}},
        session=session
    )


async def write_history(
    db,
    user_id: str,
    subscription_id: str,
    action: str,
    now: datetime,
    plan_id: Optional[str] = None,
    token_cost: int = 0,
    details: Optional[Dict[str, Any]] = None,
    session=None
) -> None:
    entry = SubscriptionHistoryEntry(
        user_id=user_id,
        subscription_id=subscription_id,
        action=action,
        plan_id=plan_id,
        token_cost=token_cost,
        details=details,
        timestamp=to_iso(now)
    )
    await db[COLLECTIONS["history"]].insert_one(entry.model_dump(exclude_none=True), session=session)


async def mirror_user_service(
    db,
    user_id: str,
    subscription: Optional[Dict[str, Any]],
    session=None
) -> None:
    """Copy the current plan (or its absence) onto the user's media service entry."""
    prefix = f"services.{MEDIA_SERVICE}"
    if subscription:
        fields = {
            f"{prefix}.current_plan": subscription["plan_id"],
            f"{prefix}.subscription_status": "active",
            f"{prefix}.subscription_id": subscription["subscription_id"],
            f"{prefix}.subscription_end_date": subscription["end_date"]
        }
    else:
        fields = {
            f"{prefix}.current_plan": None,
            f"{prefix}.subscription_status": "inactive"
        }
    await db[COLLECTIONS["users"]].update_one({"id": user_id}, {"$set": fields}, session=session)
