"""
Plan Resolver - plan pricing, tier ordering and billing-period date math

Rules:
- Tier order comes from PLAN_TIERS only (never from dict ordering)
- Token cost = plan rate for the billing period * duration
- End dates advance the calendar month/year field; an out-of-range day
  rolls over into the following month (Jan 31 + 1 month -> Mar 3)
"""

import math
from datetime import datetime, timezone, timedelta
from typing import Optional

from .config import PLAN_TIERS, SUBSCRIPTION_PLANS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value) -> Optional[datetime]:
    """Parse a stored ISO timestamp (or pass a datetime through) as aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def tier_index(plan_id: str) -> int:
    """Rank of a plan in the fixed low -> high tier list."""
    return PLAN_TIERS.index(plan_id)


def compare_tiers(requested_plan: str, current_plan: str) -> int:
    """Return 1 for an upgrade, -1 for a downgrade, 0 for the same tier."""
    requested = tier_index(requested_plan)
    current = tier_index(current_plan)
    if requested > current:
        return 1
    if requested < current:
        return -1
    return 0


def plan_rate(plan_id: str, billing_period: str) -> int:
    return SUBSCRIPTION_PLANS[plan_id][billing_period]


def plan_cost(plan_id: str, billing_period: str, duration: int) -> int:
    return plan_rate(plan_id, billing_period) * duration


def add_billing_periods(start: datetime, billing_period: str, duration: int) -> datetime:
    """
    Advance `start` by `duration` calendar months or years.

    The day of month is carried over unchanged and overflows into the next
    month when the target month is shorter, so month-end starts land a few
    days into the following month rather than being clamped.
    """
    if billing_period == "monthly":
        months = start.month - 1 + duration
        year = start.year + months // 12
        month = months % 12 + 1
    else:
        year = start.year + duration
        month = start.month

    first_of_month = start.replace(year=year, month=month, day=1)
    return first_of_month + timedelta(days=start.day - 1)


def days_remaining(end_date: datetime, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    seconds = (end_date - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))
