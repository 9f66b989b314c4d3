"""
APScheduler wiring for the subscription reconcile sweep.

Status reads already reconcile lazily. The sweep only makes expiry and due
downgrades happen for users who stop reading their status.

STARTUP USAGE:
    from media_wallet.scheduler import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, db)
    scheduler.start()
"""

import os
import logging

from .reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_MINUTES = 15


def sweep_interval_minutes() -> int:
    """RECONCILE_SWEEP_MINUTES from the environment; 0 disables the sweep."""
    raw = os.environ.get("RECONCILE_SWEEP_MINUTES", str(DEFAULT_SWEEP_MINUTES))
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning(f"Invalid RECONCILE_SWEEP_MINUTES={raw!r}, using {DEFAULT_SWEEP_MINUTES}")
        return DEFAULT_SWEEP_MINUTES


def setup_scheduler(scheduler, db, synchronizer=None) -> bool:
    """
    Register the reconcile sweep with the provided APScheduler instance.

    Returns False when the sweep is disabled. Call this BEFORE scheduler.start().
    """
    minutes = sweep_interval_minutes()
    if minutes == 0:
        logger.info("Subscription reconcile sweep disabled")
        return False

    scheduler.add_job(
        _make_sweep_job(db, synchronizer),
        'interval',
        minutes=minutes,
        id='subscription_reconcile_sweep',
        replace_existing=True,
        misfire_grace_time=300
    )
    logger.info(f"Subscription reconcile sweep registered every {minutes} min")
    return True


def _make_sweep_job(db, synchronizer=None):
    async def reconcile_sweep():
        try:
            reconciler = SubscriptionReconciler(db, synchronizer)
            result = await reconciler.sweep_due_subscriptions()
            if result["due"]:
                logger.info(f"Reconcile sweep result: {result}")
        except Exception as e:
            logger.error(f"Subscription reconcile sweep failed: {e}")

    return reconcile_sweep
