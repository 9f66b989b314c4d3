"""
Payment idempotency guard.

An external order id found in an audit collection means the order has
already been settled. The check must run through the same session that
writes the audit row so check and write commit together.
"""

import logging

from .errors import DuplicateOperation

logger = logging.getLogger(__name__)


async def is_already_applied(db, collection: str, order_id: str, session=None) -> bool:
    existing = await db[collection].find_one(
        {"order_id": order_id},
        {"_id": 0, "order_id": 1},
        session=session
    )
    return existing is not None


async def ensure_not_applied(db, collection: str, order_id: str, session=None) -> None:
    """Raise DuplicateOperation when `order_id` is already recorded in `collection`."""
    if await is_already_applied(db, collection, order_id, session=session):
        logger.warning(f"Duplicate order {order_id} rejected for {collection}")
        raise DuplicateOperation(f"Order {order_id} has already been processed.")
