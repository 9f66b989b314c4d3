"""
Transaction helper for MongoDB multi-document units of work.

`with_transaction` retries the callback on TransientTransactionError (write
conflicts on the same documents) and on unknown commit results, so callbacks
must re-read everything they depend on through the session they are given.

Unique index violations propagate as `DuplicateKeyError` for the caller to
tag; any other driver failure surfaces as `InternalError`.
"""

import logging
from typing import Any, Awaitable, Callable

from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import InternalError

logger = logging.getLogger(__name__)


async def run_transaction(db, callback: Callable[[Any], Awaitable[Any]]) -> Any:
    """Run `callback(session)` inside a retried, all-or-nothing transaction."""
    try:
        async with await db.client.start_session() as session:
            return await session.with_transaction(callback)
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error(f"Transaction aborted by database error: {e}")
        raise InternalError("Database operation failed.") from e
