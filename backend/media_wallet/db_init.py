"""
Media Wallet Database Initialization Script

Creates the wallet indexes (collections come into being with their first
index) and stamps the applied version. Existing indexes are left alone, so
re-running is safe; nothing is ever dropped. Production runs need
MEDIA_WALLET_INIT_CONFIRM=YES.

The unique indexes are the store-level backstop for exactly-once payment
application and for the single active subscription per user.

Usage:
    CLI one-off: python -m media_wallet.db_init
    With dry-run: python -m media_wallet.db_init --dry-run
    In production: APP_ENV=production MEDIA_WALLET_INIT_CONFIRM=YES python -m media_wallet.db_init
"""

import os
import sys
import asyncio
import logging
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure, PyMongoError

from .config import COLLECTIONS
from .plan_resolver import utcnow, to_iso

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"
META_COLLECTION = "media_wallet_meta"

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # users
    (COLLECTIONS["users"], [("id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
    (COLLECTIONS["users"], [("normalized_username", 1)], {
        "unique": True,
        "partialFilterExpression": {"normalized_username": {"$type": "string"}},
        "name": "idx_normalized_username_unique"
    }),

    # subscriptions
    (COLLECTIONS["subscriptions"], [("subscription_id", 1)], {"unique": True, "name": "idx_subscription_id_unique"}),
    (COLLECTIONS["subscriptions"], [("user_id", 1), ("status", 1), ("created_at", -1)], {"name": "idx_user_status_created"}),
    (COLLECTIONS["subscriptions"], [("user_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"status": "active"},
        "name": "idx_single_active_subscription"
    }),
    (COLLECTIONS["subscriptions"], [("status", 1), ("end_date", 1)], {"name": "idx_status_end_date"}),

    # payment audit
    (COLLECTIONS["purchases"], [("order_id", 1)], {"unique": True, "name": "idx_purchase_order_id_unique"}),
    (COLLECTIONS["purchases"], [("user_id", 1), ("created_at", -1)], {"name": "idx_purchase_user_created"}),
    (COLLECTIONS["tips"], [("order_id", 1)], {"unique": True, "name": "idx_tip_order_id_unique"}),
    (COLLECTIONS["tips"], [("user_id", 1), ("created_at", -1)], {"name": "idx_tip_user_created"}),

    # trades
    (COLLECTIONS["trades"], [("trade_id", 1)], {"unique": True, "name": "idx_trade_id_unique"}),
    (COLLECTIONS["trades"], [("sender_id", 1), ("created_at", -1)], {"name": "idx_trade_sender_created"}),
    (COLLECTIONS["trades"], [("receiver_id", 1), ("created_at", -1)], {"name": "idx_trade_receiver_created"}),

    # redemptions and history
    (COLLECTIONS["redemptions"], [("user_id", 1), ("created_at", -1)], {"name": "idx_redemption_user_created"}),
    (COLLECTIONS["redemptions"], [("subscription_id", 1), ("status", 1)], {"name": "idx_redemption_subscription_status"}),
    (COLLECTIONS["history"], [("user_id", 1), ("timestamp", -1)], {"name": "idx_history_user_timestamp"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("MEDIA_WALLET_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: MEDIA_WALLET_INIT_CONFIRM=YES\n"
                f"Current value: MEDIA_WALLET_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every required index. Used by the CLI and on server startup."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))
    return results


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "media_wallet_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": to_iso(utcnow())}},
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    if not allowed:
        logger.error(env_message)
        sys.exit(1)
    logger.info(env_message)

    mongo_url = os.environ.get("MONGO_URL")
    db_name = os.environ.get("DB_NAME")
    if not mongo_url or not db_name:
        logger.error("MONGO_URL and DB_NAME must be set")
        sys.exit(1)

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command("ping")
    except PyMongoError as e:
        logger.error(f"Cannot reach MongoDB for {db_name}: {e}")
        client.close()
        sys.exit(1)

    db = client[db_name]
    logger.info(f"Initializing {db_name} (dry run: {dry_run})")
    for line in await ensure_indexes(db, dry_run):
        logger.info(line)
    logger.info(await update_version_stamp(db, dry_run))

    client.close()
    logger.info("Media wallet init completed")


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Media Wallet Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
