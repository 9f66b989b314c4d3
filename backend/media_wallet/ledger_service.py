"""
Token Ledger Service

Core balance operations including:
- Balance queries
- Credits and debits (relative $inc, never read-then-write)
- Peer trades (double entry)
- Transaction history

CRITICAL: Debits use MongoDB conditional updates and always run inside the
caller's transaction, after a balance read through the same session, so a
negative balance is impossible and a failed debit leaves no side effects.
"""

import logging
import uuid
from typing import Dict, Any, List

from .config import COLLECTIONS
from .errors import InsufficientBalance, UserNotFound
from .models import Trade
from .plan_resolver import utcnow, to_iso
from .transactions import run_transaction
from .validators import normalize_username, validate_token_amount

logger = logging.getLogger(__name__)


class LedgerService:
    """Service for the per-user token balance."""

    def __init__(self, db):
        self.db = db

    @property
    def users(self):
        return self.db[COLLECTIONS["users"]]

    async def get_user(self, user_id: str, session=None) -> Dict[str, Any]:
        user = await self.users.find_one({"id": user_id}, {"_id": 0}, session=session)
        if not user:
            raise UserNotFound("User not found.")
        return user

    async def get_balance(self, user_id: str, session=None) -> int:
        user = await self.get_user(user_id, session=session)
        return user.get("token_balance", 0)

    async def credit(self, user_id: str, amount: int, session=None) -> None:
        """Atomically add `amount` tokens."""
        result = await self.users.update_one(
            {"id": user_id},
            {
                "$inc": {"token_balance": amount},
                "$set": {"updated_at": to_iso(utcnow())}
            },
            session=session
        )
        if result.matched_count == 0:
            raise UserNotFound("User not found.")
        logger.info(f"Credited {amount} tokens to user {user_id}")

    async def debit(self, user_id: str, amount: int, session=None) -> int:
        """
        Atomically remove `amount` tokens.

        Raises InsufficientBalance (aborting the surrounding transaction) when
        the balance read in this session is below `amount`, or when the
        conditional update finds the balance already changed.

        Returns:
            Balance after the debit
        """
        balance = await self.get_balance(user_id, session=session)
        if balance < amount:
            raise InsufficientBalance(
                f"Insufficient tokens. Required: {amount}, Available: {balance}"
            )

        if amount == 0:
            return balance

        result = await self.users.update_one(
            {"id": user_id, "token_balance": {"$gte": amount}},
            {
                "$inc": {"token_balance": -amount},
                "$set": {"updated_at": to_iso(utcnow())}
            },
            session=session
        )
        if result.modified_count == 0:
            raise InsufficientBalance(
                f"Insufficient tokens. Required: {amount}, Available: {balance}"
            )

        logger.info(f"Debited {amount} tokens from user {user_id}")
        return balance - amount

    async def find_user_by_username(self, username: str) -> Dict[str, Any]:
        normalized = normalize_username(username)
        user = await self.users.find_one({"normalized_username": normalized}, {"_id": 0})
        if not user:
            raise UserNotFound("Recipient username not found.")
        return user

    async def trade(self, sender_id: str, receiver_username: str, tokens: int) -> Dict[str, Any]:
        """
        Transfer tokens between users.

        Debit sender, credit receiver and write the trade row in one
        transaction. A self-trade is recorded but leaves the balance unchanged.
        """
        validate_token_amount(tokens)
        receiver = await self.find_user_by_username(receiver_username)
        receiver_id = receiver["id"]

        async def _apply(session):
            sender = await self.get_user(sender_id, session=session)
            if sender.get("token_balance", 0) < tokens:
                raise InsufficientBalance("Sender has insufficient tokens for the trade.")

            receiver_doc = await self.users.find_one({"id": receiver_id}, {"_id": 0}, session=session)
            if not receiver_doc:
                raise UserNotFound("Receiver user not found.")

            if sender_id != receiver_id:
                await self.debit(sender_id, tokens, session=session)
                await self.credit(receiver_id, tokens, session=session)

            trade = Trade(
                trade_id=str(uuid.uuid4()),
                sender_id=sender_id,
                sender_username=sender.get("username"),
                receiver_id=receiver_id,
                receiver_username=receiver_doc.get("username"),
                tokens=tokens,
                created_at=to_iso(utcnow())
            )
            await self.db[COLLECTIONS["trades"]].insert_one(trade.model_dump(), session=session)
            return trade.trade_id

        trade_id = await run_transaction(self.db, _apply)
        logger.info(f"Trade {trade_id}: {tokens} tokens from {sender_id} to {receiver_id}")
        return {"success": True, "trade_id": trade_id}

    async def get_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent purchases, trades and redemptions for a user, newest first."""
        entries = []

        purchases = await self.db[COLLECTIONS["purchases"]].find(
            {"user_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)
        for purchase in purchases:
            entries.append({"type": "purchase", **purchase})

        sent = await self.db[COLLECTIONS["trades"]].find(
            {"sender_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)
        for trade in sent:
            entries.append({"type": "trade", "direction": "sent", **trade})

        received = await self.db[COLLECTIONS["trades"]].find(
            {"receiver_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)
        for trade in received:
            # Self-trades already appear as sent
            if trade["sender_id"] != user_id:
                entries.append({"type": "trade", "direction": "received", **trade})

        redemptions = await self.db[COLLECTIONS["redemptions"]].find(
            {"user_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)
        for redemption in redemptions:
            entries.append({"type": "redemption", **redemption})

        entries.sort(key=lambda e: e.get("created_at", ""), reverse=True)
        return entries[:limit]
