"""
Payment Service - token purchases and tips paid through PayPal

Flow per order:
1. Validate the request (before any external call)
2. Create a CAPTURE order tagged with custom_id "{user_id}:{session_id}"
3. On capture request: verify ownership, amount and currency, reject
   already-applied orders, capture, and only on COMPLETED apply the
   ledger effect in one transaction that re-checks idempotency

The ledger is never touched unless the capture reported COMPLETED.
"""

import logging
import uuid
from decimal import InvalidOperation
from typing import Dict, Any

from pymongo.errors import DuplicateKeyError

from .config import COLLECTIONS, PAYPAL_CAPTURE_COMPLETED
from .errors import (
    DuplicateOperation,
    InternalError,
    InvalidArgument,
    PaymentCaptureFailed,
    PermissionDenied,
    UserNotFound,
)
from .idempotency import ensure_not_applied
from .ledger_service import LedgerService
from .models import TokenPurchase, Tip
from .paypal_service import PaymentGatewayError, PayPalService
from .plan_resolver import utcnow, to_iso
from .transactions import run_transaction
from .validators import normalize_amount, validate_purchase, validate_tip

logger = logging.getLogger(__name__)


def build_custom_id(user_id: str, session_id: str) -> str:
    return f"{user_id}:{session_id}"


class PaymentService:
    """Applies captured PayPal orders to the token ledger and tip log."""

    def __init__(self, db, gateway=None):
        self.db = db
        self.gateway = gateway or PayPalService()
        self.ledger = LedgerService(db)

    # ==================== ORDER CREATION ====================

    async def create_payment_order(
        self,
        user_id: str,
        session_id: str,
        tokens: int,
        amount: str,
        currency: str
    ) -> Dict[str, Any]:
        validate_purchase(session_id, tokens, amount, currency)
        order_id = await self._create_order(
            amount,
            currency,
            build_custom_id(user_id, session_id),
            f"Purchase of {tokens} tokens"
        )
        logger.info(f"Created token order {order_id} for user {user_id} ({tokens} tokens)")
        return {"order_id": order_id}

    async def create_tip_order(
        self,
        user_id: str,
        session_id: str,
        amount: str,
        currency: str
    ) -> Dict[str, Any]:
        validate_tip(session_id, amount, currency)
        order_id = await self._create_order(
            amount,
            currency,
            build_custom_id(user_id, session_id),
            "Donation"
        )
        logger.info(f"Created tip order {order_id} for user {user_id}")
        return {"order_id": order_id}

    async def _create_order(self, amount: str, currency: str, custom_id: str, description: str) -> str:
        try:
            return await self.gateway.create_order(
                amount=amount,
                currency=currency,
                custom_id=custom_id,
                description=description
            )
        except PaymentGatewayError as e:
            logger.error(f"PayPal order creation failed: {e}")
            raise InternalError(f"Failed to create PayPal order: {e}")

    # ==================== CAPTURE + APPLY ====================

    async def apply_captured_purchase(
        self,
        user_id: str,
        order_id: str,
        session_id: str,
        tokens: int,
        amount: str,
        currency: str
    ) -> Dict[str, Any]:
        """Capture a token order and credit the tokens exactly once."""
        validate_purchase(session_id, tokens, amount, currency)
        if not order_id:
            raise InvalidArgument("Missing required field: order_id.")

        order = await self._fetch_order(order_id)
        self._verify_ownership(order, user_id, session_id)
        if order.get("amount") != amount or order.get("currency") != currency:
            raise InvalidArgument("Order amount or currency does not match request data.")

        purchases = COLLECTIONS["purchases"]
        await ensure_not_applied(self.db, purchases, order_id)
        await self.ledger.get_user(user_id)

        await self._capture(order_id)

        async def _apply(session):
            await ensure_not_applied(self.db, purchases, order_id, session=session)
            await self.ledger.get_user(user_id, session=session)
            await self.ledger.credit(user_id, tokens, session=session)

            purchase = TokenPurchase(
                purchase_id=str(uuid.uuid4()),
                user_id=user_id,
                order_id=order_id,
                tokens=tokens,
                amount=amount,
                currency=currency,
                created_at=to_iso(utcnow())
            )
            await self.db[purchases].insert_one(purchase.model_dump(), session=session)

        await self._run_audited(_apply, order_id)
        logger.info(f"Applied token purchase {order_id}: +{tokens} tokens for user {user_id}")
        return {"success": True, "order_id": order_id, "tokens_credited": tokens}

    async def apply_captured_tip(
        self,
        user_id: str,
        order_id: str,
        session_id: str,
        amount: str,
        currency: str
    ) -> Dict[str, Any]:
        """Capture a tip order and record it exactly once."""
        validate_tip(session_id, amount, currency)
        if not order_id:
            raise InvalidArgument("Missing required field: order_id.")

        order = await self._fetch_order(order_id)
        self._verify_ownership(order, user_id, session_id)

        received_amount = normalize_amount(amount)
        try:
            order_amount = normalize_amount(order.get("amount"))
        except (InvalidOperation, TypeError):
            order_amount = None
        if order_amount != received_amount or order.get("currency") != currency:
            logger.error(
                f"Tip amount mismatch for order {order_id}: "
                f"order={order.get('amount')} {order.get('currency')}, received={amount} {currency}"
            )
            raise InvalidArgument("Order amount or currency does not match request data.")

        tips = COLLECTIONS["tips"]
        await ensure_not_applied(self.db, tips, order_id)
        user = await self.ledger.get_user(user_id)

        await self._capture(order_id)

        async def _apply(session):
            await ensure_not_applied(self.db, tips, order_id, session=session)
            tip = Tip(
                tip_id=str(uuid.uuid4()),
                user_id=user_id,
                username=user.get("username") or "Anonymous",
                order_id=order_id,
                amount=received_amount,
                currency=currency,
                created_at=to_iso(utcnow())
            )
            await self.db[tips].insert_one(tip.model_dump(), session=session)

        await self._run_audited(_apply, order_id)
        logger.info(f"Recorded tip {order_id} of {received_amount} {currency} from user {user_id}")
        return {"success": True, "order_id": order_id, "tokens_credited": 0}

    # ==================== HELPERS ====================

    async def _fetch_order(self, order_id: str) -> Dict[str, Any]:
        try:
            return await self.gateway.get_order(order_id)
        except PaymentGatewayError as e:
            if e.stage == "authorize":
                raise InternalError(f"Failed to obtain PayPal access token: {e}")
            raise PaymentCaptureFailed(f"Failed to fetch order details: {e}")

    @staticmethod
    def _verify_ownership(order: Dict[str, Any], user_id: str, session_id: str) -> None:
        if order.get("custom_id") != build_custom_id(user_id, session_id):
            raise PermissionDenied("Order does not belong to the authenticated user or session.")

    async def _capture(self, order_id: str) -> Dict[str, Any]:
        try:
            capture = await self.gateway.capture_order(order_id)
        except PaymentGatewayError as e:
            if e.stage == "authorize":
                raise InternalError(f"Failed to obtain PayPal access token: {e}")
            raise PaymentCaptureFailed(f"Payment capture failed: {e}")

        status = capture.get("status")
        if status != PAYPAL_CAPTURE_COMPLETED:
            logger.warning(f"Capture of order {order_id} returned status {status}")
            raise PaymentCaptureFailed(f"Payment capture failed: {status}")
        return capture

    async def _run_audited(self, callback, order_id: str) -> None:
        try:
            await run_transaction(self.db, callback)
        except DuplicateKeyError:
            # Unique order_id index caught a concurrent duplicate
            logger.warning(f"Duplicate order {order_id} rejected by unique index")
            raise DuplicateOperation(f"Order {order_id} has already been processed.")
        except UserNotFound:
            logger.error(f"Order {order_id} captured but user record disappeared")
            raise
