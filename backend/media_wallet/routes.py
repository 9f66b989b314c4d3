"""
Media Wallet API Routes

Endpoints:
- GET  /api/media-wallet/username-available - Username availability
- POST /api/media-wallet/account - Set up the wallet user and media account
- POST /api/media-wallet/account/activate - Re-enable the linked media account
- GET  /api/media-wallet/balance - Token balance
- GET  /api/media-wallet/history - Purchases, trades and redemptions
- POST /api/media-wallet/orders - Create a token purchase order
- POST /api/media-wallet/orders/capture - Capture a token order and credit tokens
- POST /api/media-wallet/tips - Create a tip order
- POST /api/media-wallet/tips/capture - Capture a tip order
- POST /api/media-wallet/trades - Send tokens to another user
- POST /api/media-wallet/subscription - Create, upgrade or schedule a downgrade
- GET  /api/media-wallet/subscription/{user_id} - Reconciled subscription status
- DELETE /api/media-wallet/subscription/{user_id}/scheduled-downgrade - Cancel a pending downgrade
"""

import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from database import db
from utils.auth import get_current_user
from .account_service import AccountService
from .config import SUBSCRIPTION_PLANS, TOKEN_PACKAGES
from .errors import InternalError, WalletError
from .ledger_service import LedgerService
from .models import (
    AccountActivationResponse,
    AccountSetupRequest,
    AccountSetupResponse,
    BalanceResponse,
    CaptureTipRequest,
    CapturePurchaseRequest,
    CreateOrderRequest,
    CreateTipOrderRequest,
    HistoryResponse,
    OrderResponse,
    PaymentAppliedResponse,
    SubscriptionChangeResponse,
    SubscriptionRequest,
    SubscriptionStatusResponse,
    TradeRequest,
    TradeResponse,
    UsernameCheckResponse,
)
from .payment_service import PaymentService
from .paypal_service import get_paypal_service
from .reconciler import SubscriptionReconciler
from .subscription_service import SubscriptionService
from .validators import authorize_caller

logger = logging.getLogger(__name__)

media_wallet_router = APIRouter(prefix="/media-wallet", tags=["Media Wallet"])


def to_http_error(error: WalletError) -> HTTPException:
    return HTTPException(status_code=error.http_status, detail=error.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    """Tag database failures that escape a route as internal errors."""

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
        error = InternalError("Database operation failed.")
        return JSONResponse(status_code=error.http_status, content={"detail": error.to_dict()})


# ==================== CATALOG ====================

@media_wallet_router.get("/plans")
async def get_plans():
    """Subscription plans with token rates, and the purchasable token packages."""
    return {
        "plans": [{"id": plan_id, **plan} for plan_id, plan in SUBSCRIPTION_PLANS.items()],
        "token_packages": TOKEN_PACKAGES
    }


# ==================== ACCOUNTS ====================

@media_wallet_router.get("/username-available", response_model=UsernameCheckResponse)
async def check_username(username: str = Query(...)):
    try:
        return await AccountService(db).check_username(username)
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.post("/account", response_model=AccountSetupResponse)
async def setup_user_account(body: AccountSetupRequest, user: dict = Depends(get_current_user)):
    """
    Claim a username and create the linked media account.

    A username held by another user returns 409.
    """
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await AccountService(db).setup_user_account(
            body.user_id, body.email, body.username, body.password
        )
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.post("/account/activate", response_model=AccountActivationResponse)
async def activate_media_account(user: dict = Depends(get_current_user)):
    try:
        return await AccountService(db).activate_media_account(user["id"])
    except WalletError as e:
        raise to_http_error(e)


# ==================== WALLET ====================

@media_wallet_router.get("/balance", response_model=BalanceResponse)
async def get_balance(user: dict = Depends(get_current_user)):
    try:
        balance = await LedgerService(db).get_balance(user["id"])
    except WalletError as e:
        raise to_http_error(e)
    return {"user_id": user["id"], "token_balance": balance}


@media_wallet_router.get("/history", response_model=HistoryResponse)
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    entries = await LedgerService(db).get_history(user["id"], limit)
    return {"entries": entries, "count": len(entries)}


@media_wallet_router.post("/trades", response_model=TradeResponse)
async def trade_tokens(body: TradeRequest, user: dict = Depends(get_current_user)):
    """Transfer tokens to the user with `receiver_username`."""
    try:
        authorize_caller(user.get("id"), body.sender_id)
        return await LedgerService(db).trade(body.sender_id, body.receiver_username, body.tokens)
    except WalletError as e:
        raise to_http_error(e)


# ==================== PAYMENTS ====================

@media_wallet_router.post("/orders", response_model=OrderResponse)
async def create_payment_order(body: CreateOrderRequest, user: dict = Depends(get_current_user)):
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await PaymentService(db, gateway=get_paypal_service()).create_payment_order(
            body.user_id, body.session_id, body.tokens, body.amount, body.currency
        )
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.post("/orders/capture", response_model=PaymentAppliedResponse)
async def apply_captured_purchase(body: CapturePurchaseRequest, user: dict = Depends(get_current_user)):
    """
    Capture a PayPal token order and credit the tokens.

    Credits exactly once per order id; a repeated call returns 409.
    """
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await PaymentService(db, gateway=get_paypal_service()).apply_captured_purchase(
            body.user_id, body.order_id, body.session_id, body.tokens, body.amount, body.currency
        )
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.post("/tips", response_model=OrderResponse)
async def create_tip_order(body: CreateTipOrderRequest, user: dict = Depends(get_current_user)):
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await PaymentService(db, gateway=get_paypal_service()).create_tip_order(
            body.user_id, body.session_id, body.amount, body.currency
        )
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.post("/tips/capture", response_model=PaymentAppliedResponse)
async def apply_captured_tip(body: CaptureTipRequest, user: dict = Depends(get_current_user)):
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await PaymentService(db, gateway=get_paypal_service()).apply_captured_tip(
            body.user_id, body.order_id, body.session_id, body.amount, body.currency
        )
    except WalletError as e:
        raise to_http_error(e)


# ==================== SUBSCRIPTIONS ====================

@media_wallet_router.post("/subscription", response_model=SubscriptionChangeResponse)
async def change_subscription(body: SubscriptionRequest, user: dict = Depends(get_current_user)):
    """
    Subscribe, upgrade, or schedule a downgrade.

    Upgrades charge immediately (less `pro_rate_credit`); downgrades take
    effect when the current interval ends.
    """
    try:
        authorize_caller(user.get("id"), body.user_id)
        return await SubscriptionService(db).change_subscription(
            body.user_id, body.plan_id, body.billing_period, body.duration, body.pro_rate_credit
        )
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.get("/subscription/{user_id}", response_model=SubscriptionStatusResponse)
async def get_subscription_status(user_id: str, user: dict = Depends(get_current_user)):
    try:
        authorize_caller(user.get("id"), user_id)
        return await SubscriptionReconciler(db).get_subscription_status(user_id)
    except WalletError as e:
        raise to_http_error(e)


@media_wallet_router.delete("/subscription/{user_id}/scheduled-downgrade")
async def cancel_scheduled_downgrade(user_id: str, user: dict = Depends(get_current_user)):
    try:
        authorize_caller(user.get("id"), user_id)
        return await SubscriptionService(db).cancel_scheduled_downgrade(user_id)
    except WalletError as e:
        raise to_http_error(e)
