"""
Media Wallet Data Models

Pydantic models for wallet and subscription operations.
Document models define the structure of records stored in MongoDB collections;
request/response models define the HTTP payloads.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal


# ==================== SUBSCRIPTION MODELS ====================

class ScheduledDowngrade(BaseModel):
    """Deferred plan change recorded on the active subscription"""
    plan_id: str
    billing_period: Literal["monthly", "yearly"]
    duration: int
    scheduled_for: str  # ISO datetime string


class Subscription(BaseModel):
    """One billing interval of media entitlement"""
    subscription_id: str
    user_id: str
    plan_id: str
    billing_period: Literal["monthly", "yearly"]
    duration: int
    token_cost: int = 0
    start_date: str  # ISO datetime string
    end_date: str  # ISO datetime string
    status: Literal["active", "expired", "upgraded", "completed"] = "active"
    auto_renew: bool = False
    scheduled_downgrade: Optional[ScheduledDowngrade] = None
    movie_requests_used: int = 0
    tv_requests_used: int = 0
    last_reset_date: Optional[str] = None
    from_downgrade: bool = False
    upgraded_from: Optional[str] = None
    created_at: str
    updated_at: str


# ==================== AUDIT MODELS ====================

class TokenPurchase(BaseModel):
    """Immutable record of a captured token purchase"""
    purchase_id: str
    user_id: str
    order_id: str
    tokens: int
    amount: str
    currency: str
    status: Literal["completed"] = "completed"
    created_at: str


class Tip(BaseModel):
    """Immutable record of a captured tip"""
    tip_id: str
    user_id: str
    username: str
    order_id: str
    amount: str
    currency: str
    status: Literal["completed"] = "completed"
    created_at: str


class Trade(BaseModel):
    """Immutable record of a peer token transfer"""
    trade_id: str
    sender_id: str
    sender_username: Optional[str] = None
    receiver_id: str
    receiver_username: Optional[str] = None
    tokens: int
    created_at: str


class Redemption(BaseModel):
    """Token-cost event linked to a subscription"""
    redemption_id: str
    user_id: str
    product_type: Literal["mediaSubscription", "scheduledDowngrade"]
    plan_id: str
    billing_period: str
    duration: int
    token_cost: int
    subscription_id: str
    status: Literal["completed", "scheduled", "cancelled"] = "completed"
    created_at: str


class SubscriptionHistoryEntry(BaseModel):
    """State transition log for subscriptions"""
    user_id: str
    subscription_id: str
    action: Literal[
        "created", "upgraded", "downgrade_scheduled",
        "downgrade_cancelled", "downgraded", "expired"
    ]
    plan_id: Optional[str] = None
    token_cost: int = 0
    details: Optional[dict] = None
    timestamp: str


# ==================== REQUEST MODELS ====================

class CreateOrderRequest(BaseModel):
    user_id: str
    session_id: str = Field(..., min_length=1)
    tokens: int
    amount: str
    currency: str = "USD"


class CapturePurchaseRequest(CreateOrderRequest):
    order_id: str = Field(..., min_length=1)


class CreateTipOrderRequest(BaseModel):
    user_id: str
    session_id: str = Field(..., min_length=1)
    amount: str
    currency: str = "USD"


class CaptureTipRequest(CreateTipOrderRequest):
    order_id: str = Field(..., min_length=1)


class TradeRequest(BaseModel):
    sender_id: str
    receiver_username: str
    tokens: int


class AccountSetupRequest(BaseModel):
    user_id: str
    email: str
    username: str
    password: str


class SubscriptionRequest(BaseModel):
    user_id: str
    plan_id: str
    billing_period: str
    duration: int = Field(..., description="Number of billing periods")
    pro_rate_credit: int = Field(0, description="Already-validated upgrade credit in tokens")


# ==================== RESPONSE MODELS ====================

class OrderResponse(BaseModel):
    order_id: str


class PaymentAppliedResponse(BaseModel):
    success: bool = True
    order_id: str
    tokens_credited: int = 0


class TradeResponse(BaseModel):
    success: bool = True
    trade_id: str


class SubscriptionChangeResponse(BaseModel):
    success: bool = True
    action: Literal["created", "upgraded", "downgrade_scheduled"]
    subscription_id: str
    plan_id: str
    token_cost: int
    end_date: Optional[str] = None
    scheduled_for: Optional[str] = None


class SubscriptionInfo(BaseModel):
    subscription_id: str
    plan_id: str
    billing_period: str
    start_date: str
    end_date: str
    status: str
    auto_renew: bool
    days_remaining: int
    movie_requests_used: int = 0
    tv_requests_used: int = 0
    from_downgrade: bool = False
    scheduled_downgrade: Optional[ScheduledDowngrade] = None


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool
    subscription: Optional[SubscriptionInfo] = None


class AccountSetupResponse(BaseModel):
    success: bool = True
    user_id: str
    username: str
    media_account_linked: bool


class UsernameCheckResponse(BaseModel):
    username: str
    available: bool


class AccountActivationResponse(BaseModel):
    success: bool = True
    user_id: str
    plan_id: Optional[str] = None


class BalanceResponse(BaseModel):
    user_id: str
    token_balance: int


class HistoryResponse(BaseModel):
    entries: List[dict]
    count: int
