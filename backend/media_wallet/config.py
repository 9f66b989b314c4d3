"""
Media Wallet Configuration and Constants

Plan tiers, token rates, provisioning entitlements and payment limits are
defined here. Token amounts are whole tokens; fiat amounts are USD strings.
"""

# ==================== PLAN TIERS ====================
# Ordered low -> high. Upgrade/downgrade decisions compare positions in this list.
PLAN_TIERS = ["basic", "standard", "duo", "family", "vip", "ultimate"]

# ==================== SUBSCRIPTION PLANS (TOKENS) ====================
# stream_limit 0 = unlimited simultaneous streams
SUBSCRIPTION_PLANS = {
    "basic": {
        "name": "Basic",
        "monthly": 40,
        "yearly": 400,
        "stream_limit": 1,
        "downloads": False,
        "movie_requests": 1,
        "tv_requests": 0
    },
    "standard": {
        "name": "Standard",
        "monthly": 60,
        "yearly": 600,
        "stream_limit": 1,
        "downloads": True,
        "movie_requests": 1,
        "tv_requests": 1
    },
    "duo": {
        "name": "Duo",
        "monthly": 80,
        "yearly": 800,
        "stream_limit": 2,
        "downloads": True,
        "movie_requests": 2,
        "tv_requests": 1
    },
    "family": {
        "name": "Family",
        "monthly": 120,
        "yearly": 1200,
        "stream_limit": 4,
        "downloads": True,
        "movie_requests": 4,
        "tv_requests": 2
    },
    "vip": {
        "name": "VIP",
        "monthly": 180,
        "yearly": 1800,
        "stream_limit": 5,
        "downloads": True,
        "movie_requests": 6,
        "tv_requests": 3
    },
    "ultimate": {
        "name": "Ultimate",
        "monthly": 300,
        "yearly": 3000,
        "stream_limit": 0,
        "downloads": True,
        "movie_requests": 10,
        "tv_requests": 5
    }
}

BILLING_PERIODS = ("monthly", "yearly")

# Maximum number of periods per purchase
MAX_DURATION = {
    "monthly": 12,
    "yearly": 3
}

# Request quotas are granted per rolling window of this many days
REQUEST_QUOTA_DAYS = 30

# ==================== TOKEN PACKAGES ====================
TOKEN_PACKAGES = (60, 120, 600, 1200)

SUPPORTED_CURRENCY = "USD"
MIN_TIP_AMOUNT = "1.00"
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

# ==================== PROVISIONING SERVICES ====================
# Keys into the user's `services` mapping
MEDIA_SERVICE = "emby"
REQUEST_SERVICE = "jellyseerr"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "unauthenticated": "User must be authenticated.",
    "permission_denied": "User ID does not match authenticated user.",
    "invalid_argument": "Invalid request data.",
    "already_exists": "This operation has already been processed.",
    "not_found": "Requested record was not found.",
    "failed_precondition": "Operation cannot be performed in the current state.",
    "insufficient_balance": "Insufficient tokens for this operation.",
    "payment_capture_failed": "Payment capture failed.",
    "already_subscribed": "You are already subscribed to this plan.",
    "internal": "Internal server error."
}

# ==================== PAYPAL CONFIGURATION ====================
PAYPAL_CONFIG = {
    "sandbox": {
        "api_base": "https://api-m.sandbox.paypal.com",
        "web_base": "https://www.sandbox.paypal.com"
    },
    "live": {
        "api_base": "https://api-m.paypal.com",
        "web_base": "https://www.paypal.com"
    }
}

PAYPAL_CAPTURE_COMPLETED = "COMPLETED"

# ==================== COLLECTIONS ====================
COLLECTIONS = {
    "users": "users",
    "subscriptions": "subscriptions",
    "purchases": "token_purchases",
    "tips": "tips",
    "trades": "trades",
    "redemptions": "redemptions",
    "history": "subscription_history"
}
