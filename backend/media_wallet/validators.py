"""
Request validation for wallet operations.

All checks here run before any collaborator call or store access and raise
`InvalidArgument` (or an identity failure) on the first problem found.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from .config import (
    TOKEN_PACKAGES,
    SUPPORTED_CURRENCY,
    MIN_TIP_AMOUNT,
    MIN_USERNAME_LENGTH,
    MIN_PASSWORD_LENGTH,
    SUBSCRIPTION_PLANS,
    BILLING_PERIODS,
    MAX_DURATION,
)
from .errors import InvalidArgument, PermissionDenied, Unauthenticated

AMOUNT_PATTERN = re.compile(r"[0-9]+(\.[0-9]{1,2})?")
EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
TWO_PLACES = Decimal("0.01")


def authorize_caller(auth_user_id: Optional[str], user_id: Optional[str]) -> None:
    """Reject anonymous callers and callers acting on another user's behalf."""
    if not auth_user_id:
        raise Unauthenticated()
    if auth_user_id != user_id:
        raise PermissionDenied()


def _is_positive_int(value) -> bool:
    # bool is an int subclass; True must not pass as 1 token
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_amount(amount) -> Decimal:
    """Parse a monetary string with at most 2 fractional digits."""
    if not isinstance(amount, str) or not AMOUNT_PATTERN.fullmatch(amount):
        raise InvalidArgument("Amount must be a valid monetary value (e.g., '5.00').")
    try:
        return Decimal(amount)
    except InvalidOperation:
        raise InvalidArgument("Amount must be a valid monetary value (e.g., '5.00').")


def normalize_amount(amount: str) -> str:
    """Render an amount with exactly two fractional digits ('5' -> '5.00')."""
    return str(Decimal(amount).quantize(TWO_PLACES))


def validate_currency(currency) -> str:
    if currency != SUPPORTED_CURRENCY:
        raise InvalidArgument(f"Currency must be '{SUPPORTED_CURRENCY}'.")
    return currency


def validate_token_package(tokens) -> int:
    if not _is_positive_int(tokens):
        raise InvalidArgument("Tokens must be a positive number.")
    if tokens not in TOKEN_PACKAGES:
        raise InvalidArgument("Invalid token package.")
    return tokens


def validate_token_amount(tokens) -> int:
    """Validate a free-form token quantity (trades)."""
    if not _is_positive_int(tokens):
        raise InvalidArgument("Tokens must be a positive number.")
    return tokens


def validate_purchase(session_id, tokens, amount, currency) -> None:
    if not session_id:
        raise InvalidArgument("Missing required field: session_id.")
    validate_token_package(tokens)
    parse_amount(amount)
    validate_currency(currency)


def validate_tip(session_id, amount, currency) -> None:
    if not session_id:
        raise InvalidArgument("Missing required field: session_id.")
    value = parse_amount(amount)
    validate_currency(currency)
    if value < Decimal(MIN_TIP_AMOUNT):
        raise InvalidArgument(f"Minimum tip amount is ${MIN_TIP_AMOUNT}.")


def normalize_username(username, label: str = "Receiver username") -> str:
    if not isinstance(username, str) or len(username.strip()) < MIN_USERNAME_LENGTH:
        raise InvalidArgument(
            f"{label} must be a valid string with at least {MIN_USERNAME_LENGTH} characters."
        )
    return username.strip().lower()


def validate_account_setup(email, username, password) -> str:
    """Check sign-up fields and return the normalized username."""
    if not email or not username or not password:
        raise InvalidArgument("Email, username, and password are required.")
    if not isinstance(email, str) or not EMAIL_PATTERN.fullmatch(email.strip()):
        raise InvalidArgument("Email must be a valid address.")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidArgument(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return normalize_username(username, "Username")


def validate_subscription_request(plan_id, billing_period, duration, pro_rate_credit=0) -> None:
    if plan_id not in SUBSCRIPTION_PLANS:
        raise InvalidArgument("Invalid subscription plan ID.")
    if billing_period not in BILLING_PERIODS:
        raise InvalidArgument("Billing period must be 'monthly' or 'yearly'.")
    if not _is_positive_int(duration):
        raise InvalidArgument("Duration must be a positive number.")
    max_duration = MAX_DURATION[billing_period]
    if duration > max_duration:
        raise InvalidArgument(f"Maximum duration for {billing_period} billing is {max_duration}.")
    if isinstance(pro_rate_credit, bool) or not isinstance(pro_rate_credit, int) or pro_rate_credit < 0:
        raise InvalidArgument("Pro-rate credit must be a non-negative number of tokens.")
