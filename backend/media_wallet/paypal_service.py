"""
PayPal Service for token purchases and tips

Implements the PayPal REST API v2 calls the payment flow needs:
- OAuth client-credentials token (cached)
- Order creation with custom_id tracking
- Order lookup
- Order capture

Required Environment Variables:
- PAYPAL_CLIENT_ID
- PAYPAL_SECRET
- PAYPAL_ENV (sandbox|live)
"""

import os
import logging
import base64
from datetime import datetime, timezone, timedelta
from typing import Dict, Any

import httpx

from .config import PAYPAL_CONFIG

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Raised when a PayPal call fails or returns an unusable response."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class PayPalService:
    """PayPal REST client for one-time CAPTURE orders."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._access_token = None
        self._token_expires = None

    @property
    def env(self) -> str:
        """Get current PayPal environment (sandbox/live)."""
        return os.environ.get("PAYPAL_ENV", "sandbox")

    @property
    def api_base(self) -> str:
        """Get API base URL for current environment."""
        return PAYPAL_CONFIG.get(self.env, PAYPAL_CONFIG["sandbox"])["api_base"]

    @property
    def client_id(self) -> str:
        return os.environ.get("PAYPAL_CLIENT_ID", "")

    @property
    def client_secret(self) -> str:
        return os.environ.get("PAYPAL_SECRET", "")

    async def get_access_token(self) -> str:
        """Get or refresh OAuth access token."""
        now = datetime.now(timezone.utc)

        if self._access_token and self._token_expires and now < self._token_expires:
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise PaymentGatewayError("authorize", "PayPal credentials are not configured")

        auth = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_base}/v1/oauth2/token",
                    headers={
                        "Authorization": f"Basic {auth}",
                        "Content-Type": "application/x-www-form-urlencoded"
                    },
                    data={"grant_type": "client_credentials"}
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError("authorize", str(e)) from e

        if response.status_code != 200:
            logger.error(f"PayPal auth failed: {response.text}")
            raise PaymentGatewayError("authorize", f"status {response.status_code}")

        access_token = response.json().get("access_token")
        if not access_token:
            raise PaymentGatewayError("authorize", "no access token in response")

        self._access_token = access_token
        # Token expires in ~9 hours, we'll refresh at 8
        self._token_expires = now + timedelta(hours=8)
        return self._access_token

    async def create_order(
        self,
        amount: str,
        currency: str,
        custom_id: str,
        description: str
    ) -> str:
        """
        Create a PayPal CAPTURE order.

        Args:
            amount: Decimal string, e.g. "12.00"
            currency: ISO currency code
            custom_id: "{user_id}:{session_id}", checked again before capture
            description: Line shown to the payer

        Returns:
            PayPal order id
        """
        access_token = await self.get_access_token()

        order_data = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "value": amount,
                    "currency_code": currency
                },
                "description": description,
                "custom_id": custom_id
            }]
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_base}/v2/checkout/orders",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json"
                    },
                    json=order_data
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError("create_order", str(e)) from e

        if response.status_code not in [200, 201]:
            logger.error(f"PayPal order creation failed: {response.text}")
            raise PaymentGatewayError("create_order", f"status {response.status_code}")

        order_id = response.json().get("id")
        if not order_id:
            raise PaymentGatewayError("create_order", "no order id in response")
        return order_id

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """
        Fetch an order and flatten its first purchase unit.

        Returns:
            Dict with custom_id, amount, currency and status
        """
        access_token = await self.get_access_token()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.api_base}/v2/checkout/orders/{order_id}",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json"
                    }
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError("get_order", str(e)) from e

        if response.status_code != 200:
            logger.error(f"PayPal order lookup failed: {response.text}")
            raise PaymentGatewayError("get_order", f"status {response.status_code}")

        data = response.json()
        units = data.get("purchase_units") or [{}]
        unit = units[0]
        amount = unit.get("amount", {})
        return {
            "order_id": data.get("id", order_id),
            "status": data.get("status"),
            "custom_id": unit.get("custom_id"),
            "amount": amount.get("value"),
            "currency": amount.get("currency_code")
        }

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """
        Capture an approved order.

        Returns the raw capture payload; callers must check `status`.
        """
        access_token = await self.get_access_token()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_base}/v2/checkout/orders/{order_id}/capture",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json"
                    }
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError("capture", str(e)) from e

        if response.status_code not in [200, 201]:
            logger.error(f"PayPal capture failed: {response.text}")
            raise PaymentGatewayError("capture", f"status {response.status_code}")

        return response.json()


# Shared client so the cached access token outlives a single request
_paypal_service_instance = None


def get_paypal_service() -> PayPalService:
    """Get or create the process-wide PayPal client."""
    global _paypal_service_instance
    if _paypal_service_instance is None:
        _paypal_service_instance = PayPalService()
    return _paypal_service_instance
