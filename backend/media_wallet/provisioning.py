"""
Provisioning - pushes resolved plans to the media and request services

The ledger commits first; everything here runs afterwards and is
best-effort. Failures are logged and swallowed, and the next status read
re-drives the sync. The clients themselves raise `ProvisioningError`;
account creation at sign-up uses them directly.

Environment Variables:
- EMBY_BASE_URL, EMBY_API_KEY
- REQUESTS_BASE_URL, REQUESTS_API_KEY
"""

import os
import logging
from typing import Optional, Dict, Any

import httpx

from .config import SUBSCRIPTION_PLANS, MEDIA_SERVICE, REQUEST_SERVICE, REQUEST_QUOTA_DAYS

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Raised when a provisioning service call fails."""
    pass


class EmbyClient:
    """Media server account policy client."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = (base_url or os.environ.get("EMBY_BASE_URL", "")).rstrip("/")
        self.api_key = api_key or os.environ.get("EMBY_API_KEY", "")
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {"X-Emby-Token": self.api_key, "Content-Type": "application/json"}

    async def exists(self, account_id: str) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/Users/{account_id}", headers=self.headers)
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise ProvisioningError(f"Failed to look up media account {account_id}: {response.status_code}")
        return True

    async def _get_policy(self, client: httpx.AsyncClient, account_id: str) -> Dict[str, Any]:
        response = await client.get(f"{self.base_url}/Users/{account_id}", headers=self.headers)
        if response.status_code != 200:
            raise ProvisioningError(f"Failed to get media account {account_id}: {response.status_code}")
        return response.json().get("Policy") or {}

    async def _post_policy(self, client: httpx.AsyncClient, account_id: str, policy: Dict[str, Any]) -> None:
        response = await client.post(
            f"{self.base_url}/Users/{account_id}/Policy",
            headers=self.headers,
            json=policy
        )
        if response.status_code not in [200, 204]:
            raise ProvisioningError(f"Failed to update media account policy {account_id}: {response.status_code}")

    async def set_entitlement(self, account_id: str, stream_limit: int, download_allowed: bool) -> None:
        """Merge plan permissions into the current policy and re-enable the account."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            policy = await self._get_policy(client, account_id)
            policy.update({
                "SimultaneousStreamLimit": stream_limit,
                "EnableContentDownloading": download_allowed,
                "IsDisabled": False
            })
            await self._post_policy(client, account_id, policy)

    async def username_taken(self, normalized_username: str) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/Users", headers=self.headers)
        if response.status_code != 200:
            raise ProvisioningError(f"Failed to list media accounts: {response.status_code}")
        return any(
            (entry.get("Name") or "").lower() == normalized_username
            for entry in response.json()
        )

    async def create_account(self, username: str, password: str) -> str:
        """Create a media account, set its password and leave it disabled until a plan is applied."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/Users/New",
                headers=self.headers,
                json={"Name": username}
            )
            if response.status_code not in [200, 201]:
                raise ProvisioningError(f"Failed to create media account {username}: {response.status_code}")
            account_id = response.json().get("Id")
            if not account_id:
                raise ProvisioningError(f"Media server returned no id for account {username}")

            response = await client.post(
                f"{self.base_url}/Users/{account_id}/Password",
                headers=self.headers,
                json={"NewPw": password}
            )
            if response.status_code not in [200, 204]:
                raise ProvisioningError(f"Failed to set password for media account {account_id}: {response.status_code}")

            policy = await self._get_policy(client, account_id)
            policy.update({
                "IsAdministrator": False,
                "IsDisabled": True,
                "EnableContentDownloading": False
            })
            await self._post_policy(client, account_id, policy)
        return account_id

    async def enable(self, account_id: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            policy = await self._get_policy(client, account_id)
            policy["IsDisabled"] = False
            await self._post_policy(client, account_id, policy)

    async def disable(self, account_id: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            policy = await self._get_policy(client, account_id)
            policy["IsDisabled"] = True
            await self._post_policy(client, account_id, policy)


class RequestQuotaClient:
    """Media request service (Jellyseerr/Overseerr) quota client."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = (base_url or os.environ.get("REQUESTS_BASE_URL", "")).rstrip("/")
        self.api_key = api_key or os.environ.get("REQUESTS_API_KEY", "")
        self.timeout = timeout

    async def set_quota(self, account_id: str, movie_limit: int, tv_limit: int) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/api/v1/user/{account_id}/settings/main",
                headers={"X-Api-Key": self.api_key, "Content-Type": "application/json"},
                json={
                    "movieQuotaLimit": movie_limit,
                    "movieQuotaDays": REQUEST_QUOTA_DAYS,
                    "tvQuotaLimit": tv_limit,
                    "tvQuotaDays": REQUEST_QUOTA_DAYS
                }
            )
        if response.status_code not in [200, 204]:
            raise ProvisioningError(f"Failed to set request quota for {account_id}: {response.status_code}")


def linked_account(user: Optional[Dict[str, Any]], service: str) -> Optional[str]:
    """Account id of a linked service on the user document, if any."""
    if not user:
        return None
    entry = (user.get("services") or {}).get(service) or {}
    if not entry.get("linked", bool(entry.get("service_account_id"))):
        return None
    return entry.get("service_account_id")


class ProvisioningSynchronizer:
    """Translates a resolved plan into provisioning calls. Never raises."""

    def __init__(self, media_client=None, quota_client=None):
        self.media_client = media_client or EmbyClient()
        self.quota_client = quota_client or RequestQuotaClient()

    async def apply_plan(self, user: Dict[str, Any], plan_id: str) -> bool:
        """Entitle the user's linked accounts for `plan_id`. Returns True when fully applied."""
        plan = SUBSCRIPTION_PLANS.get(plan_id)
        if not plan:
            logger.error(f"Cannot provision unknown plan {plan_id}")
            return False

        user_id = user.get("id")
        applied = True

        account_id = linked_account(user, MEDIA_SERVICE)
        if not account_id:
            logger.warning(f"User {user_id} has no linked {MEDIA_SERVICE} account, skipping entitlement")
            applied = False
        else:
            try:
                if await self.media_client.exists(account_id):
                    await self.media_client.set_entitlement(
                        account_id, plan["stream_limit"], plan["downloads"]
                    )
                    logger.info(f"Updated {MEDIA_SERVICE} permissions for user {user_id} with plan {plan_id}")
                else:
                    logger.warning(f"{MEDIA_SERVICE} account {account_id} for user {user_id} does not exist")
                    applied = False
            except Exception as e:
                logger.error(f"Failed to update {MEDIA_SERVICE} permissions for user {user_id}: {e}")
                applied = False

        request_account = linked_account(user, REQUEST_SERVICE)
        if request_account:
            try:
                await self.quota_client.set_quota(
                    request_account, plan["movie_requests"], plan["tv_requests"]
                )
            except Exception as e:
                logger.error(f"Failed to set request quota for user {user_id}: {e}")
                applied = False

        return applied

    async def disable(self, user: Dict[str, Any]) -> bool:
        """Disable the user's media account. Returns True when the call succeeded."""
        user_id = user.get("id")
        account_id = linked_account(user, MEDIA_SERVICE)
        if not account_id:
            return False
        try:
            await self.media_client.disable(account_id)
            logger.info(f"Disabled {MEDIA_SERVICE} account for user {user_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to disable {MEDIA_SERVICE} account for user {user_id}: {e}")
            return False

    async def enable(self, user: Dict[str, Any]) -> bool:
        """Re-enable the user's media account without changing its entitlements."""
        user_id = user.get("id")
        account_id = linked_account(user, MEDIA_SERVICE)
        if not account_id:
            return False
        try:
            await self.media_client.enable(account_id)
            logger.info(f"Enabled {MEDIA_SERVICE} account for user {user_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to enable {MEDIA_SERVICE} account for user {user_id}: {e}")
            return False
