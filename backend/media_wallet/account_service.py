"""
Account Service - onboarding and media account activation

- setup_user_account: claim a unique username, create the linked media
  account (disabled until a plan is applied) and initialize the wallet
- check_username: availability of a normalized username
- activate_media_account: re-enable the linked media account, applying the
  active plan's entitlements when there is one

Passwords are forwarded to the media server only and never stored.
"""

import logging
from typing import Optional, Dict, Any

import httpx
from pymongo.errors import DuplicateKeyError

from .config import COLLECTIONS, MEDIA_SERVICE
from .errors import DuplicateOperation, InternalError, NotFound
from .ledger_service import LedgerService
from .models import AccountActivationResponse, AccountSetupResponse, UsernameCheckResponse
from .plan_resolver import utcnow, to_iso
from .provisioning import EmbyClient, ProvisioningError, ProvisioningSynchronizer, linked_account
from .reconciler import SubscriptionReconciler
from .validators import normalize_username, validate_account_setup

logger = logging.getLogger(__name__)

USERNAME_TAKEN = "Username is already taken."


class AccountService:
    """Service for user onboarding."""

    def __init__(self, db, media_client=None, synchronizer: Optional[ProvisioningSynchronizer] = None):
        self.db = db
        self.media_client = media_client or EmbyClient()
        self.synchronizer = synchronizer or ProvisioningSynchronizer(media_client=self.media_client)

    @property
    def users(self):
        return self.db[COLLECTIONS["users"]]

    async def check_username(self, username: str) -> Dict[str, Any]:
        normalized = normalize_username(username, "Username")
        taken = await self.users.find_one({"normalized_username": normalized}, {"_id": 0, "id": 1})
        return UsernameCheckResponse(username=normalized, available=taken is None).model_dump()

    async def setup_user_account(
        self,
        user_id: str,
        email: str,
        username: str,
        password: str
    ) -> Dict[str, Any]:
        """
        Create or complete the wallet user record for `user_id`.

        An existing linked media account is kept; otherwise one is created
        before the record is written. A username already held by another
        user is rejected as a duplicate, including when a concurrent sign-up
        claims it between the check and the write.
        """
        normalized = validate_account_setup(email, username, password)

        holder = await self.users.find_one({"normalized_username": normalized}, {"_id": 0, "id": 1})
        if holder and holder.get("id") != user_id:
            raise DuplicateOperation(USERNAME_TAKEN)

        current = await self.users.find_one({"id": user_id}, {"_id": 0})
        account_id = linked_account(current, MEDIA_SERVICE)
        created_account = None

        if not account_id:
            try:
                if await self.media_client.username_taken(normalized):
                    raise DuplicateOperation("Username is already taken on the media server.")
                account_id = created_account = await self.media_client.create_account(username.strip(), password)
            except (ProvisioningError, httpx.HTTPError) as e:
                logger.error(f"Failed to create {MEDIA_SERVICE} account for user {user_id}: {e}")
                raise InternalError(f"Failed to create media account: {e}")

        now = to_iso(utcnow())
        fields = {
            "email": email.strip(),
            "username": username.strip(),
            "normalized_username": normalized,
            "updated_at": now
        }
        if created_account:
            fields[f"services.{MEDIA_SERVICE}"] = {
                "linked": True,
                "service_account_id": created_account,
                "subscription_status": "inactive",
                "current_plan": None
            }

        try:
            await self.users.update_one(
                {"id": user_id},
                {"$set": fields, "$setOnInsert": {"token_balance": 0, "created_at": now}},
                upsert=True
            )
        except DuplicateKeyError:
            if created_account:
                logger.warning(
                    f"Username {normalized} claimed concurrently; {MEDIA_SERVICE} account "
                    f"{created_account} left unlinked"
                )
            raise DuplicateOperation(USERNAME_TAKEN)

        logger.info(f"Set up account for user {user_id} as {normalized}")
        return AccountSetupResponse(
            user_id=user_id,
            username=username.strip(),
            media_account_linked=bool(account_id)
        ).model_dump()

    async def activate_media_account(self, user_id: str) -> Dict[str, Any]:
        user = await LedgerService(self.db).get_user(user_id)
        if not linked_account(user, MEDIA_SERVICE):
            raise NotFound("No linked media account for this user.")

        status = await SubscriptionReconciler(self.db, self.synchronizer).get_subscription_status(user_id)
        plan_id = status["subscription"]["plan_id"] if status["has_active_subscription"] else None
        if plan_id:
            activated = await self.synchronizer.apply_plan(user, plan_id)
        else:
            activated = await self.synchronizer.enable(user)
        if not activated:
            raise InternalError("Failed to activate media account.")

        logger.info(f"Activated {MEDIA_SERVICE} account for user {user_id} (plan {plan_id})")
        return AccountActivationResponse(user_id=user_id, plan_id=plan_id).model_dump()
