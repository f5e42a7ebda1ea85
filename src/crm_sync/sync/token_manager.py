"""
Integration Manager

Owns the lifecycle of integrations: OAuth connect, access-token refresh before
provider calls and disconnect.
"""

import logging
from datetime import timedelta
from typing import Optional

from crm_sync.services.business_profile import resource_suffix
from crm_sync.sync.architecture import Integration, Provider, TokenSet, utcnow
from crm_sync.sync.errors import IntegrationNotFound, ReauthorizationRequired, SyncError
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.sync.watches import has_watch, stop_provider_watch
from crm_sync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)


class IntegrationManager:
    def __init__(self, storage: SyncStorageManager, registry):
        self.storage = storage
        self.registry = registry

    async def get_integration(
        self,
        user_id: str,
        provider: Provider,
        integration_id: Optional[str] = None
    ) -> Integration:
        """
        The user's integration for a provider: the given one, or the first active one.
        Raises IntegrationNotFound when it does not exist or belongs to someone else.
        """
        if integration_id:
            integration = await self.storage.get_integration(integration_id)
            if integration and integration.user_id == user_id and integration.provider == provider:
                return integration
        else:
            integration = await self.storage.find_integration(user_id, provider)
            if integration:
                return integration

        raise IntegrationNotFound(f"No active {provider.value} integration found", provider=provider.value)

    async def ensure_fresh_token(self, integration: Integration) -> str:
        """
        Return a usable access token, refreshing it first if it has expired.

        Refreshes are serialized per integration. Whoever gets the lock second
        re-reads the record and reuses the token the first caller stored. The
        caller's integration object is updated in place.
        """
        if not integration.token_expired():
            return integration.access_token

        async with self.storage.lock(f"token:{integration.id}"):
            current = await self.storage.get_integration(integration.id) or integration
            if not current.token_expired():
                integration.access_token = current.access_token
                integration.refresh_token = current.refresh_token
                integration.token_expiry = current.token_expiry
                return integration.access_token

            if not current.refresh_token:
                raise ReauthorizationRequired(
                    f"{integration.provider.value} integration has no refresh token, reconnect it",
                    provider=integration.provider.value,
                    integration_id=integration.id
                )

            logger.info(f"Access token for {integration.provider.value} integration {integration.id} expired, refreshing")
            adapter = self.registry.get(integration.provider)
            try:
                tokens = await adapter.refresh(current.refresh_token)
            except ReauthorizationRequired as e:
                raise ReauthorizationRequired(
                    e.message,
                    provider=integration.provider.value,
                    integration_id=integration.id
                ) from e

            fields = {
                "access_token": tokens.access_token,
                "token_expiry": self._expiry(tokens),
            }
            if tokens.refresh_token and tokens.refresh_token != current.refresh_token:
                fields["refresh_token"] = tokens.refresh_token

            await self.storage.update_integration(integration, **fields)
            return integration.access_token

    def _expiry(self, tokens: TokenSet):
        return tokens.expires_at or utcnow() + timedelta(seconds=settings.DEFAULT_TOKEN_LIFETIME_SECONDS)

    async def connect(self, user_id: str, provider: Provider, code: str) -> Integration:
        """Exchange an OAuth code and create or update the integration it grants"""
        adapter = self.registry.get(provider)
        tokens = await adapter.exchange_code(code)

        integration = Integration(
            user_id=user_id,
            provider=provider,
            email_address=tokens.account,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expiry=self._expiry(tokens)
        )

        if provider == Provider.CALENDAR:
            integration.resource_id = "primary"

        elif provider == Provider.GMAIL:
            if not integration.email_address:
                profile = await adapter.get_profile(tokens.access_token)
                integration.email_address = profile.get("emailAddress")
            integration.resource_id = integration.email_address

        elif provider == Provider.OUTLOOK:
            if not integration.email_address:
                profile = await adapter.get_profile(tokens.access_token)
                integration.email_address = profile.get("mail") or profile.get("userPrincipalName")
            integration.resource_id = integration.email_address

        elif provider == Provider.GMB:
            await self._discover_location(adapter, tokens.access_token, integration)

        return await self.storage.upsert_integration(integration)

    async def _discover_location(self, adapter, access_token: str, integration: Integration) -> None:
        """Pick the first business account and location; review sync retries when missing"""
        try:
            accounts = await adapter.list_accounts(access_token)
            if not accounts:
                logger.warning(f"No Business Profile accounts for user {integration.user_id}")
                return
            integration.business_account_id = resource_suffix(accounts[0]["name"])

            locations = await adapter.list_locations(access_token, integration.business_account_id)
            if not locations:
                logger.warning(f"No Business Profile locations for account {integration.business_account_id}")
                return
            integration.business_location_id = resource_suffix(locations[0]["name"])
            integration.resource_id = locations[0]["name"]
        except SyncError as e:
            logger.warning(f"Business Profile location discovery failed: {e}")

    async def disconnect(self, integration: Integration) -> None:
        """Stop any watch (best effort), then delete the integration and its links"""
        if has_watch(integration):
            try:
                adapter = self.registry.get(integration.provider)
                access_token = await self.ensure_fresh_token(integration)
                await stop_provider_watch(adapter, access_token, integration)
            except SyncError as e:
                logger.warning(f"Failed to stop watch while disconnecting integration {integration.id}: {e}")

        await self.storage.delete_integration(integration)
