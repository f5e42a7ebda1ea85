"""
Watch management

Push-notification subscriptions per provider: Google Calendar channels, Gmail
Pub/Sub watches and Microsoft Graph subscriptions. Subscription state lives in the
watch fields of the Integration.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from crm_sync.sync.architecture import Integration, Provider, as_utc, utcnow
from crm_sync.sync.errors import ConfigurationError, ProviderError, SyncError
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.utils.config import settings as default_settings

# Set up logging
logger = logging.getLogger(__name__)

WATCH_FIELDS = (
    "watch_channel_id",
    "watch_resource_id",
    "watch_expiration",
    "watch_token",
    "watch_message_number",
)


def new_channel_id() -> str:
    return f"channel-{int(utcnow().timestamp() * 1000)}-{secrets.token_hex(4)}"


def has_watch(integration: Integration) -> bool:
    return bool(integration.watch_channel_id or integration.watch_expiration)


async def stop_provider_watch(adapter: Any, access_token: str, integration: Integration) -> None:
    """Cancel the provider-side subscription recorded on an integration"""
    if integration.provider == Provider.CALENDAR:
        if integration.watch_channel_id and integration.watch_resource_id:
            await adapter.stop_watch(access_token, integration.watch_channel_id, integration.watch_resource_id)
    elif integration.provider == Provider.GMAIL:
        await adapter.stop_watch(access_token)
    elif integration.provider == Provider.OUTLOOK:
        if integration.watch_channel_id:
            await adapter.stop_watch(access_token, integration.watch_channel_id)


class WatchManager:
    def __init__(self, storage: SyncStorageManager, manager, registry, settings=None):
        self.storage = storage
        self.manager = manager
        self.registry = registry
        self.settings = settings or default_settings

    async def start_watch(self, integration: Integration) -> Integration:
        """
        Subscribe to provider changes, replacing any existing subscription.
        The previous calendar channel or Graph subscription is stopped afterwards.
        """
        adapter = self.registry.get(integration.provider)
        access_token = await self.manager.ensure_fresh_token(integration)
        previous = integration.model_copy()

        if integration.provider == Provider.CALENDAR:
            expiration = utcnow() + timedelta(days=self.settings.WATCH_CHANNEL_TTL_DAYS)
            channel = await adapter.start_watch(
                access_token,
                integration.resource_id or "primary",
                self.settings.calendar_webhook_url,
                new_channel_id(),
                secrets.token_urlsafe(24),
                expiration
            )
            fields = {
                "watch_channel_id": channel.channel_id,
                "watch_resource_id": channel.resource_id,
                "watch_expiration": channel.expiration or expiration,
                "watch_token": channel.token,
                "watch_message_number": None,
            }
        elif integration.provider == Provider.GMAIL:
            if not self.settings.GOOGLE_PUBSUB_TOPIC:
                raise ConfigurationError("GOOGLE_PUBSUB_TOPIC is not configured", provider="gmail")
            channel = await adapter.start_watch(access_token, self.settings.GOOGLE_PUBSUB_TOPIC)
            fields = {
                # An existing cursor is kept so changes since the last notification are not skipped
                "watch_history_id": integration.watch_history_id or channel.history_id,
                "watch_expiration": channel.expiration,
            }
        elif integration.provider == Provider.OUTLOOK:
            channel = await adapter.start_watch(
                access_token,
                self.settings.outlook_webhook_url,
                secrets.token_urlsafe(24)
            )
            fields = {
                "watch_channel_id": channel.channel_id,
                "watch_resource_id": channel.resource_id,
                "watch_expiration": channel.expiration,
                "watch_token": channel.token,
                "watch_message_number": None,
            }
        else:
            raise ConfigurationError(
                f"{integration.provider.value} does not support push notifications",
                provider=integration.provider.value
            )

        await self.storage.update_integration(integration, **fields)
        logger.info(
            f"Started {integration.provider.value} watch for integration {integration.id}, "
            f"expires {integration.watch_expiration}"
        )

        if previous.watch_channel_id and previous.watch_channel_id != integration.watch_channel_id:
            try:
                await stop_provider_watch(adapter, access_token, previous)
            except SyncError as e:
                logger.warning(f"Failed to stop previous channel {previous.watch_channel_id}: {e}")

        return integration

    async def stop_watch(self, integration: Integration) -> bool:
        """Cancel the integration's subscription. Returns False if there was none."""
        if not has_watch(integration):
            return False

        adapter = self.registry.get(integration.provider)
        access_token = await self.manager.ensure_fresh_token(integration)
        try:
            await stop_provider_watch(adapter, access_token, integration)
        except ProviderError as e:
            # Already expired or removed on the provider side
            if not e.not_found:
                raise
            logger.warning(f"Watch for integration {integration.id} was already gone: {e}")

        await self.storage.update_integration(integration, **{name: None for name in WATCH_FIELDS})
        logger.info(f"Stopped {integration.provider.value} watch for integration {integration.id}")
        return True

    async def renew_expiring(self, user_id: Optional[str] = None) -> Dict[str, List[str]]:
        """Re-subscribe every active watch expiring within the renewal margin"""
        threshold = utcnow() + timedelta(hours=self.settings.WATCH_RENEWAL_MARGIN_HOURS)
        renewed: List[str] = []
        failed: List[str] = []

        for integration in await self.storage.list_integrations(user_id):
            if not integration.sync_enabled or not integration.watch_expiration:
                continue
            if as_utc(integration.watch_expiration) > threshold:
                continue
            try:
                await self.start_watch(integration)
                renewed.append(integration.id)
            except SyncError as e:
                logger.warning(f"Failed to renew watch for integration {integration.id}: {e}")
                failed.append(integration.id)

        if renewed or failed:
            logger.info(f"Watch renewal: {len(renewed)} renewed, {len(failed)} failed")
        return {"renewed": renewed, "failed": failed}
