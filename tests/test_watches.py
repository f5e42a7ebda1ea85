from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_sync.services.calendar_event import WatchChannel
from crm_sync.services.providers import ProviderRegistry
from crm_sync.sync.architecture import Provider, utcnow
from crm_sync.sync.errors import ConfigurationError, ProviderError
from crm_sync.sync.token_manager import IntegrationManager
from crm_sync.sync.watches import WatchManager
from crm_sync.utils.config import Settings
from fakes import make_integration


@pytest.fixture
def watch_settings():
    return Settings(
        PUBLIC_BASE_URL="https://crm.example.com",
        GOOGLE_PUBSUB_TOPIC="projects/crm/topics/gmail",
        _env_file=None
    )


@pytest.fixture
def watches(storage, manager, registry, watch_settings):
    return WatchManager(storage, manager, registry, watch_settings)


@pytest.mark.asyncio
async def test_calendar_watch_is_recorded(storage, watches):
    integration = make_integration()
    await storage.save_integration(integration)

    await watches.start_watch(integration)

    stored = await storage.get_integration(integration.id)
    assert stored.watch_channel_id.startswith("channel-")
    assert stored.watch_resource_id == f"res-{stored.watch_channel_id}"
    assert stored.watch_token
    assert stored.watch_expiration > utcnow() + timedelta(days=6)
    assert (await storage.find_integration_by_channel(stored.watch_channel_id)).id == integration.id


@pytest.mark.asyncio
async def test_restarting_watch_stops_previous_channel(storage, watches, calendar):
    integration = make_integration(watch_channel_id="old-channel", watch_resource_id="old-res")
    await storage.save_integration(integration)

    await watches.start_watch(integration)

    assert calendar.stopped_channels == ["old-channel"]
    assert await storage.find_integration_by_channel("old-channel") is None


@pytest.mark.asyncio
async def test_stop_watch_clears_fields(storage, watches, calendar):
    integration = make_integration()
    await storage.save_integration(integration)
    await watches.start_watch(integration)
    channel_id = integration.watch_channel_id

    assert await watches.stop_watch(integration) is True
    assert calendar.stopped_channels == [channel_id]
    stored = await storage.get_integration(integration.id)
    assert stored.watch_channel_id is None
    assert stored.watch_expiration is None

    assert await watches.stop_watch(stored) is False


@pytest.mark.asyncio
async def test_stop_watch_ignores_channel_gone_on_provider(storage, manager, watch_settings):
    adapter = MagicMock()
    adapter.stop_watch = AsyncMock(side_effect=ProviderError("outlook", "Not Found", status=404))
    registry = ProviderRegistry({Provider.OUTLOOK: adapter})
    watches = WatchManager(storage, IntegrationManager(storage, registry), registry, watch_settings)
    integration = make_integration(provider=Provider.OUTLOOK, watch_channel_id="sub-1")
    await storage.save_integration(integration)

    assert await watches.stop_watch(integration) is True
    assert (await storage.get_integration(integration.id)).watch_channel_id is None


@pytest.mark.asyncio
async def test_gmail_watch_keeps_existing_history_cursor(storage, watch_settings):
    adapter = MagicMock()
    adapter.start_watch = AsyncMock(return_value=WatchChannel(
        history_id="999", expiration=utcnow() + timedelta(days=7)
    ))
    registry = ProviderRegistry({Provider.GMAIL: adapter})
    watches = WatchManager(storage, IntegrationManager(storage, registry), registry, watch_settings)
    integration = make_integration(provider=Provider.GMAIL, email_address="shop@example.com", watch_history_id="500")
    await storage.save_integration(integration)

    await watches.start_watch(integration)

    adapter.start_watch.assert_awaited_once_with("access-token", "projects/crm/topics/gmail")
    stored = await storage.get_integration(integration.id)
    assert stored.watch_history_id == "500"
    assert stored.watch_expiration is not None


@pytest.mark.asyncio
async def test_gmail_watch_requires_topic(storage):
    registry = ProviderRegistry({Provider.GMAIL: MagicMock()})
    watches = WatchManager(
        storage, IntegrationManager(storage, registry), registry,
        Settings(GOOGLE_PUBSUB_TOPIC="", _env_file=None)
    )
    integration = make_integration(provider=Provider.GMAIL)
    await storage.save_integration(integration)

    with pytest.raises(ConfigurationError):
        await watches.start_watch(integration)


@pytest.mark.asyncio
async def test_outlook_watch_uses_webhook_url(storage, watch_settings):
    adapter = MagicMock()
    adapter.start_watch = AsyncMock(side_effect=lambda token, url, state: WatchChannel(
        channel_id="sub-9", expiration=utcnow() + timedelta(days=2), token=state
    ))
    registry = ProviderRegistry({Provider.OUTLOOK: adapter})
    watches = WatchManager(storage, IntegrationManager(storage, registry), registry, watch_settings)
    integration = make_integration(provider=Provider.OUTLOOK)
    await storage.save_integration(integration)

    await watches.start_watch(integration)

    args = adapter.start_watch.call_args.args
    assert args[1] == "https://crm.example.com/api/webhooks/outlook"
    stored = await storage.get_integration(integration.id)
    assert stored.watch_channel_id == "sub-9"
    assert stored.watch_token == args[2]


@pytest.mark.asyncio
async def test_renew_expiring_only_touches_due_watches(storage, watches):
    due = make_integration(watch_channel_id="c-due", watch_resource_id="r", watch_expiration=utcnow() + timedelta(hours=2))
    later = make_integration(watch_channel_id="c-later", watch_resource_id="r", watch_expiration=utcnow() + timedelta(days=5))
    unwatched = make_integration()
    for integration in (due, later, unwatched):
        await storage.save_integration(integration)

    result = await watches.renew_expiring()

    assert result == {"renewed": [due.id], "failed": []}
    assert (await storage.get_integration(later.id)).watch_channel_id == "c-later"
    assert (await storage.get_integration(due.id)).watch_channel_id != "c-due"
