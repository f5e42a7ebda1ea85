import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_sync.services.providers import ProviderRegistry
from crm_sync.sync.architecture import Provider, TokenSet, utcnow
from crm_sync.sync.errors import IntegrationNotFound, ReauthorizationRequired
from crm_sync.sync.token_manager import IntegrationManager
from fakes import make_integration


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(storage, manager, calendar):
    integration = make_integration()
    await storage.save_integration(integration)

    assert await manager.ensure_fresh_token(integration) == "access-token"
    assert calendar.refresh_calls == 0


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_persisted(storage, manager, calendar):
    integration = make_integration(token_expiry=utcnow() - timedelta(minutes=5))
    await storage.save_integration(integration)

    token = await manager.ensure_fresh_token(integration)

    assert token == "fresh-token-1"
    assert integration.access_token == "fresh-token-1"
    stored = await storage.get_integration(integration.id)
    assert stored.access_token == "fresh-token-1"
    assert not stored.token_expired()
    assert stored.refresh_token == "refresh-token"


@pytest.mark.asyncio
async def test_concurrent_refreshes_call_provider_once(storage, manager, calendar):
    integration = make_integration(token_expiry=utcnow() - timedelta(minutes=5))
    await storage.save_integration(integration)

    # Each request loads its own copy of the record
    copies = [await storage.get_integration(integration.id) for _ in range(5)]
    tokens = await asyncio.gather(*(manager.ensure_fresh_token(copy) for copy in copies))

    assert calendar.refresh_calls == 1
    assert set(tokens) == {"fresh-token-1"}


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored(storage):
    adapter = MagicMock()
    adapter.refresh = AsyncMock(return_value=TokenSet(
        access_token="new-access",
        refresh_token="rotated-refresh",
        expires_at=utcnow() + timedelta(hours=1)
    ))
    manager = IntegrationManager(storage, ProviderRegistry({Provider.OUTLOOK: adapter}))
    integration = make_integration(provider=Provider.OUTLOOK, token_expiry=utcnow() - timedelta(seconds=1))
    await storage.save_integration(integration)

    await manager.ensure_fresh_token(integration)

    adapter.refresh.assert_awaited_once_with("refresh-token")
    assert (await storage.get_integration(integration.id)).refresh_token == "rotated-refresh"


@pytest.mark.asyncio
async def test_rejected_refresh_token_requires_reauthorization(storage):
    adapter = MagicMock()
    adapter.refresh = AsyncMock(side_effect=ReauthorizationRequired("revoked", provider="gmail"))
    manager = IntegrationManager(storage, ProviderRegistry({Provider.GMAIL: adapter}))
    integration = make_integration(provider=Provider.GMAIL, token_expiry=utcnow() - timedelta(seconds=1))
    await storage.save_integration(integration)

    with pytest.raises(ReauthorizationRequired) as exc_info:
        await manager.ensure_fresh_token(integration)

    assert exc_info.value.integration_id == integration.id
    assert exc_info.value.to_response()["reauthorizationRequired"] is True
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauthorization(storage, manager, calendar):
    integration = make_integration(refresh_token=None, token_expiry=utcnow() - timedelta(seconds=1))
    await storage.save_integration(integration)

    with pytest.raises(ReauthorizationRequired):
        await manager.ensure_fresh_token(integration)
    assert calendar.refresh_calls == 0


@pytest.mark.asyncio
async def test_get_integration_checks_owner(storage, manager):
    integration = make_integration(user_id="owner")
    await storage.save_integration(integration)

    assert (await manager.get_integration("owner", Provider.CALENDAR)).id == integration.id
    assert (await manager.get_integration("owner", Provider.CALENDAR, integration.id)).id == integration.id
    with pytest.raises(IntegrationNotFound):
        await manager.get_integration("someone-else", Provider.CALENDAR, integration.id)
    with pytest.raises(IntegrationNotFound):
        await manager.get_integration("owner", Provider.GMAIL)


@pytest.mark.asyncio
async def test_connect_stores_gmail_integration(storage):
    adapter = MagicMock()
    adapter.exchange_code = AsyncMock(return_value=TokenSet(
        access_token="a1", refresh_token="r1", expires_at=utcnow() + timedelta(hours=1)
    ))
    adapter.get_profile = AsyncMock(return_value={"emailAddress": "shop@example.com", "historyId": "9"})
    manager = IntegrationManager(storage, ProviderRegistry({Provider.GMAIL: adapter}))

    integration = await manager.connect("user-1", Provider.GMAIL, "code")
    again = await manager.connect("user-1", Provider.GMAIL, "code")

    assert integration.email_address == "shop@example.com"
    assert again.id == integration.id
    assert (await storage.find_integration_by_mailbox(Provider.GMAIL, "SHOP@example.com")).id == integration.id


@pytest.mark.asyncio
async def test_disconnect_stops_watch_and_deletes(storage, manager, calendar):
    integration = make_integration(watch_channel_id="channel-1", watch_resource_id="res-1")
    await storage.save_integration(integration)

    await manager.disconnect(integration)

    assert calendar.stopped_channels == ["channel-1"]
    assert await storage.get_integration(integration.id) is None
