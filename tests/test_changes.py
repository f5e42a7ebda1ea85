from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_sync.services.calendar_event import EmailMessage
from crm_sync.sync.architecture import Provider, utcnow
from crm_sync.sync.changes import (
    GmailHistoryStrategy, GmailRecentStrategy, OutlookDeltaStrategy, OutlookRecentStrategy,
    polling_strategy_for, strategy_for
)
from crm_sync.sync.errors import ProviderError
from crm_sync.utils.config import settings
from fakes import make_integration


def message(message_id):
    return EmailMessage(provider_id=message_id, from_email="alice@example.com")


@pytest.fixture
def gmail():
    adapter = MagicMock()
    adapter.list_messages = AsyncMock(return_value=[message("recent-1")])
    adapter.get_profile = AsyncMock(return_value={"emailAddress": "shop@example.com", "historyId": 900})
    adapter.list_history = AsyncMock(return_value=(["m1", "m2"], "950"))
    adapter.get_message = AsyncMock(side_effect=lambda token, message_id: message(message_id))
    return adapter


@pytest.mark.asyncio
async def test_gmail_history_returns_changed_messages(gmail):
    integration = make_integration(provider=Provider.GMAIL, watch_history_id="800")
    strategy = GmailHistoryStrategy(GmailRecentStrategy(10))

    change_set = await strategy.changes(gmail, "token", integration)

    gmail.list_history.assert_awaited_once_with("token", "800")
    assert [m.provider_id for m in change_set.items] == ["m1", "m2"]
    assert change_set.cursor == "950"
    assert change_set.incremental is True


@pytest.mark.asyncio
async def test_gmail_history_skips_deleted_messages(gmail):
    def get_message(token, message_id):
        if message_id == "m1":
            raise ProviderError("gmail", "Not Found", status=404)
        return message(message_id)

    gmail.get_message = AsyncMock(side_effect=get_message)
    integration = make_integration(provider=Provider.GMAIL, watch_history_id="800")

    change_set = await GmailHistoryStrategy(GmailRecentStrategy(10)).changes(gmail, "token", integration)

    assert [m.provider_id for m in change_set.items] == ["m2"]


@pytest.mark.asyncio
async def test_expired_history_falls_back_to_recent_messages(gmail):
    gmail.list_history = AsyncMock(side_effect=ProviderError("gmail", "Requested entity was not found", status=404))
    integration = make_integration(provider=Provider.GMAIL, watch_history_id="1")

    change_set = await GmailHistoryStrategy(GmailRecentStrategy(10)).changes(gmail, "token", integration)

    gmail.list_messages.assert_awaited_once_with("token", max_results=10, label_ids=["INBOX"])
    assert [m.provider_id for m in change_set.items] == ["recent-1"]
    assert change_set.cursor == "900"
    assert change_set.incremental is False


@pytest.mark.asyncio
async def test_history_server_errors_propagate(gmail):
    gmail.list_history = AsyncMock(side_effect=ProviderError("gmail", "Backend Error", status=500))
    integration = make_integration(provider=Provider.GMAIL, watch_history_id="1")

    with pytest.raises(ProviderError):
        await GmailHistoryStrategy(GmailRecentStrategy(10)).changes(gmail, "token", integration)


@pytest.mark.asyncio
async def test_outlook_recent_honours_sync_from_date():
    adapter = MagicMock()
    adapter.list_messages = AsyncMock(return_value=[])
    sync_from = utcnow() - timedelta(days=2)
    integration = make_integration(provider=Provider.OUTLOOK, email_address="me@example.com", sync_from_date=sync_from)

    await OutlookRecentStrategy(30).changes(adapter, "token", integration, limit=5)

    adapter.list_messages.assert_awaited_once_with(
        "token", top=5, received_since=sync_from, mailbox="me@example.com"
    )


@pytest.mark.asyncio
async def test_outlook_delta_starts_new_feed_from_lookback():
    adapter = MagicMock()
    adapter.messages_delta = AsyncMock(return_value=([message("o1")], "https://graph/delta?token=1"))
    integration = make_integration(provider=Provider.OUTLOOK, email_address="me@example.com")

    change_set = await OutlookDeltaStrategy(OutlookRecentStrategy(30)).changes(adapter, "token", integration)

    kwargs = adapter.messages_delta.call_args.kwargs
    assert kwargs["received_since"] is not None
    assert change_set.cursor == "https://graph/delta?token=1"
    assert change_set.incremental is False


@pytest.mark.asyncio
async def test_outlook_expired_delta_link_falls_back_and_clears_cursor():
    adapter = MagicMock()
    adapter.messages_delta = AsyncMock(side_effect=ProviderError("outlook", "SyncStateNotFound", status=410))
    adapter.list_messages = AsyncMock(return_value=[message("o2")])
    integration = make_integration(provider=Provider.OUTLOOK, delta_link="https://graph/delta?token=old")

    change_set = await OutlookDeltaStrategy(OutlookRecentStrategy(30)).changes(adapter, "token", integration)

    assert [m.provider_id for m in change_set.items] == ["o2"]
    assert change_set.cursor == ""


def test_strategy_selection():
    gmail = make_integration(provider=Provider.GMAIL)
    outlook = make_integration(provider=Provider.OUTLOOK)

    assert isinstance(strategy_for(gmail, settings), GmailHistoryStrategy)
    assert isinstance(strategy_for(outlook, settings), OutlookDeltaStrategy)
    assert isinstance(polling_strategy_for(gmail, settings), GmailRecentStrategy)
    assert isinstance(polling_strategy_for(outlook, settings), OutlookRecentStrategy)
    with pytest.raises(ValueError):
        strategy_for(make_integration(provider=Provider.GMB), settings)
