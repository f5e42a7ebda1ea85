"""
Changed-since strategies

A strategy answers "what changed on the provider since the last sync" for one
integration. Incremental strategies use the provider's cursor (Gmail history ID,
Graph delta link) and fall back to bounded polling when there is no cursor yet or
the provider reports it expired.
"""

import logging
from datetime import timedelta
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from crm_sync.sync.architecture import Integration, Provider, as_utc, utcnow
from crm_sync.sync.errors import ProviderError

# Set up logging
logger = logging.getLogger(__name__)


class ChangeSet(BaseModel):
    """Provider resources that may have changed, plus the cursor to resume from"""
    items: List[Any] = Field(default_factory=list)
    cursor: Optional[str] = None
    incremental: bool = False


class ChangeStrategy:
    async def changes(
        self,
        adapter: Any,
        access_token: str,
        integration: Integration,
        limit: Optional[int] = None
    ) -> ChangeSet:
        raise NotImplementedError


class BoundedWindowStrategy(ChangeStrategy):
    """Calendar events in [now, now + window_days]"""

    def __init__(self, window_days: int):
        self.window_days = window_days

    async def changes(self, adapter, access_token, integration, limit=None) -> ChangeSet:
        now = utcnow()
        events = await adapter.list_events(
            access_token,
            integration.resource_id or "primary",
            now,
            now + timedelta(days=self.window_days)
        )
        return ChangeSet(items=events)


class GmailRecentStrategy(ChangeStrategy):
    """The most recent INBOX messages"""

    def __init__(self, max_results: int):
        self.max_results = max_results

    async def changes(self, adapter, access_token, integration, limit=None) -> ChangeSet:
        messages = await adapter.list_messages(
            access_token, max_results=limit or self.max_results, label_ids=["INBOX"]
        )
        profile = await adapter.get_profile(access_token)
        history_id = profile.get("historyId")
        return ChangeSet(items=messages, cursor=str(history_id) if history_id else None)


class GmailHistoryStrategy(ChangeStrategy):
    """Messages touched since the stored history ID"""

    def __init__(self, fallback: ChangeStrategy):
        self.fallback = fallback

    async def changes(self, adapter, access_token, integration, limit=None) -> ChangeSet:
        if not integration.watch_history_id:
            return await self.fallback.changes(adapter, access_token, integration, limit)

        try:
            message_ids, latest = await adapter.list_history(access_token, integration.watch_history_id)
        except ProviderError as e:
            if not e.not_found:
                raise
            logger.warning(
                f"History ID {integration.watch_history_id} expired for integration {integration.id}, "
                f"falling back to recent messages"
            )
            return await self.fallback.changes(adapter, access_token, integration, limit)

        messages = []
        for message_id in message_ids:
            try:
                messages.append(await adapter.get_message(access_token, message_id))
            except ProviderError as e:
                # Deleted between the history record and now
                if not e.not_found:
                    raise
        return ChangeSet(items=messages, cursor=latest or integration.watch_history_id, incremental=True)


class OutlookRecentStrategy(ChangeStrategy):
    """Messages received since the last sync, bounded by the lookback window"""

    def __init__(self, lookback_days: int, top: int = 50):
        self.lookback_days = lookback_days
        self.top = top

    def since(self, integration: Integration):
        if integration.sync_from_date:
            return as_utc(integration.sync_from_date)
        return utcnow() - timedelta(days=self.lookback_days)

    async def changes(self, adapter, access_token, integration, limit=None) -> ChangeSet:
        messages = await adapter.list_messages(
            access_token,
            top=limit or self.top,
            received_since=self.since(integration),
            mailbox=integration.email_address
        )
        return ChangeSet(items=messages)


class OutlookDeltaStrategy(ChangeStrategy):
    """Inbox delta feed from the stored delta link"""

    def __init__(self, fallback: OutlookRecentStrategy):
        self.fallback = fallback

    async def changes(self, adapter, access_token, integration, limit=None) -> ChangeSet:
        try:
            messages, delta_link = await adapter.messages_delta(
                access_token,
                integration.delta_link,
                mailbox=integration.email_address,
                received_since=None if integration.delta_link else self.fallback.since(integration)
            )
        except ProviderError as e:
            if not (e.not_found and integration.delta_link):
                raise
            logger.warning(f"Delta link expired for integration {integration.id}, falling back to recent messages")
            change_set = await self.fallback.changes(adapter, access_token, integration, limit)
            # Drop the stale link so the next run starts a new feed
            change_set.cursor = ""
            return change_set

        return ChangeSet(items=messages, cursor=delta_link, incremental=bool(integration.delta_link))


def strategy_for(integration: Integration, settings) -> ChangeStrategy:
    """Incremental strategy used for push notifications"""
    if integration.provider == Provider.CALENDAR:
        return BoundedWindowStrategy(settings.TWO_WAY_SYNC_WINDOW_DAYS)
    if integration.provider == Provider.GMAIL:
        return GmailHistoryStrategy(GmailRecentStrategy(settings.GMAIL_WEBHOOK_MAX_RESULTS))
    if integration.provider == Provider.OUTLOOK:
        return OutlookDeltaStrategy(OutlookRecentStrategy(settings.OUTLOOK_SYNC_LOOKBACK_DAYS))
    raise ValueError(f"No change strategy for {integration.provider.value}")


def polling_strategy_for(integration: Integration, settings) -> ChangeStrategy:
    """Bounded strategy used by the manual sync endpoints"""
    if integration.provider == Provider.GMAIL:
        return GmailRecentStrategy(settings.GMAIL_WEBHOOK_MAX_RESULTS)
    if integration.provider == Provider.OUTLOOK:
        return OutlookRecentStrategy(settings.OUTLOOK_SYNC_LOOKBACK_DAYS)
    return strategy_for(integration, settings)
