"""
Dependency providers shared by the routers.

A storage manager is opened per request; everything else is built on top of it.
"""

from fastapi import Depends

from crm_sync.services.providers import ProviderRegistry
from crm_sync.sync.conflicts import ConflictChecker
from crm_sync.sync.controller import CalendarSyncController
from crm_sync.sync.mailbox import MailboxSyncController
from crm_sync.sync.reviews import ReviewSyncController
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.sync.token_manager import IntegrationManager
from crm_sync.sync.watches import WatchManager
from crm_sync.sync.webhooks import WebhookReceiver
from crm_sync.utils.config import settings

_registry = None


async def get_storage():
    """Create and initialize a storage manager"""
    storage = SyncStorageManager()
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.close()


def get_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry.from_settings(settings)
    return _registry


def get_integration_manager(
    storage: SyncStorageManager = Depends(get_storage),
    registry: ProviderRegistry = Depends(get_registry)
) -> IntegrationManager:
    return IntegrationManager(storage, registry)


def get_calendar_controller(
    storage: SyncStorageManager = Depends(get_storage),
    manager: IntegrationManager = Depends(get_integration_manager),
    registry: ProviderRegistry = Depends(get_registry)
) -> CalendarSyncController:
    return CalendarSyncController(storage, manager, registry)


def get_mailbox_controller(
    storage: SyncStorageManager = Depends(get_storage),
    manager: IntegrationManager = Depends(get_integration_manager),
    registry: ProviderRegistry = Depends(get_registry)
) -> MailboxSyncController:
    return MailboxSyncController(storage, manager, registry)


def get_review_controller(
    storage: SyncStorageManager = Depends(get_storage),
    manager: IntegrationManager = Depends(get_integration_manager),
    registry: ProviderRegistry = Depends(get_registry)
) -> ReviewSyncController:
    return ReviewSyncController(storage, manager, registry)


def get_watch_manager(
    storage: SyncStorageManager = Depends(get_storage),
    manager: IntegrationManager = Depends(get_integration_manager),
    registry: ProviderRegistry = Depends(get_registry)
) -> WatchManager:
    return WatchManager(storage, manager, registry)


def get_conflict_checker(
    storage: SyncStorageManager = Depends(get_storage),
    calendar: CalendarSyncController = Depends(get_calendar_controller)
) -> ConflictChecker:
    return ConflictChecker(storage, calendar)


def get_webhook_receiver(
    storage: SyncStorageManager = Depends(get_storage),
    calendar: CalendarSyncController = Depends(get_calendar_controller),
    mailbox: MailboxSyncController = Depends(get_mailbox_controller)
) -> WebhookReceiver:
    return WebhookReceiver(storage, calendar, mailbox)
