import pytest

from crm_sync.services.providers import ProviderRegistry
from crm_sync.sync.architecture import Provider
from crm_sync.sync.storage import SyncStorageManager
from crm_sync.sync.token_manager import IntegrationManager

from fakes import FakeCalendar


@pytest.fixture
def storage(tmp_path):
    """File-backed storage in a temporary directory"""
    return SyncStorageManager(use_redis=False, storage_path=str(tmp_path / "storage"))


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def registry(calendar):
    return ProviderRegistry({Provider.CALENDAR: calendar})


@pytest.fixture
def manager(storage, registry):
    return IntegrationManager(storage, registry)
