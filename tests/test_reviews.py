from unittest.mock import AsyncMock, MagicMock

import pytest

from crm_sync.services.calendar_event import BusinessReview
from crm_sync.services.providers import ProviderRegistry
from crm_sync.sync.architecture import Provider
from crm_sync.sync.errors import ConfigurationError, EntityNotFound
from crm_sync.sync.reviews import ReviewSyncController, review_record_id
from crm_sync.sync.token_manager import IntegrationManager
from fakes import make_integration


@pytest.fixture
def gmb():
    adapter = MagicMock()
    adapter.list_accounts = AsyncMock(return_value=[{"name": "accounts/111"}])
    adapter.list_locations = AsyncMock(return_value=[{"name": "locations/222", "title": "Garage"}])
    adapter.list_reviews = AsyncMock(return_value=[
        BusinessReview.from_gmb({
            "reviewId": "r1",
            "reviewer": {"displayName": "Bob"},
            "starRating": "FIVE",
            "comment": "Great service",
            "createTime": "2026-01-10T09:00:00Z",
            "updateTime": "2026-01-10T09:00:00Z",
        })
    ])
    adapter.reply_to_review = AsyncMock()
    return adapter


@pytest.fixture
def reviews(storage, gmb):
    registry = ProviderRegistry({Provider.GMB: gmb})
    return ReviewSyncController(storage, IntegrationManager(storage, registry), registry)


@pytest.mark.asyncio
async def test_sync_discovers_location_and_upserts_reviews(storage, reviews, gmb):
    integration = make_integration(provider=Provider.GMB)
    await storage.save_integration(integration)

    first = await reviews.sync_reviews("user-1")
    second = await reviews.sync_reviews("user-1")

    assert (first.synced, first.updated) == (1, 0)
    assert (second.synced, second.updated) == (0, 1)
    gmb.list_reviews.assert_awaited_with("access-token", "111", "222", page_size=50)
    gmb.list_accounts.assert_awaited_once()

    stored = await storage.get_review(review_record_id(integration.id, "r1"))
    assert stored.rating == 5
    assert stored.reviewer_name == "Bob"
    assert len(await storage.list_reviews("user-1")) == 1


@pytest.mark.asyncio
async def test_sync_without_location_is_a_configuration_error(storage, reviews, gmb):
    await storage.save_integration(make_integration(provider=Provider.GMB))
    gmb.list_locations.return_value = []

    with pytest.raises(ConfigurationError):
        await reviews.sync_reviews("user-1")


@pytest.mark.asyncio
async def test_reply_is_posted_and_stored(storage, reviews, gmb):
    integration = make_integration(
        provider=Provider.GMB, business_account_id="111", business_location_id="222"
    )
    await storage.save_integration(integration)
    await reviews.sync_reviews("user-1")
    review_id = review_record_id(integration.id, "r1")

    review = await reviews.reply_to_review("user-1", review_id, "Thanks Bob!")

    gmb.reply_to_review.assert_awaited_once_with("access-token", "111", "222", "r1", "Thanks Bob!")
    assert review.reply_text == "Thanks Bob!"
    assert (await storage.get_review(review_id)).replied_at is not None


@pytest.mark.asyncio
async def test_reply_to_unknown_review(storage, reviews):
    with pytest.raises(EntityNotFound):
        await reviews.reply_to_review("user-1", "missing", "Thanks")
