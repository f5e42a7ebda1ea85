import logging
import uuid
from typing import Optional

from crm_sync.services.business_profile import resource_suffix
from crm_sync.services.calendar_event import BusinessReview
from crm_sync.sync.architecture import EntityType, Integration, Provider, Review, SyncResult, utcnow
from crm_sync.sync.errors import ConfigurationError, EntityNotFound
from crm_sync.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


def review_record_id(integration_id: str, provider_review_id: str) -> str:
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{integration_id}/review/{provider_review_id}").hex


class ReviewSyncController:
    """Google Business Profile reviews: import and reply"""

    def __init__(self, storage: SyncStorageManager, manager, registry):
        self.storage = storage
        self.manager = manager
        self.registry = registry

    @property
    def adapter(self):
        return self.registry.get(Provider.GMB)

    async def _ensure_location(self, integration: Integration, access_token: str) -> None:
        if integration.business_account_id and integration.business_location_id:
            return

        accounts = await self.adapter.list_accounts(access_token)
        if not accounts:
            raise ConfigurationError("No Google Business Profile account found", provider=Provider.GMB.value)
        account_id = resource_suffix(accounts[0]["name"])

        locations = await self.adapter.list_locations(access_token, account_id)
        if not locations:
            raise ConfigurationError("No Google Business Profile location found", provider=Provider.GMB.value)

        await self.storage.update_integration(
            integration,
            business_account_id=account_id,
            business_location_id=resource_suffix(locations[0]["name"]),
            resource_id=locations[0]["name"]
        )

    async def sync_reviews(self, user_id: str, integration_id: Optional[str] = None) -> SyncResult:
        """Upsert every review of the integration's location"""
        integration = await self.manager.get_integration(user_id, Provider.GMB, integration_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        await self._ensure_location(integration, access_token)

        reviews = await self.adapter.list_reviews(
            access_token,
            integration.business_account_id,
            integration.business_location_id,
            page_size=50
        )
        logger.info(f"Fetched {len(reviews)} reviews for integration {integration.id}")

        result = SyncResult()
        for review in reviews:
            try:
                created = await self._upsert_review(integration, review)
            except Exception as e:
                logger.error(f"Error processing review {review.review_id}: {e}")
                result.errors.append(f"{review.review_id}: {e}")
                continue
            if created:
                result.synced += 1
            else:
                result.updated += 1

        try:
            await self.storage.update_integration(integration, last_sync_at=utcnow())
        except Exception as e:
            logger.warning(f"Failed to update last_sync_at for integration {integration.id}: {e}")
        return result

    async def _upsert_review(self, integration: Integration, review: BusinessReview) -> bool:
        async with self.storage.lock(f"external:{integration.id}:{review.review_id}"):
            link = await self.storage.get_link_by_external_id(integration.id, review.review_id)
            record = await self.storage.get_review(link.entity_id) if link else None
            created = record is None

            if record is None:
                record = Review(
                    id=review_record_id(integration.id, review.review_id),
                    user_id=integration.user_id,
                    integration_id=integration.id,
                    provider_review_id=review.review_id
                )

            record.reviewer_name = review.reviewer_name
            record.reviewer_photo_url = review.reviewer_photo_url
            record.rating = review.rating
            record.comment = review.comment
            record.reply_text = review.reply_text
            record.replied_at = review.reply_updated_at
            record.review_created_at = review.created_at
            record.review_updated_at = review.updated_at
            await self.storage.save_review(record)

            if not link:
                link, _ = await self.storage.claim_link(integration.id, EntityType.REVIEW, record.id)
                await self.storage.link_external(link, review.review_id)
            return created

    async def reply_to_review(self, user_id: str, review_id: str, reply_text: str) -> Review:
        review = await self.storage.get_review(review_id)
        if not review or review.user_id != user_id:
            raise EntityNotFound("Review not found", reviewId=review_id)

        integration = await self.manager.get_integration(user_id, Provider.GMB, review.integration_id)
        access_token = await self.manager.ensure_fresh_token(integration)
        await self._ensure_location(integration, access_token)

        await self.adapter.reply_to_review(
            access_token,
            integration.business_account_id,
            integration.business_location_id,
            review.provider_review_id,
            reply_text
        )

        review.reply_text = reply_text
        review.replied_at = utcnow()
        try:
            await self.storage.save_review(review)
        except Exception as e:
            logger.warning(f"Replied to review {review.provider_review_id} but failed to store the reply: {e}")
        return review
