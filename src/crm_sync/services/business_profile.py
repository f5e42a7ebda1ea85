import logging
from typing import Any, Callable, Dict, List, Optional

from crm_sync.auth.google_auth import GoogleOAuthClient
from crm_sync.services.calendar_event import BusinessReview
from crm_sync.services.http_client import JsonHttpClient
from crm_sync.sync.architecture import Provider, TokenSet

# Set up logging
logger = logging.getLogger(__name__)

ACCOUNTS_URL = "https://mybusinessaccountmanagement.googleapis.com/v1/accounts"
LOCATIONS_URL = "https://mybusinessbusinessinformation.googleapis.com/v1/accounts/{account_id}/locations"
REVIEWS_URL = "https://mybusiness.googleapis.com/v4/accounts/{account_id}/locations/{location_id}/reviews"

LOCATION_READ_MASK = "name,title,phoneNumbers,websiteUri,storefrontAddress"


def resource_suffix(name: str) -> str:
    """Last path segment of a resource name ("accounts/123" -> "123")"""
    return name.rstrip("/").rsplit("/", 1)[-1]


class BusinessProfileService:
    """Google Business Profile adapter (accounts, locations and reviews)"""

    provider = Provider.GMB

    def __init__(
        self,
        auth: GoogleOAuthClient,
        client_factory: Optional[Callable[[str], JsonHttpClient]] = None
    ):
        self.auth = auth
        self.client_factory = client_factory or (
            lambda access_token: JsonHttpClient(self.provider.value, access_token)
        )

    def _client(self, access_token: str) -> JsonHttpClient:
        return self.client_factory(access_token)

    async def exchange_code(self, code: str) -> TokenSet:
        return await self.auth.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self.auth.refresh(refresh_token)

    async def list_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        response = await self._client(access_token).get(ACCOUNTS_URL)
        return (response or {}).get("accounts", [])

    async def list_locations(self, access_token: str, account_id: str) -> List[Dict[str, Any]]:
        response = await self._client(access_token).get(
            LOCATIONS_URL.format(account_id=account_id),
            params={"readMask": LOCATION_READ_MASK}
        )
        return (response or {}).get("locations", [])

    async def list_reviews(
        self,
        access_token: str,
        account_id: str,
        location_id: str,
        page_size: int = 50
    ) -> List[BusinessReview]:
        """All reviews of a location, following page tokens"""
        client = self._client(access_token)
        url = REVIEWS_URL.format(account_id=account_id, location_id=location_id)
        params = {"pageSize": page_size}

        reviews = []
        while True:
            response = await client.get(url, params=params) or {}
            for review in response.get("reviews", []):
                try:
                    reviews.append(BusinessReview.from_gmb(review))
                except (KeyError, ValueError) as e:
                    logger.error(f"Error processing review {review.get('reviewId')}: {e}")

            page_token = response.get("nextPageToken")
            if not page_token:
                return reviews
            params["pageToken"] = page_token

    async def reply_to_review(
        self,
        access_token: str,
        account_id: str,
        location_id: str,
        review_id: str,
        reply_text: str
    ) -> None:
        url = REVIEWS_URL.format(account_id=account_id, location_id=location_id)
        await self._client(access_token).put(f"{url}/{review_id}/reply", json={"comment": reply_text})

    async def delete_reply(self, access_token: str, account_id: str, location_id: str, review_id: str) -> None:
        url = REVIEWS_URL.format(account_id=account_id, location_id=location_id)
        await self._client(access_token).delete(f"{url}/{review_id}/reply")
