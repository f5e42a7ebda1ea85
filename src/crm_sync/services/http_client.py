"""
HTTP helpers for provider APIs

JsonHttpClient is a small aiohttp wrapper for the REST APIs that have no maintained
Python client (Microsoft Graph, Google Business Profile). provider_error converts
googleapiclient failures into typed ProviderErrors.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp
from googleapiclient.errors import HttpError

from crm_sync.sync.errors import ProviderError

# Set up logging
logger = logging.getLogger(__name__)


def provider_error(provider: str, error: HttpError) -> ProviderError:
    """Build a ProviderError carrying the HTTP status of a googleapiclient error"""
    status = getattr(error.resp, "status", None)
    return ProviderError(provider, str(error), status=int(status) if status else None)


class JsonHttpClient:
    """Bearer-authenticated JSON client bound to one access token"""

    def __init__(self, provider: str, access_token: str, base_url: str = "", timeout: int = 30):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {access_token}"}
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, path: str) -> str:
        # Absolute URLs (paging and delta links) are used as-is
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        url = self._url(path)
        try:
            async with aiohttp.ClientSession(headers=self.headers, timeout=self.timeout) as session:
                async with session.request(method, url, params=params, json=json) as response:
                    if response.status >= 400:
                        detail = await response.text()
                        logger.error(f"{self.provider} {method} {url} failed with {response.status}: {detail}")
                        raise ProviderError(self.provider, detail or response.reason, status=response.status)

                    if response.status == 204 or response.content_length == 0:
                        return None
                    return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error(f"{self.provider} {method} {url} failed: {e}")
            raise ProviderError(self.provider, str(e)) from e

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return await self.request("PUT", path, json=json)

    async def patch(self, path: str, json: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return await self.request("PATCH", path, json=json)

    async def delete(self, path: str) -> Optional[Dict[str, Any]]:
        return await self.request("DELETE", path)
