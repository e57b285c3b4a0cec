"""
Downstream notifications after publishing.

- RevalidationClient: asks the serving layer to rebuild a pre-rendered page
- IndexNowClient: pushes new URLs to search engines (partial success is fine)
"""

import asyncio
import logging
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from core.config import settings
from core.retry import with_timeout

logger = logging.getLogger(__name__)

INDEXNOW_ENDPOINTS = (
    "https://api.indexnow.org/IndexNow",
    "https://www.bing.com/indexnow",
    "https://yandex.com/indexnow",
)


def place_url(site_url: str, slug: str) -> str:
    return f"{site_url.rstrip('/')}/shop/{slug}"


class RevalidationClient:
    def __init__(
        self,
        site_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.site_url = site_url.rstrip("/")
        self.api_key = api_key
        self.client = client
        self.timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS

    async def revalidate(self, slug: str) -> None:
        """POST {slug} to the revalidation endpoint. Raises on failure."""
        url = f"{self.site_url}{settings.REVALIDATE_PATH}"
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async def _post(client: httpx.AsyncClient):
            response = await client.post(url, json={"slug": slug}, headers=headers)
            response.raise_for_status()

        if self.client is not None:
            await with_timeout(_post(self.client), self.timeout, f"revalidate {slug}")
        else:
            async with httpx.AsyncClient() as client:
                await with_timeout(_post(client), self.timeout, f"revalidate {slug}")


class IndexNowClient:
    def __init__(
        self,
        key: str,
        site_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        endpoints=INDEXNOW_ENDPOINTS
    ):
        self.key = key
        self.host = urlparse(site_url).netloc or site_url
        self.client = client
        self.timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS
        self.endpoints = endpoints

    async def _submit_one(self, client: httpx.AsyncClient, endpoint: str, urls: List[str]) -> None:
        body = {"host": self.host, "key": self.key, "urlList": urls}
        response = await with_timeout(
            client.post(endpoint, json=body),
            self.timeout,
            f"indexnow {endpoint}"
        )
        response.raise_for_status()

    async def submit(self, urls: List[str]) -> int:
        """Notify every endpoint concurrently. Returns how many accepted the list."""
        if not urls:
            return 0

        async def _run(client: httpx.AsyncClient):
            return await asyncio.gather(
                *(self._submit_one(client, endpoint, urls) for endpoint in self.endpoints),
                return_exceptions=True
            )

        if self.client is not None:
            results = await _run(self.client)
        else:
            async with httpx.AsyncClient() as client:
                results = await _run(client)

        succeeded = 0
        for endpoint, result in zip(self.endpoints, results):
            if isinstance(result, Exception):
                logger.warning(f"IndexNow submission to {endpoint} failed: {result}")
            else:
                succeeded += 1

        logger.info(f"IndexNow: {len(urls)} URLs accepted by {succeeded}/{len(self.endpoints)} endpoints")
        return succeeded
