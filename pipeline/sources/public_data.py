"""
Client for the small-business store listing API (data.go.kr / odcloud.kr).

One call fetches one page. Retries and per-call timeouts belong to the
calling stage; this client only classifies failures:
- 401/403 → AuthenticationError (fail fast)
- 404 → ResourceNotFoundError (fail fast)
- 429 → RateLimitError (retryable, honours Retry-After)
- 5xx → UpstreamServerError (retryable)
- timeouts and transport errors → NetworkError (retryable)
- unparseable body → MalformedResponseError (fail fast)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    UpstreamAPIError,
    UpstreamServerError,
)

logger = logging.getLogger(__name__)

LEGACY_RESULT_OK = "00"
LEGACY_RESULT_NO_DATA = "03"
LEGACY_RESULT_LIMIT_EXCEEDED = "22"

# Server-side filter column of the open API
OPEN_API_PARTITION_FIELD = "행정동코드"


def format_query_date(value: datetime) -> str:
    return value.strftime("%Y%m%d")


def _as_item_list(items: Any) -> List[Dict[str, Any]]:
    if items is None:
        return []
    if isinstance(items, str):
        # The legacy API answers "" when a page is empty
        return []
    if isinstance(items, dict):
        # ... and a bare object when exactly one item matched
        nested = items.get("item")
        if nested is not None:
            return _as_item_list(nested)
        return [items]
    return [item for item in items if isinstance(item, dict)]


class PublicDataClient:
    """
    Page-level access to the store listing API.

    Attributes:
        api_version: "legacy" (data.go.kr) or "open" (odcloud.kr)
        page_size: Rows requested per page; a shorter page is the last one
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_version: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key or settings.PUBLIC_DATA_API_KEY
        if not self.api_key:
            raise ConfigurationError(
                "PUBLIC_DATA_API_KEY is not configured",
                context={"setting": "PUBLIC_DATA_API_KEY"}
            )
        self.api_version = api_version or settings.PUBLIC_DATA_API_VERSION
        self.page_size = page_size or settings.PUBLIC_DATA_PAGE_SIZE
        self.timeout = timeout or settings.PUBLIC_DATA_TIMEOUT_SECONDS
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Accept": "application/json"}
        )

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def fetch_by_partition(self, partition: str, page: int) -> List[Dict[str, Any]]:
        """One page of stores located in `partition`."""
        context = {"partition": partition, "page": page}
        if self.api_version == "open":
            params = {
                "serviceKey": self.api_key,
                "page": page,
                "perPage": self.page_size,
                f"cond[{OPEN_API_PARTITION_FIELD}::EQ]": partition,
            }
            data = await self._get(settings.PUBLIC_DATA_OPEN_API_URL, params, context)
            return self._extract_open_items(data, context)

        params = {
            "serviceKey": self.api_key,
            "key": partition,
            "type": "json",
            "numOfRows": self.page_size,
            "pageNo": page,
        }
        url = f"{settings.PUBLIC_DATA_LEGACY_BASE_URL}/storeListInDong"
        data = await self._get(url, params, context)
        return self._extract_legacy_items(data, context)

    async def fetch_by_date(self, since: datetime, page: int) -> List[Dict[str, Any]]:
        """One page of stores modified on or after `since` (legacy API only)."""
        query_date = format_query_date(since)
        context = {"last_modified": query_date, "page": page}
        params = {
            "serviceKey": self.api_key,
            "key": query_date,
            "type": "json",
            "numOfRows": self.page_size,
            "pageNo": page,
        }
        url = f"{settings.PUBLIC_DATA_LEGACY_BASE_URL}/storeListByDate"
        data = await self._get(url, params, context)
        return self._extract_legacy_items(data, context)

    async def _get(self, url: str, params: Dict[str, Any], context: Dict[str, Any]) -> Any:
        context = {**context, "api_url": url}
        try:
            response = await self.client.get(url, params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise NetworkError("Upstream request timed out", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise NetworkError("Upstream transport error", context=context, original_exception=e)

        status = response.status_code
        context["status_code"] = status

        if status in (401, 403):
            raise AuthenticationError(f"Authentication failed for {url}", context=context)
        if status == 404:
            raise ResourceNotFoundError(f"Resource not found: {url}", context=context)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limit exceeded for {url}",
                context=context,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if status >= 500:
            raise UpstreamServerError(
                f"Upstream server error {status}",
                context={**context, "response_body": response.text[:500]}
            )
        if status >= 400:
            raise UpstreamAPIError(
                f"Upstream request rejected with {status}",
                context={**context, "response_body": response.text[:500]}
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Failed to parse JSON response",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

    def _extract_legacy_items(self, data: Any, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            raise MalformedResponseError("Unexpected response shape", context=context)

        # data.go.kr sometimes answers without the "response" wrapper
        envelope = data.get("response", data)
        header = envelope.get("header") or {}
        result_code = str(header.get("resultCode", LEGACY_RESULT_OK))

        if result_code == LEGACY_RESULT_NO_DATA:
            return []
        if result_code == LEGACY_RESULT_LIMIT_EXCEEDED:
            raise RateLimitError("Daily request limit exceeded", context=context)
        if result_code != LEGACY_RESULT_OK:
            raise UpstreamAPIError(
                f"Upstream returned result code {result_code}: {header.get('resultMsg')}",
                context=context
            )

        body = envelope.get("body")
        if not isinstance(body, dict):
            logger.error(f"Upstream response has no body for {context}")
            return []

        items = _as_item_list(body.get("items"))
        logger.info(
            f"Upstream returned {len(items)} items "
            f"(totalCount={body.get('totalCount')}) for {context}"
        )
        return items

    def _extract_open_items(self, data: Any, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        if isinstance(data, list):
            return _as_item_list(data)
        if not isinstance(data, dict):
            raise MalformedResponseError("Unexpected response shape", context=context)
        if "data" in data:
            return _as_item_list(data["data"])
        if "response" in data:
            return self._extract_legacy_items(data, context)
        return _as_item_list(data.get("items"))

