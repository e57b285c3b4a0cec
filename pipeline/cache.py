"""
Read-side response cache kept in the durable key-value store.

The read API (outside this package) fills these entries; the publish
stage invalidates them when a place goes live.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pipeline.kv import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "cache"
DETAIL_PREFIX = "shop:detail:"
LIST_PREFIX = "shop:list:"
DETAIL_TTL_SECONDS = 3600
LIST_TTL_SECONDS = 300


def detail_key(slug: str) -> str:
    return f"{DETAIL_PREFIX}{slug}"


def list_key(params: Dict[str, Any]) -> str:
    return f"{LIST_PREFIX}{json.dumps(params, sort_keys=True, ensure_ascii=False)}"


class ReadCache:
    def __init__(self, db_session: AsyncSession):
        self.kv = KeyValueStore(db_session, CACHE_NAMESPACE)

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.kv.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Cache entry {key} is not valid JSON; discarding")
            await self.kv.delete(key)
            return None

    async def set_detail(self, slug: str, data: Any) -> None:
        await self.kv.put(detail_key(slug), json.dumps(data, ensure_ascii=False), DETAIL_TTL_SECONDS)

    async def set_list(self, params: Dict[str, Any], data: Any) -> None:
        await self.kv.put(list_key(params), json.dumps(data, ensure_ascii=False), LIST_TTL_SECONDS)

    async def invalidate_place(self, slug: str) -> int:
        """Drop the place's detail entry and every cached list page, then purge expired entries."""
        removed = await self.kv.delete_many([detail_key(slug)])
        removed += await self.kv.delete_prefix(LIST_PREFIX)
        expired = await self.kv.purge_expired()
        if expired:
            logger.debug(f"Cache: purged {expired} expired entries")
        logger.debug(f"Cache invalidated for {slug}: {removed} entries removed")
        return removed
