"""
Durable key-value store on top of the kv_entries table.

Three consumers share it, each in its own namespace:
- CheckpointStore: stage cursors ("settings")
- FailQueue: failed work units ("fail_queue") and their dead letters ("dead_letter")
- ReadCache (pipeline.cache): cached read responses ("cache")
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import CheckpointError, StorageError, TransientStorageError
from core.retry import is_retryable_error
from core.timing import utcnow
from models.kv_entry import KVEntry
from schemas.queue import FailQueueMessage, FetchFailurePayload

logger = logging.getLogger(__name__)

C = TypeVar("C")

SETTINGS_NAMESPACE = "settings"
FAIL_QUEUE_NAMESPACE = "fail_queue"
DEAD_LETTER_NAMESPACE = "dead_letter"


def _storage_error(error: SQLAlchemyError, operation: str, namespace: str) -> StorageError:
    error_cls = TransientStorageError if is_retryable_error(error) else StorageError
    return error_cls(
        f"Key-value {operation} failed",
        context={"operation": operation, "table_name": "kv_entries", "namespace": namespace},
        original_exception=error
    )


class KeyValueStore:
    """String get/put/list scoped to one namespace."""

    def __init__(self, db_session: AsyncSession, namespace: str):
        self.db = db_session
        self.namespace = namespace

    def _live(self):
        now = utcnow()
        return (
            KVEntry.namespace == self.namespace,
            or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > now),
        )

    async def get(self, key: str) -> Optional[str]:
        values = await self.get_many([key])
        return values.get(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        """Read several keys with one query. Missing or expired keys map to None."""
        keys = list(keys)
        if not keys:
            return {}
        try:
            result = await self.db.execute(
                select(KVEntry.key, KVEntry.value).where(*self._live(), KVEntry.key.in_(keys))
            )
            found = {row.key: row.value for row in result}
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise _storage_error(e, "SELECT", self.namespace)
        return {key: found.get(key) for key in keys}

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.put_many({key: value}, ttl_seconds=ttl_seconds)

    async def put_many(self, values: Dict[str, str], ttl_seconds: Optional[int] = None) -> None:
        """Upsert several keys in one transaction."""
        if not values:
            return
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        rows = [
            {
                "namespace": self.namespace,
                "key": key,
                "value": value,
                "expires_at": expires_at,
                "created_at": now,
                "updated_at": now,
            }
            for key, value in values.items()
        ]
        stmt = dialect_insert(self.db, KVEntry).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["namespace", "key"],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            }
        )
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise _storage_error(e, "UPSERT", self.namespace)

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        try:
            result = await self.db.execute(
                delete(KVEntry).where(KVEntry.namespace == self.namespace, KVEntry.key.in_(keys))
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise _storage_error(e, "DELETE", self.namespace)
        return result.rowcount or 0

    async def delete_prefix(self, prefix: str) -> int:
        try:
            result = await self.db.execute(
                delete(KVEntry).where(
                    KVEntry.namespace == self.namespace,
                    KVEntry.key.startswith(prefix, autoescape=True)
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise _storage_error(e, "DELETE", self.namespace)
        return result.rowcount or 0

    async def list_keys(self, prefix: str = "", limit: Optional[int] = None) -> List[str]:
        """Live keys starting with `prefix`, in key order."""
        query = (
            select(KVEntry.key)
            .where(*self._live(), KVEntry.key.startswith(prefix, autoescape=True))
            .order_by(KVEntry.key)
        )
        if limit is not None:
            query = query.limit(limit)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise _storage_error(e, "SELECT", self.namespace)
        return list(result.scalars().all())

    async def count(self, prefix: str = "") -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(KVEntry)
            .where(*self._live(), KVEntry.key.startswith(prefix, autoescape=True))
        )
        return result.scalar_one()

    async def purge_expired(self) -> int:
        result = await self.db.execute(
            delete(KVEntry).where(
                KVEntry.namespace == self.namespace,
                KVEntry.expires_at.is_not(None),
                KVEntry.expires_at <= utcnow()
            )
        )
        await self.db.commit()
        return result.rowcount or 0


class CheckpointStore:
    """Typed cursor access over the settings namespace."""

    def __init__(self, db_session: AsyncSession):
        self.kv = KeyValueStore(db_session, SETTINGS_NAMESPACE)

    async def get(self, key: str) -> Optional[str]:
        return await self.kv.get(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        return await self.kv.get_many(keys)

    async def set(self, key: str, value: str) -> None:
        await self.kv.put(key, value)

    async def load(self, cursor_type: Type[C]) -> C:
        """Read every key of `cursor_type` in one query and parse it."""
        try:
            values = await self.kv.get_many(cursor_type.keys())
        except StorageError as e:
            raise CheckpointError(
                f"Failed to read {cursor_type.__name__}",
                context={"operation": "read", "keys": cursor_type.keys()},
                original_exception=e
            )
        return cursor_type.from_settings(values)

    async def save(self, cursor) -> None:
        values = cursor.to_settings()
        try:
            await self.kv.put_many(values)
        except StorageError as e:
            raise CheckpointError(
                f"Failed to write {type(cursor).__name__}",
                context={"operation": "write", "keys": list(values)},
                original_exception=e
            )
        logger.debug(f"Checkpoint saved: {values}")


def _queue_key(prefix: str) -> str:
    return f"{prefix}:{int(time.time() * 1000)}:{uuid.uuid4().hex[:8]}"


class FailQueue:
    """
    Durable queue of failed work units.

    Reading is claiming: claimed entries are deleted before they are
    returned, so two concurrent drains never process the same message.
    """

    def __init__(self, db_session: AsyncSession):
        self.queue = KeyValueStore(db_session, FAIL_QUEUE_NAMESPACE)
        self.dead_letter = KeyValueStore(db_session, DEAD_LETTER_NAMESPACE)

    async def enqueue(
        self,
        payload: FetchFailurePayload,
        error: str,
        retry_count: int = 0
    ) -> str:
        message = FailQueueMessage(payload=payload, retry_count=retry_count, error=error)
        return await self.push(message)

    async def push(self, message: FailQueueMessage) -> str:
        key = _queue_key("fail")
        await self.queue.put(key, message.model_dump_json())
        logger.info(
            f"Fail queue: stored {message.payload.type} failure as {key} "
            f"(retry_count={message.retry_count})"
        )
        return key

    async def claim(self, limit: int) -> List[FailQueueMessage]:
        """Remove up to `limit` messages from the queue and return the parseable ones."""
        keys = await self.queue.list_keys(prefix="fail:", limit=limit)
        if not keys:
            return []

        values = await self.queue.get_many(keys)
        await self.queue.delete_many(keys)

        messages: List[FailQueueMessage] = []
        for key in keys:
            raw = values.get(key)
            if raw is None:
                continue
            try:
                messages.append(FailQueueMessage.model_validate_json(raw))
            except ValidationError as e:
                logger.error(f"Fail queue: dropped unreadable message {key}: {e}")
        return messages

    async def move_to_dead_letter(self, message: FailQueueMessage) -> str:
        key = _queue_key("dead")
        await self.dead_letter.put(key, message.model_dump_json())
        logger.warning(
            f"Fail queue: {message.payload.type} moved to dead letter as {key} "
            f"after {message.retry_count} retries. Last error: {message.error}"
        )
        return key

    async def depth(self) -> int:
        return await self.queue.count("fail:")

    async def dead_letter_depth(self) -> int:
        return await self.dead_letter.count("dead:")
