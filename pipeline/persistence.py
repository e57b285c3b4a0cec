"""
Batch persistence of upstream records into raw_records.

- Validation drops records without a business key and nulls out
  coordinates outside the bounding box
- Insertion is chunked (statement size limit) with conflict-ignore on
  source_id, so re-fetching a page is idempotent
- A failing chunk falls back to per-record upserts so one bad row cannot
  block the rest of the chunk
- Inserted counts come from row counts taken every Nth chunk and after the
  last one
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import ValidationError
import logging

from core.config import settings
from core.database import dialect_insert
from core.exceptions import TransientStorageError
from core.retry import chunked, is_retryable_error
from core.timing import utcnow
from models.raw_record import RawRecord
from pipeline.validation import sanitize_string, validate_coordinates
from schemas.records import RawRecordCreate

logger = logging.getLogger(__name__)

# Upstream field names per logical field, first match wins
FIELD_ALIASES = {
    "source_id": ("source_id", "bizesId", "bizId", "id"),
    "name": ("name", "bizesNm"),
    "address": ("address", "rdnmAdr", "lnoAdr"),
    "category": ("category", "indsSclsNm", "indsMclsNm"),
    "lat": ("lat",),
    "lng": ("lng", "lon"),
}


def pick_field(item: Dict[str, Any], field: str) -> Any:
    for alias in FIELD_ALIASES[field]:
        value = item.get(alias)
        if value not in (None, ""):
            return value
    return None


def prepare_store_for_insert(
    item: Dict[str, Any],
    fetched_at=None
) -> Optional[RawRecordCreate]:
    """
    Turn one upstream item into an insert-ready record.

    Returns None (after logging a warning) when the item has no usable
    business key or no name.
    """
    source_id = pick_field(item, "source_id")
    if source_id is None or not str(source_id).strip():
        logger.warning(
            "Dropping upstream record without business key",
            extra={"record_keys": sorted(item)[:10]}
        )
        return None

    name = sanitize_string(pick_field(item, "name"), 255)
    if not name:
        logger.warning(f"Dropping upstream record {source_id} without a name")
        return None

    raw_lat, raw_lng = pick_field(item, "lat"), pick_field(item, "lng")
    lat, lng = validate_coordinates(raw_lat, raw_lng)
    if (raw_lat is not None or raw_lng is not None) and lat is None:
        logger.warning(
            f"Invalid coordinates for {source_id}: lat={raw_lat}, lng={raw_lng}; storing without location"
        )

    try:
        return RawRecordCreate(
            source_id=str(source_id),
            name_raw=name,
            addr_raw=sanitize_string(pick_field(item, "address")),
            category_raw=sanitize_string(pick_field(item, "category"), 255),
            lat=lat,
            lng=lng,
            raw_payload=item,
            fetched_at=fetched_at,
        )
    except ValidationError as e:
        logger.warning(f"Dropping invalid upstream record {source_id}: {e.errors()[0]['msg']}")
        return None


def prepare_batch(items: Iterable[Dict[str, Any]]) -> Tuple[List[RawRecordCreate], int]:
    """Validate a page of items, dropping invalid ones and in-page duplicates."""
    fetched_at = utcnow()
    records: Dict[str, RawRecordCreate] = {}
    dropped = 0
    for item in items:
        if not isinstance(item, dict):
            dropped += 1
            continue
        record = prepare_store_for_insert(item, fetched_at=fetched_at)
        if record is None:
            dropped += 1
            continue
        records.setdefault(record.source_id, record)
    return list(records.values()), dropped


@dataclass
class PersistResult:
    attempted: int = 0
    inserted: int = 0
    failed: int = 0
    fallback_chunks: int = 0


class RawRecordWriter:
    """
    Chunked, duplicate-safe writer for raw_records.

    Attributes:
        chunk_size: Rows per INSERT statement
        count_interval: Take a row count every N chunks (and after the last)
    """

    def __init__(
        self,
        db_session: AsyncSession,
        chunk_size: Optional[int] = None,
        count_interval: Optional[int] = None
    ):
        self.db = db_session
        self.chunk_size = chunk_size or settings.MAX_ROWS_PER_STATEMENT
        self.count_interval = count_interval or settings.ROW_COUNT_INTERVAL

    @staticmethod
    def _row(record: RawRecordCreate) -> Dict[str, Any]:
        row = record.model_dump()
        row["fetched_at"] = row["fetched_at"] or utcnow()
        return row

    async def _count_rows(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(RawRecord))
        return result.scalar_one()

    async def _insert_chunk(self, chunk: List[RawRecordCreate]) -> None:
        stmt = dialect_insert(self.db, RawRecord).values([self._row(r) for r in chunk])
        stmt = stmt.on_conflict_do_nothing(index_elements=["source_id"])
        await self.db.execute(stmt)
        await self.db.commit()

    async def _upsert_one(self, record: RawRecordCreate) -> None:
        row = self._row(record)
        try:
            await self.db.execute(insert(RawRecord).values(**row))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            values = {k: v for k, v in row.items() if k != "source_id"}
            await self.db.execute(
                update(RawRecord).where(RawRecord.source_id == record.source_id).values(**values)
            )
            await self.db.commit()

    async def _upsert_individually(self, chunk: List[RawRecordCreate]) -> int:
        """Per-record fallback. Returns the number of records that could not be stored."""
        failed = 0
        for record in chunk:
            try:
                await self._upsert_one(record)
            except Exception as e:
                await self.db.rollback()
                if is_retryable_error(e):
                    raise TransientStorageError(
                        "Storage unavailable during per-record fallback",
                        context={"operation": "UPSERT", "table_name": "raw_records",
                                 "source_id": record.source_id},
                        original_exception=e
                    )
                failed += 1
                logger.error(
                    f"Failed to store raw record {record.source_id}: {e}",
                    extra={"source_id": record.source_id}
                )
        return failed

    async def write(self, records: List[RawRecordCreate]) -> PersistResult:
        result = PersistResult(attempted=len(records))
        if not records:
            return result

        chunks = list(chunked(records, self.chunk_size))
        baseline = await self._count_rows()

        for index, chunk in enumerate(chunks):
            try:
                await self._insert_chunk(chunk)
            except Exception as e:
                await self.db.rollback()
                result.fallback_chunks += 1
                logger.warning(
                    f"Chunk {index + 1}/{len(chunks)} insert failed ({e}); "
                    f"falling back to per-record upsert for {len(chunk)} records"
                )
                result.failed += await self._upsert_individually(chunk)

            is_last = index == len(chunks) - 1
            if is_last or (index + 1) % self.count_interval == 0:
                current = await self._count_rows()
                result.inserted += current - baseline
                baseline = current

        logger.info(
            f"Persisted raw records: {result.inserted} new of {result.attempted} "
            f"({result.failed} failed, {result.fallback_chunks} chunks via fallback)"
        )
        return result
