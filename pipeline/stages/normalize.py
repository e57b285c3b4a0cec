"""
Normalize: RawRecord → NormalizedPlace + PublishMeta.

Only raw records without a place are selected, so a place is derived
exactly once. Each chunk is one transaction (places, then their meta rows);
a failing chunk falls back to one transaction per record.
"""

from typing import List, Optional, Set, Tuple
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from core.config import settings
from core.database import dialect_insert
from core.exceptions import RecordValidationError
from core.retry import chunked
from core.timing import utcnow
from models.base import RunStatus, StageName
from models.place import NormalizedPlace
from models.publish_meta import PublishMeta
from models.raw_record import RawRecord
from pipeline.address import parse_address
from pipeline.slug import generate_slug
from pipeline.validation import sanitize_string, validate_coordinates
from pipeline.stages.base import PipelineStage, StageResult
from schemas.records import NormalizedPlaceCreate, PublishMetaCreate

logger = logging.getLogger(__name__)

# NormalizedPlace has 13 columns; keep bound parameters per statement modest
NORMALIZE_CHUNK_SIZE = 50

PreparedPlace = Tuple[NormalizedPlaceCreate, Optional[str]]


def build_place(raw: RawRecord) -> NormalizedPlaceCreate:
    """Derive the structured place from one raw record."""
    payload = raw.raw_payload or {}

    name = raw.name_raw or sanitize_string(payload.get("bizesNm") or payload.get("name"), 255)
    if not name:
        raise RecordValidationError(
            "Record has no name",
            context={"field_name": "name", "source_id": raw.source_id}
        )

    addr_road = sanitize_string(payload.get("rdnmAdr")) or raw.addr_raw
    addr_jibun = sanitize_string(payload.get("lnoAdr"))
    parsed = parse_address(addr_road or addr_jibun)

    lat, lng = raw.lat, raw.lng
    if lat is None or lng is None:
        lat, lng = validate_coordinates(payload.get("lat"), payload.get("lng") or payload.get("lon"))

    return NormalizedPlaceCreate(
        id=str(uuid.uuid4()),
        source_id=raw.source_id,
        name=name,
        addr_road=addr_road,
        addr_jibun=addr_jibun,
        # The legacy API carries administrative names; prefer them to parsing
        sido=sanitize_string(payload.get("ctprvnNm")) or parsed.sido,
        sigungu=sanitize_string(payload.get("signguNm")) or parsed.sigungu,
        dong=sanitize_string(payload.get("adongNm")) or parsed.dong,
        category=raw.category_raw,
        lat=lat,
        lng=lng,
        status=sanitize_string(payload.get("status"), 50),
        license_date=sanitize_string(payload.get("license_date"), 20),
    )


class NormalizeStage(PipelineStage):
    name = StageName.NORMALIZE

    def __init__(self, *args, batch_size: Optional[int] = None,
                 chunk_size: int = NORMALIZE_CHUNK_SIZE, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size or settings.NORMALIZE_BATCH_SIZE
        self.chunk_size = chunk_size

    async def _pending_raw_records(self) -> List[RawRecord]:
        result = await self.db.execute(
            select(RawRecord)
            .outerjoin(NormalizedPlace, NormalizedPlace.source_id == RawRecord.source_id)
            .where(NormalizedPlace.id.is_(None))
            .order_by(RawRecord.fetched_at, RawRecord.source_id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def _taken_slugs(self, candidates: Set[str]) -> Set[str]:
        if not candidates:
            return set()
        result = await self.db.execute(select(PublishMeta.slug).where(PublishMeta.slug.in_(candidates)))
        return set(result.scalars().all())

    async def _precompute_slugs(self, places: List[NormalizedPlaceCreate]) -> List[PreparedPlace]:
        """
        Attach a base slug when the locality is known and the slug is free.

        Anything ambiguous is left to the publish stage, which resolves
        collisions.
        """
        candidates = {p.id: generate_slug(p.name, p.dong) for p in places if p.dong}
        taken = await self._taken_slugs({s for s in candidates.values() if s})

        prepared: List[PreparedPlace] = []
        seen: Set[str] = set()
        for place in places:
            slug = candidates.get(place.id) or None
            if slug and (slug in taken or slug in seen):
                slug = None
            if slug:
                seen.add(slug)
            prepared.append((place, slug))
        return prepared

    def _meta_rows(self, chunk: List[PreparedPlace], inserted_ids: Set[str]):
        return [
            PublishMetaCreate(biz_id=place.id, slug=slug).model_dump()
            for place, slug in chunk
            if place.id in inserted_ids
        ]

    async def _insert_places(self, chunk: List[PreparedPlace]) -> Set[str]:
        now = utcnow()
        rows = [{**place.model_dump(), "updated_at": now} for place, _ in chunk]
        stmt = (
            dialect_insert(self.db, NormalizedPlace)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["source_id"])
            .returning(NormalizedPlace.id)
        )
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def _insert_meta(self, rows) -> None:
        if rows:
            stmt = dialect_insert(self.db, PublishMeta).values(rows)
            await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["biz_id"]))

    async def _insert_chunk(self, chunk: List[PreparedPlace]) -> int:
        inserted_ids = await self._insert_places(chunk)
        await self._insert_meta(self._meta_rows(chunk, inserted_ids))
        await self.db.commit()
        return len(inserted_ids)

    async def _insert_one(self, prepared: PreparedPlace) -> int:
        place, slug = prepared
        try:
            return await self._insert_chunk([prepared])
        except IntegrityError:
            await self.db.rollback()
            if slug is None:
                raise
            # Slug taken in the meantime; publish will assign one
            logger.info(f"Precomputed slug {slug} collided; leaving it to publish")
            return await self._insert_chunk([(place, None)])

    async def _insert_individually(self, chunk: List[PreparedPlace]) -> Tuple[int, int]:
        inserted = failed = 0
        for prepared in chunk:
            try:
                inserted += await self._insert_one(prepared)
            except Exception as e:
                await self.db.rollback()
                failed += 1
                logger.error(
                    f"Failed to normalize {prepared[0].source_id}: {e}",
                    extra={"source_id": prepared[0].source_id}
                )
        return inserted, failed

    async def execute(self) -> StageResult:
        raws = await self._pending_raw_records()
        if not raws:
            logger.info("Normalize: no pending raw records")
            return self.result(RunStatus.SUCCESS)

        places: List[NormalizedPlaceCreate] = []
        failed = 0
        for raw in raws:
            try:
                places.append(build_place(raw))
            except Exception as e:
                failed += 1
                logger.error(f"Normalize: cannot derive place from {raw.source_id}: {e}")

        prepared = await self._precompute_slugs(places)
        inserted = 0
        interrupted = False

        for index, chunk in enumerate(chunked(prepared, self.chunk_size)):
            if index > 0 and self.guard.is_exhausted():
                interrupted = True
                logger.info(f"Normalize: time budget reached after {inserted} places")
                break
            try:
                inserted += await self._insert_chunk(chunk)
            except Exception as e:
                await self.db.rollback()
                logger.warning(f"Normalize: chunk {index + 1} failed ({e}); inserting one by one")
                chunk_inserted, chunk_failed = await self._insert_individually(chunk)
                inserted += chunk_inserted
                failed += chunk_failed

        if interrupted:
            status = RunStatus.INTERRUPTED
        else:
            status = RunStatus.PARTIAL if failed else RunStatus.SUCCESS
        return self.result(
            status,
            items_processed=inserted,
            items_failed=failed,
            details={"selected": len(raws)},
        )
