"""
Publish: make enriched places visible to the read side.

Per record:
    1. assign a slug if absent (probe for collisions, suffix, fall back)
    2. set slug + last_published_at in one guarded update (null → set once)
    3. best effort: page revalidation and read-cache invalidation
After the batch, sitemap regeneration and the IndexNow ping run as
background tasks.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import PublishError
from core.retry import with_timeout
from core.timing import utcnow
from models.base import RunStatus, StageName
from models.place import NormalizedPlace
from models.publish_meta import PublishMeta
from pipeline.cache import ReadCache
from pipeline.notify import IndexNowClient, RevalidationClient, place_url
from pipeline.sitemap import SitemapGenerator
from pipeline.slug import MAX_SLUG_ATTEMPTS, fallback_slug, generate_slug, generate_unique_slug
from pipeline.stages.base import PipelineStage, StageResult
from schemas.records import PublishMetaUpdate

logger = logging.getLogger(__name__)

# Attempts at the guarded update when a concurrent publisher grabs our slug
SLUG_WRITE_ATTEMPTS = 2


@dataclass
class PublishCandidate:
    """Plain snapshot of a pending row; ORM instances expire on rollback."""
    biz_id: str
    name: str
    dong: Optional[str]
    slug: Optional[str]


class PublishStage(PipelineStage):
    name = StageName.PUBLISH

    def __init__(
        self,
        *args,
        batch_size: Optional[int] = None,
        site_url: Optional[str] = None,
        revalidation: Optional[RevalidationClient] = None,
        index_now: Optional[IndexNowClient] = None,
        sitemap: Optional[SitemapGenerator] = None,
        session_factory: Optional[async_sessionmaker] = None,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size or settings.PUBLISH_BATCH_SIZE
        self.site_url = site_url or settings.SITE_URL
        self.cache = ReadCache(self.db)
        self.cache_timeout = settings.NOTIFY_TIMEOUT_SECONDS

        if revalidation is None and self.site_url and settings.REVALIDATE_API_KEY:
            revalidation = RevalidationClient(self.site_url, settings.REVALIDATE_API_KEY)
        if index_now is None and self.site_url and settings.INDEXNOW_KEY:
            index_now = IndexNowClient(settings.INDEXNOW_KEY, self.site_url)
        if sitemap is None and self.site_url and session_factory is not None:
            sitemap = SitemapGenerator(session_factory, self.site_url)
        self.revalidation = revalidation
        self.index_now = index_now
        self.sitemap = sitemap

    async def _pending(self) -> List[PublishCandidate]:
        result = await self.db.execute(
            select(NormalizedPlace.id, NormalizedPlace.name, NormalizedPlace.dong, PublishMeta.slug)
            .join(PublishMeta, PublishMeta.biz_id == NormalizedPlace.id)
            .where(PublishMeta.is_publishable.is_(True), PublishMeta.last_published_at.is_(None))
            .order_by(NormalizedPlace.updated_at, NormalizedPlace.id)
            .limit(self.batch_size)
        )
        return [
            PublishCandidate(biz_id=row.id, name=row.name, dong=row.dong, slug=row.slug)
            for row in result
        ]

    async def _slug_owner(self, slug: str) -> Optional[str]:
        result = await self.db.execute(select(PublishMeta.biz_id).where(PublishMeta.slug == slug))
        return result.scalar_one_or_none()

    async def resolve_slug(self, place: PublishCandidate) -> str:
        """A slug no other place owns."""
        base = generate_slug(place.name, place.dong)
        candidate = base or generate_unique_slug(base)

        for _ in range(MAX_SLUG_ATTEMPTS):
            owner = await self._slug_owner(candidate)
            if owner is None or owner == place.biz_id:
                return candidate
            candidate = generate_unique_slug(base)

        logger.warning(
            f"Publish: no free slug for {place.biz_id} after {MAX_SLUG_ATTEMPTS} attempts; using fallback"
        )
        return fallback_slug(place.biz_id)

    async def _mark_published(self, place: PublishCandidate) -> Optional[str]:
        """Write slug and last_published_at. None if another run published it first."""
        for attempt in range(SLUG_WRITE_ATTEMPTS):
            new_slug = None if place.slug else await self.resolve_slug(place)
            changes = PublishMetaUpdate(slug=new_slug, last_published_at=utcnow())
            try:
                result = await self.db.execute(
                    update(PublishMeta)
                    .where(PublishMeta.biz_id == place.biz_id, PublishMeta.last_published_at.is_(None))
                    .values(**changes.values())
                )
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if attempt == SLUG_WRITE_ATTEMPTS - 1:
                    raise PublishError(
                        "Slug stayed taken while publishing",
                        context={"biz_id": place.biz_id, "slug": new_slug},
                        original_exception=e
                    )
                logger.info(f"Publish: slug {new_slug} was taken concurrently; resolving again")
                continue

            if result.rowcount == 0:
                logger.info(f"Publish: {place.biz_id} was already published; skipping")
                return None
            return place.slug or new_slug
        return None

    async def _after_publish(self, slug: str) -> None:
        if self.revalidation is not None:
            try:
                await self.revalidation.revalidate(slug)
            except Exception as e:
                logger.warning(f"Publish: revalidation failed for {slug}: {e}")

        try:
            await with_timeout(self.cache.invalidate_place(slug), self.cache_timeout, f"cache invalidation {slug}")
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Publish: cache invalidation failed for {slug}: {e}")

    async def execute(self) -> StageResult:
        pending = await self._pending()
        if not pending:
            logger.info("Publish: nothing to publish")
            return self.result(RunStatus.SUCCESS)

        published: List[str] = []
        failed = 0
        interrupted = False

        for index, place in enumerate(pending):
            if index > 0 and self.guard.is_exhausted():
                interrupted = True
                logger.info(f"Publish: time budget reached after {len(published)} places")
                break
            try:
                slug = await self._mark_published(place)
            except Exception as e:
                await self.db.rollback()
                failed += 1
                logger.error(f"Publish: failed for {place.biz_id} ({place.name}): {e}")
                continue
            if slug is None:
                continue
            published.append(slug)
            await self._after_publish(slug)

        self._schedule_fan_out(published)

        if interrupted:
            status = RunStatus.INTERRUPTED
        else:
            status = RunStatus.PARTIAL if failed else RunStatus.SUCCESS
        return self.result(
            status,
            items_processed=len(published),
            items_failed=failed,
            details={"slugs": published},
        )

    def _schedule_fan_out(self, slugs: List[str]) -> None:
        if not slugs or not self.site_url:
            return
        urls = [place_url(self.site_url, slug) for slug in slugs]
        if self.sitemap is not None:
            self.background.submit(self.sitemap.regenerate(), "sitemap regeneration")
        if self.index_now is not None:
            self.background.submit(self.index_now.submit(urls), f"IndexNow ping ({len(urls)} URLs)")
