"""
Enrichment: generated summary and FAQ for normalized places.

Best effort. A record whose generation fails is still written, with the
default summary, and becomes publishable like any other.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Tuple
import logging

from sqlalchemy import select, update

from core.config import settings
from core.exceptions import ConfigurationError
from core.retry import process_in_groups
from models.base import RunStatus, StageName
from models.place import NormalizedPlace
from models.publish_meta import PublishMeta
from pipeline.enrichment import DEFAULT_SUMMARY, GenerativeTextClient
from pipeline.stages.base import PipelineStage, StageResult
from schemas.records import EnrichmentUpdate

logger = logging.getLogger(__name__)

EnrichmentOutcome = Tuple[str, EnrichmentUpdate, Optional[BaseException]]


class EnrichStage(PipelineStage):
    name = StageName.ENRICH

    def __init__(
        self,
        *args,
        text_client: Optional[GenerativeTextClient] = None,
        batch_size: Optional[int] = None,
        group_size: Optional[int] = None,
        group_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.text_client = text_client
        self.batch_size = batch_size or settings.ENRICH_BATCH_SIZE
        self.group_size = group_size or settings.MAX_PARALLEL_TASKS
        self.group_delay = settings.ENRICH_GROUP_DELAY if group_delay is None else group_delay
        self.sleep = sleep

    async def _pending_places(self) -> List[NormalizedPlace]:
        result = await self.db.execute(
            select(NormalizedPlace)
            .join(PublishMeta, PublishMeta.biz_id == NormalizedPlace.id)
            .where(PublishMeta.is_publishable.is_(False), PublishMeta.ai_summary.is_(None))
            .order_by(NormalizedPlace.updated_at, NormalizedPlace.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def _enrich_one(self, place: NormalizedPlace) -> EnrichmentOutcome:
        summary, faq = await asyncio.gather(
            self.text_client.summarize(place),
            self.text_client.generate_faq(place),
            return_exceptions=True
        )
        error = next((r for r in (summary, faq) if isinstance(r, BaseException)), None)
        if error is not None:
            logger.warning(f"Enrichment failed for {place.id} ({place.name}): {error}; using default summary")
            return place.id, EnrichmentUpdate(ai_summary=DEFAULT_SUMMARY, ai_faq=None), error
        return place.id, EnrichmentUpdate(ai_summary=summary, ai_faq=faq), None

    async def _apply(self, biz_id: str, changes: EnrichmentUpdate) -> None:
        await self.db.execute(
            update(PublishMeta)
            .where(PublishMeta.biz_id == biz_id, PublishMeta.is_publishable.is_(False))
            .values(**changes.model_dump())
        )
        await self.db.commit()

    async def execute(self) -> StageResult:
        if self.text_client is None:
            try:
                self.text_client = GenerativeTextClient()
            except ConfigurationError as e:
                logger.error(f"Enrichment: {e.message}; skipping")
                return self.result(RunStatus.SKIPPED, message="generative text service not configured")

        places = await self._pending_places()
        if not places:
            logger.info("Enrichment: nothing to enrich")
            return self.result(RunStatus.SUCCESS)

        outcomes = await process_in_groups(
            places,
            self._enrich_one,
            group_size=self.group_size,
            delay=self.group_delay,
            should_stop=self.guard.is_exhausted,
            sleep=self.sleep,
        )

        # Plain ids: a rollback below expires the ORM instances
        place_ids = [place.id for place in places]
        generated = defaulted = failed = 0
        for place_id, outcome in zip(place_ids, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.error(f"Enrichment: unexpected error for {place_id}: {outcome}")
                continue
            biz_id, changes, error = outcome
            try:
                await self._apply(biz_id, changes)
            except Exception as e:
                await self.db.rollback()
                failed += 1
                logger.error(f"Enrichment: failed to store result for {biz_id}: {e}")
                continue
            if error is None:
                generated += 1
            else:
                defaulted += 1

        interrupted = len(outcomes) < len(places)
        logger.info(
            f"Enrichment: {generated} generated, {defaulted} defaulted, {failed} failed"
            + (f", {len(places) - len(outcomes)} left for next run" if interrupted else "")
        )
        if interrupted:
            status = RunStatus.INTERRUPTED
        else:
            status = RunStatus.PARTIAL if failed else RunStatus.SUCCESS
        return self.result(
            status,
            items_processed=generated + defaulted,
            items_failed=failed,
            details={"generated": generated, "defaulted": defaulted},
        )
