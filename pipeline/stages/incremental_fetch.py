"""
Incremental fetch: everything modified since the last watermark.

On completion the watermark moves to the time this invocation started, so
records modified while the stage was running are picked up next time. A page
that fails is handed to the fail queue and the watermark still advances; the
retry stage owns that page from then on.
"""

from datetime import datetime, timedelta
import logging

from core.config import settings
from core.timing import utcnow
from models.base import RunStatus, StageName
from pipeline.stages.base import StageResult
from pipeline.stages.fetch import PageLoopOutcome, PaginatedFetchStage
from schemas.checkpoints import IncrementalFetchCursor
from schemas.queue import FetchFailurePayload

logger = logging.getLogger(__name__)


class IncrementalFetchStage(PaginatedFetchStage):
    name = StageName.INCREMENTAL_FETCH

    async def execute(self) -> StageResult:
        if not self._ensure_client():
            return self.result(RunStatus.SKIPPED, message="public data API key not configured")
        try:
            return await self._fetch_since_watermark()
        finally:
            await self._close_client()

    async def _fetch_since_watermark(self) -> StageResult:
        started_at = utcnow()
        cursor = await self.checkpoints.load(IncrementalFetchCursor)
        since = cursor.last_modified or started_at - timedelta(hours=settings.DEFAULT_LAST_MOD_HOURS)

        if cursor.resume_page > 1:
            logger.info(f"Incremental fetch: resuming {since.isoformat()} at page {cursor.resume_page}")
        else:
            logger.info(f"Incremental fetch: fetching changes since {since.isoformat()}")

        async def save_position(page: int):
            await self.checkpoints.save(IncrementalFetchCursor(last_modified=since, resume_page=page))

        loop = await self.paginate(
            lambda page: self.client.fetch_by_date(since, page),
            cursor.resume_page,
            label=f"changes since {since.date().isoformat()}",
            on_interrupt=save_position,
        )
        details = {"fetched": loop.fetched, "pages": loop.pages, "since": since.isoformat()}

        if loop.outcome == PageLoopOutcome.INTERRUPTED:
            return self.result(
                RunStatus.INTERRUPTED,
                items_processed=loop.inserted,
                message=f"time budget reached at page {loop.next_page}",
                details={**details, "resume_page": loop.next_page},
            )

        if loop.outcome == PageLoopOutcome.FAILED:
            await self.fail_queue.enqueue(
                FetchFailurePayload(
                    type="incremental_fetch",
                    last_modified=since.isoformat(),
                    page=loop.next_page,
                ),
                error=str(loop.error),
            )
            await self.checkpoints.save(IncrementalFetchCursor(last_modified=started_at, resume_page=1))
            logger.warning(
                f"Incremental fetch: page {loop.next_page} queued for retry, "
                f"watermark advanced to {started_at.isoformat()}"
            )
            return self.result(
                RunStatus.PARTIAL,
                items_processed=loop.inserted,
                items_failed=1,
                message=f"page {loop.next_page} failed: {loop.error}",
                details=details,
            )

        await self.checkpoints.save(IncrementalFetchCursor(last_modified=started_at, resume_page=1))
        logger.info(f"Incremental fetch: watermark advanced to {started_at.isoformat()}")
        return self.result(RunStatus.SUCCESS, items_processed=loop.inserted, details=details)

    async def replay(self, payload: FetchFailurePayload) -> int:
        """Re-process the failed page sequence. Raises on failure."""
        if not payload.has_unit:
            result = await self.execute()
            if result.status == RunStatus.FAILED:
                self.replay_failed_result(result)
            return result.items_processed

        since = datetime.fromisoformat(payload.last_modified)
        if not self._ensure_client():
            self.replay_unconfigured()
        try:
            loop = await self.paginate(
                lambda page: self.client.fetch_by_date(since, page),
                payload.page or 1,
                label=f"replay changes since {since.date().isoformat()}",
            )
        finally:
            await self._close_client()
        self.replay_failed(loop, f"changes since {payload.last_modified}", {"last_modified": payload.last_modified})
        return loop.inserted
