"""
Initial fetch: walk the partition list window by window.

Cursor (InitialFetchCursor):
    partition_index   start of the next window
    resume_partition  partition interrupted mid-flight
    resume_page       page to resume at
"""

from typing import Optional
import logging

from core.config import settings
from models.base import RunStatus, StageName
from pipeline.sources.partitions import PartitionSource, build_partition_source
from pipeline.stages.base import StageResult
from pipeline.stages.fetch import PageLoopOutcome, PaginatedFetchStage
from schemas.checkpoints import InitialFetchCursor
from schemas.queue import FetchFailurePayload

logger = logging.getLogger(__name__)


class InitialFetchStage(PaginatedFetchStage):
    name = StageName.INITIAL_FETCH

    def __init__(self, *args, partition_source: Optional[PartitionSource] = None,
                 window_size: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.partition_source = partition_source or build_partition_source()
        self.window_size = window_size or settings.INITIAL_FETCH_PARTITION_COUNT

    async def execute(self) -> StageResult:
        if not self._ensure_client():
            return self.result(RunStatus.SKIPPED, message="public data API key not configured")
        try:
            return await self._fetch_window()
        finally:
            await self._close_client()

    async def _fetch_window(self) -> StageResult:
        cursor = await self.checkpoints.load(InitialFetchCursor)
        partitions = await self.partition_source.list_partitions(cursor.partition_index, self.window_size)
        if not partitions:
            logger.info(f"Initial fetch: no partitions at index {cursor.partition_index}; nothing to do")
            return self.result(RunStatus.SKIPPED, message="no partitions left")

        start = 0
        if cursor.resume_partition:
            if cursor.resume_partition in partitions:
                start = partitions.index(cursor.resume_partition)
                logger.info(
                    f"Initial fetch: resuming partition {cursor.resume_partition} "
                    f"at page {cursor.resume_page}"
                )
            else:
                logger.warning(
                    f"Initial fetch: saved partition {cursor.resume_partition} is not in the "
                    f"current window; restarting window at index {cursor.partition_index}"
                )
                cursor = cursor.cleared()

        fetched = inserted = failed_partitions = 0

        for partition in partitions[start:]:
            start_page = cursor.resume_page if partition == cursor.resume_partition else 1

            async def save_position(page: int, partition=partition):
                await self.checkpoints.save(cursor.resume_at(partition, page))

            loop = await self.paginate(
                lambda page, partition=partition: self.client.fetch_by_partition(partition, page),
                start_page,
                label=f"partition {partition}",
                on_interrupt=save_position,
            )
            fetched += loop.fetched
            inserted += loop.inserted

            if loop.outcome == PageLoopOutcome.INTERRUPTED:
                return self.result(
                    RunStatus.INTERRUPTED,
                    items_processed=inserted,
                    items_failed=failed_partitions,
                    message=f"time budget reached at partition {partition} page {loop.next_page}",
                    details={"fetched": fetched, "resume_partition": partition,
                             "resume_page": loop.next_page},
                )

            if loop.outcome == PageLoopOutcome.FAILED:
                failed_partitions += 1
                await self.fail_queue.enqueue(
                    FetchFailurePayload(type="initial_fetch", partition=partition, page=loop.next_page),
                    error=str(loop.error),
                )

            # Partition finished (or handed to the fail queue): clear the page cursor
            cursor = cursor.cleared()
            await self.checkpoints.save(cursor)

        next_cursor = InitialFetchCursor(partition_index=cursor.partition_index + len(partitions))
        await self.checkpoints.save(next_cursor)
        logger.info(
            f"Initial fetch: window of {len(partitions)} partitions done; "
            f"next index {next_cursor.partition_index}"
        )

        return self.result(
            RunStatus.PARTIAL if failed_partitions else RunStatus.SUCCESS,
            items_processed=inserted,
            items_failed=failed_partitions,
            details={"fetched": fetched, "partitions": len(partitions),
                     "next_partition_index": next_cursor.partition_index},
        )

    async def replay(self, payload: FetchFailurePayload) -> int:
        """
        Re-process exactly the failed unit. Raises on failure; never touches
        cursors or the fail queue.
        """
        if not payload.has_unit:
            result = await self.execute()
            if result.status == RunStatus.FAILED:
                self.replay_failed_result(result)
            return result.items_processed

        if not self._ensure_client():
            self.replay_unconfigured()
        try:
            loop = await self.paginate(
                lambda page: self.client.fetch_by_partition(payload.partition, page),
                payload.page or 1,
                label=f"replay partition {payload.partition}",
            )
        finally:
            await self._close_client()
        self.replay_failed(loop, f"partition {payload.partition}", {"partition": payload.partition})
        return loop.inserted
