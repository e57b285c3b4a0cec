"""
Resumable paginated fetch shared by the by-partition and by-date stages.

Per page:
    1. check the time budget; on breach persist the cursor and stop
    2. fetch (timeout-bounded) and persist, retried with exponential backoff
    3. empty page or short page → the sequence is complete
"""

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.background import BackgroundTaskSupervisor
from core.config import settings
from core.exceptions import ConfigurationError, StageReplayError
from core.retry import retry_with_backoff, with_timeout
from core.timing import TimeBudgetGuard
from pipeline.kv import CheckpointStore, FailQueue
from pipeline.persistence import RawRecordWriter, prepare_batch
from pipeline.sources.public_data import PublicDataClient
from pipeline.stages.base import PipelineStage

logger = logging.getLogger(__name__)

FetchPage = Callable[[int], Awaitable[List[Dict[str, Any]]]]


class PageLoopOutcome(str, enum.Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


@dataclass
class PageLoopResult:
    outcome: PageLoopOutcome
    next_page: int
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    dropped: int = 0
    error: Optional[BaseException] = None


class PaginatedFetchStage(PipelineStage):
    """
    Base for the two fetch stages.

    Collaborators are injectable; by default they are built from settings
    when the stage executes.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        guard: Optional[TimeBudgetGuard] = None,
        background: Optional[BackgroundTaskSupervisor] = None,
        client: Optional[PublicDataClient] = None,
        writer: Optional[RawRecordWriter] = None,
        page_size: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        super().__init__(db_session, guard, background)
        self.client = client
        self._owns_client = False
        self.writer = writer or RawRecordWriter(db_session)
        self.checkpoints = CheckpointStore(db_session)
        self.fail_queue = FailQueue(db_session)
        self.page_size = page_size or settings.PUBLIC_DATA_PAGE_SIZE
        self.page_timeout = settings.PUBLIC_DATA_TIMEOUT_SECONDS
        self.sleep = sleep

    def _ensure_client(self) -> bool:
        """Build the API client if none was injected. False when credentials are missing."""
        if self.client is not None:
            return True
        try:
            self.client = PublicDataClient(page_size=self.page_size)
            self._owns_client = True
        except ConfigurationError as e:
            logger.error(f"Stage {self.name.value}: {e.message}; skipping")
            return False
        return True

    async def _close_client(self) -> None:
        if self._owns_client:
            await self.client.close()
            self.client = None
            self._owns_client = False

    async def _fetch_and_store(self, fetch_page: FetchPage, page: int, label: str):
        items = await with_timeout(fetch_page(page), self.page_timeout, f"{label} page {page}")
        records, dropped = prepare_batch(items)
        persisted = await self.writer.write(records)
        return len(items), persisted.inserted, dropped

    async def paginate(
        self,
        fetch_page: FetchPage,
        start_page: int,
        label: str,
        on_interrupt: Optional[Callable[[int], Awaitable[None]]] = None
    ) -> PageLoopResult:
        """
        Walk pages from `start_page` until the sequence ends.

        Without `on_interrupt` the time budget is not consulted (replays).
        """
        result = PageLoopResult(outcome=PageLoopOutcome.COMPLETED, next_page=start_page)
        page = start_page

        while True:
            if on_interrupt is not None and self.guard.is_exhausted():
                logger.info(
                    f"{label}: time budget reached at {self.guard.elapsed():.1f}s; "
                    f"saving cursor at page {page}"
                )
                await on_interrupt(page)
                result.outcome = PageLoopOutcome.INTERRUPTED
                result.next_page = page
                return result

            self.guard.checkpoint(f"{label}:page{page}")
            try:
                fetched, inserted, dropped = await retry_with_backoff(
                    lambda: self._fetch_and_store(fetch_page, page, label),
                    max_retries=settings.MAX_RETRIES,
                    initial_delay=settings.FETCH_RETRY_INITIAL_DELAY,
                    max_delay=settings.FETCH_RETRY_MAX_DELAY,
                    operation_name=f"{label} page {page}",
                    sleep=self.sleep,
                )
            except Exception as e:
                logger.error(f"{label}: page {page} failed: {e}")
                result.outcome = PageLoopOutcome.FAILED
                result.next_page = page
                result.error = e
                return result

            result.pages += 1
            result.fetched += fetched
            result.inserted += inserted
            result.dropped += dropped

            if fetched == 0 or fetched < self.page_size:
                logger.info(f"{label}: last page {page} reached ({fetched} items)")
                result.next_page = 1
                return result

            page += 1
            result.next_page = page

    def replay_unconfigured(self) -> None:
        raise StageReplayError(
            "Cannot replay: public data API key not configured",
            context={"stage": self.name.value}
        )

    def replay_failed_result(self, result) -> None:
        raise StageReplayError(
            f"Replay of {self.name.value} failed: {result.message}",
            context={"stage": self.name.value}
        )

    @staticmethod
    def replay_failed(result: PageLoopResult, label: str, context: Dict[str, Any]) -> None:
        if result.outcome == PageLoopOutcome.FAILED:
            raise StageReplayError(
                f"Replay of {label} failed at page {result.next_page}",
                context={**context, "page": result.next_page},
                original_exception=result.error
            )
