"""
Retry drain for the fail queue.

Claimed messages at or above the retry cap go to the dead letter without
another attempt. The rest are replayed through the originating fetch
stage, a few at a time, each after a backoff derived from its own
retry_count so delays keep growing across drains.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional
import logging

from core.config import settings
from core.retry import calculate_backoff_delay, chunked, with_timeout
from models.base import RunStatus, StageName
from pipeline.kv import FailQueue
from pipeline.stages.base import PipelineStage, StageResult
from schemas.queue import FailQueueMessage, FetchFailurePayload

logger = logging.getLogger(__name__)

Replay = Callable[[FetchFailurePayload], Awaitable[Any]]


class RetryStage(PipelineStage):
    name = StageName.RETRY

    def __init__(
        self,
        *args,
        replay: Replay,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        group_size: Optional[int] = None,
        group_delay: Optional[float] = None,
        message_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.replay = replay
        self.fail_queue = FailQueue(self.db)
        self.batch_size = batch_size or settings.RETRY_BATCH_SIZE
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.group_size = group_size or settings.MAX_PARALLEL_TASKS
        self.group_delay = settings.RETRY_GROUP_DELAY if group_delay is None else group_delay
        self.message_timeout = message_timeout or settings.RETRY_MESSAGE_TIMEOUT_SECONDS
        self.sleep = sleep

    async def _retry_one(self, message: FailQueueMessage) -> Optional[str]:
        """Replay one message. Returns the error string, or None on success."""
        delay = calculate_backoff_delay(message.retry_count, 1.0, settings.RETRY_BACKOFF_MAX_DELAY)
        await self.sleep(delay)
        try:
            await with_timeout(
                self.replay(message.payload),
                self.message_timeout,
                f"replay {message.payload.type}"
            )
        except Exception as e:
            logger.warning(
                f"Retry: {message.payload.type} failed again "
                f"(attempt {message.retry_count + 1}): {e}"
            )
            return str(e)
        return None

    async def _dead_letter(self, messages: List[FailQueueMessage]) -> int:
        moved = 0
        for message in messages:
            try:
                await self.fail_queue.move_to_dead_letter(message)
                moved += 1
            except Exception:
                logger.exception(f"Retry: could not dead-letter {message.payload.type} message")
        return moved

    async def execute(self) -> StageResult:
        messages = await self.fail_queue.claim(self.batch_size)
        if not messages:
            logger.info("Retry: fail queue is empty")
            return self.result(RunStatus.SUCCESS)

        exhausted = [m for m in messages if m.retry_count >= self.max_retries]
        retryable = [m for m in messages if m.retry_count < self.max_retries]
        dead_lettered = await self._dead_letter(exhausted)

        succeeded = failed = processed = 0
        groups = list(chunked(retryable, self.group_size))
        for index, group in enumerate(groups):
            if self.guard.is_exhausted():
                logger.info(f"Retry: time budget reached; {len(retryable) - processed} messages deferred")
                break

            errors = await asyncio.gather(*(self._retry_one(m) for m in group))
            processed += len(group)

            for message, error in zip(group, errors):
                if error is None:
                    succeeded += 1
                else:
                    failed += 1
                    await self.fail_queue.push(message.next_attempt(error))

            if index < len(groups) - 1:
                await self.sleep(self.group_delay)

        # Claimed but never attempted: put back unchanged
        deferred = retryable[processed:]
        for message in deferred:
            await self.fail_queue.push(message)

        logger.info(
            f"Retry: {succeeded} succeeded, {failed} re-queued, "
            f"{dead_lettered} dead-lettered, {len(deferred)} deferred"
        )
        if deferred:
            status = RunStatus.INTERRUPTED
        else:
            status = RunStatus.PARTIAL if failed else RunStatus.SUCCESS
        return self.result(
            status,
            items_processed=succeeded,
            items_failed=failed,
            details={"claimed": len(messages), "dead_lettered": dead_lettered,
                     "deferred": len(deferred)},
        )
