"""
Pipeline runner - one stage invocation at a time.

Each invocation gets a fresh database session, a fresh time-budget guard
and a fresh background-task supervisor; nothing survives between
invocations except what the stages persisted.
"""

import asyncio
from typing import Any, Dict, Optional, Tuple, Union
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.background import BackgroundTaskSupervisor
from core.config import settings
from core.database import async_session_maker
from core.exceptions import StageReplayError
from core.timing import TimeBudgetGuard
from models.base import RunStatus, StageName
from pipeline.stages import (
    EnrichStage,
    IncrementalFetchStage,
    InitialFetchStage,
    NormalizeStage,
    PipelineStage,
    PublishStage,
    RetryStage,
    StageResult,
)
from pipeline.stages.base import record_run_result
from schemas.queue import FetchFailurePayload

logger = logging.getLogger(__name__)

STAGE_CLASSES = {
    StageName.INITIAL_FETCH: InitialFetchStage,
    StageName.INCREMENTAL_FETCH: IncrementalFetchStage,
    StageName.NORMALIZE: NormalizeStage,
    StageName.ENRICH: EnrichStage,
    StageName.PUBLISH: PublishStage,
    StageName.RETRY: RetryStage,
}

REPLAYABLE_STAGES = (StageName.INITIAL_FETCH, StageName.INCREMENTAL_FETCH)


class PipelineRunner:
    """
    Builds and runs stages.

    Attributes:
        session_factory: Source of per-invocation sessions
        stage_options: Extra constructor arguments per stage (collaborator injection)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        stage_options: Optional[Dict[StageName, Dict[str, Any]]] = None
    ):
        self.session_factory = session_factory
        self.stage_options = stage_options or {}

    def build_stage(
        self,
        name: StageName,
        session: AsyncSession,
        guard: TimeBudgetGuard,
        background: BackgroundTaskSupervisor
    ) -> PipelineStage:
        options = dict(self.stage_options.get(name, {}))
        if name == StageName.RETRY:
            options.setdefault("replay", self.replay)
        if name == StageName.PUBLISH:
            options.setdefault("session_factory", self.session_factory)
        return STAGE_CLASSES[name](session, guard=guard, background=background, **options)

    async def run_stage(self, name: Union[StageName, str]) -> Tuple[StageResult, BackgroundTaskSupervisor]:
        """
        One invocation of `name`.

        Returns as soon as the stage result exists. Follow-up work the stage
        submitted is still running on the returned supervisor; the caller
        decides where to drain it.
        """
        name = StageName(name)
        guard = TimeBudgetGuard(name.value)
        background = BackgroundTaskSupervisor()
        killed = False

        async with self.session_factory() as session:
            stage = self.build_stage(name, session, guard, background)
            if settings.ENFORCE_HARD_TIME_LIMIT:
                try:
                    result = await asyncio.wait_for(stage.run(), timeout=guard.budget_seconds)
                except asyncio.TimeoutError:
                    logger.error(f"Stage {name.value}: killed at the {guard.budget_seconds:.0f}s hard limit")
                    killed = True
                    result = StageResult(
                        stage=name,
                        status=RunStatus.FAILED,
                        message="hard time limit exceeded",
                        duration_seconds=guard.elapsed(),
                        details={"checkpoints": guard.summary()},
                    )
            else:
                result = await stage.run()

        if killed and stage.run_id is not None:
            # The cancelled stage never completed its own run row
            async with self.session_factory() as session:
                await record_run_result(session, stage.run_id, result)

        return result, background

    async def run_stage_to_completion(self, name: Union[StageName, str]) -> StageResult:
        """One invocation of `name` with its background work drained."""
        result, background = await self.run_stage(name)

        # Background work is not charged to the invocation's budget
        outcome = await background.drain()
        if outcome["succeeded"] or outcome["failed"]:
            result.details["background"] = outcome

        return result

    async def replay(self, payload: FetchFailurePayload) -> int:
        """
        Re-run the failed unit described by `payload` in its own session.

        Raises when the replay fails so the retry stage can re-queue it.
        """
        name = StageName(payload.type)
        if name not in REPLAYABLE_STAGES:
            raise StageReplayError(
                f"No replay for stage type {payload.type}",
                context={"payload_type": payload.type}
            )

        async with self.session_factory() as session:
            stage = self.build_stage(
                name, session, TimeBudgetGuard(f"replay:{name.value}"), BackgroundTaskSupervisor()
            )
            return await stage.replay(payload)
