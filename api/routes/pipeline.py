"""
Pipeline status and manual stage trigger
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_runner
from models.base import StageName
from models.stage_run import StageRun
from pipeline.kv import CheckpointStore, FailQueue
from pipeline.runner import PipelineRunner
from schemas.api import PipelineStatusResponse, StageRunResponse, StageRunSummary
from schemas.checkpoints import IncrementalFetchCursor, InitialFetchCursor
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


@router.get("/status", response_model=PipelineStatusResponse)
async def pipeline_status(db: AsyncSession = Depends(get_db)):
    """
    Current cursors, fail-queue depth and the latest run of every stage.
    """
    keys = InitialFetchCursor.keys() + IncrementalFetchCursor.keys()
    checkpoints = await CheckpointStore(db).get_many(keys)

    queue = FailQueue(db)
    fail_queue_depth = await queue.depth()
    dead_letter_depth = await queue.dead_letter_depth()

    latest = (
        select(StageRun.stage, func.max(StageRun.id).label("id"))
        .group_by(StageRun.stage)
        .subquery()
    )
    result = await db.execute(
        select(StageRun).join(latest, StageRun.id == latest.c.id).order_by(StageRun.stage)
    )
    recent_runs = [
        StageRunSummary(
            stage=run.stage.value,
            status=run.status.value,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            items_processed=run.items_processed,
            items_failed=run.items_failed,
            error_message=run.error_message,
        )
        for run in result.scalars().all()
    ]

    return PipelineStatusResponse(
        checkpoints=checkpoints,
        fail_queue_depth=fail_queue_depth,
        dead_letter_depth=dead_letter_depth,
        recent_runs=recent_runs,
    )


@router.post("/stages/{stage}/run", response_model=StageRunResponse)
async def run_stage(
    stage: str,
    background_tasks: BackgroundTasks,
    runner: PipelineRunner = Depends(get_runner)
):
    """
    Run one invocation of `stage` now.

    The response is sent once the stage result exists; sitemap and search
    engine follow-up work finishes after it.
    """
    try:
        stage_name = StageName(stage)
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown stage '{stage}'. Expected one of: {', '.join(s.value for s in StageName)}"
        )

    request_id = f"req_{uuid.uuid4().hex[:12]}"
    logger.info(f"[{request_id}] POST /pipeline/stages/{stage_name.value}/run")

    result, background = await runner.run_stage(stage_name)
    background_tasks.add_task(background.drain)
    return StageRunResponse(**result.to_dict())
