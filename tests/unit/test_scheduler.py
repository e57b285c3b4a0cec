import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from models.base import RunStatus, StageName
from pipeline.scheduler import PipelineScheduler, STAGE_SCHEDULES
from pipeline.stages.base import StageResult


@pytest.mark.asyncio
async def test_scheduler_initialization():
    runner = MagicMock()
    scheduler = PipelineScheduler(runner=runner)
    assert scheduler.scheduler is not None
    assert scheduler.runner is runner


@pytest.mark.asyncio
async def test_scheduler_job_execution():
    runner = MagicMock()
    runner.run_stage_to_completion = AsyncMock(
        return_value=StageResult(stage=StageName.NORMALIZE, status=RunStatus.SUCCESS)
    )
    scheduler = PipelineScheduler(runner=runner)

    await scheduler.run_stage_job(StageName.NORMALIZE)

    runner.run_stage_to_completion.assert_awaited_once_with(StageName.NORMALIZE)


@pytest.mark.asyncio
async def test_scheduler_job_swallows_runner_errors():
    runner = MagicMock()
    runner.run_stage_to_completion = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = PipelineScheduler(runner=runner)

    # Must not raise; the next cron tick is the recovery path
    await scheduler.run_stage_job(StageName.PUBLISH)

    runner.run_stage_to_completion.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_registers_one_job_per_stage():
    scheduler = PipelineScheduler(runner=MagicMock())

    with patch.object(scheduler.scheduler, "start") as mock_start:
        scheduler.start()

    jobs = scheduler.scheduler.get_jobs()
    assert {job.id for job in jobs} == {f"{stage.value}_job" for stage in STAGE_SCHEDULES}
    assert all(job.max_instances == 1 for job in jobs)
    mock_start.assert_called_once()
