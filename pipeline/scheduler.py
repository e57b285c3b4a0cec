import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import settings, validate_environment
from models.base import StageName
from pipeline.runner import PipelineRunner

logger = logging.getLogger(__name__)

STAGE_SCHEDULES = {
    StageName.INITIAL_FETCH: "INITIAL_FETCH_CRON",
    StageName.INCREMENTAL_FETCH: "INCREMENTAL_FETCH_CRON",
    StageName.NORMALIZE: "NORMALIZE_CRON",
    StageName.RETRY: "RETRY_CRON",
    StageName.ENRICH: "ENRICH_CRON",
    StageName.PUBLISH: "PUBLISH_CRON",
}


class PipelineScheduler:
    def __init__(self, runner: Optional[PipelineRunner] = None):
        self.scheduler = AsyncIOScheduler()
        self.runner = runner or PipelineRunner()

    async def run_stage_job(self, stage: StageName):
        """Job body: one stage invocation"""
        logger.info(f"Scheduler: starting {stage.value}")

        check = validate_environment()
        for error in check["errors"]:
            logger.warning(f"Scheduler: configuration problem: {error}")

        try:
            result = await self.runner.run_stage_to_completion(stage)
            logger.info(f"Scheduler: {stage.value} finished with {result.status.value}")
        except Exception as e:
            logger.error(f"Scheduler: {stage.value} job failed - {e}")

    def start(self):
        """Register one cron job per stage and start the scheduler"""
        for stage, setting_name in STAGE_SCHEDULES.items():
            expression = getattr(settings, setting_name)
            self.scheduler.add_job(
                self.run_stage_job,
                trigger=CronTrigger.from_crontab(expression, timezone="UTC"),
                args=[stage],
                id=f"{stage.value}_job",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Scheduled {stage.value} at '{expression}'")
        self.scheduler.start()
        logger.info("Pipeline scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Pipeline scheduler stopped")
