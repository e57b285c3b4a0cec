"""
Base class for pipeline stages with run tracking
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from core.background import BackgroundTaskSupervisor
from core.timing import TimeBudgetGuard, utcnow
from models.base import RunStatus, StageName
from models.stage_run import StageRun

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    stage: StageName
    status: RunStatus
    items_processed: int = 0
    items_failed: int = 0
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "duration_seconds": round(self.duration_seconds, 3),
            "message": self.message,
            "details": self.details,
        }


async def record_run_result(db: AsyncSession, run_id: int, result: StageResult) -> None:
    """Complete the StageRun row `run_id` with the outcome in `result`."""
    await db.execute(
        update(StageRun)
        .where(StageRun.id == run_id)
        .values(
            status=result.status,
            completed_at=utcnow(),
            duration_seconds=result.duration_seconds,
            items_processed=result.items_processed,
            items_failed=result.items_failed,
            error_message=result.message if result.status == RunStatus.FAILED else None,
            details=result.details or None,
        )
    )
    await db.commit()


class PipelineStage(ABC):
    """
    One stage of the fixed chain.

    Responsibilities:
    - Record a StageRun around every invocation
    - Turn unexpected exceptions into a FAILED result (the next scheduled
      invocation is the recovery path)
    """

    name: StageName

    def __init__(
        self,
        db_session: AsyncSession,
        guard: Optional[TimeBudgetGuard] = None,
        background: Optional[BackgroundTaskSupervisor] = None
    ):
        self.db = db_session
        self.guard = guard or TimeBudgetGuard(self.name.value)
        self.background = background or BackgroundTaskSupervisor()
        self.run_id: Optional[int] = None

    @abstractmethod
    async def execute(self) -> StageResult:
        """Do the stage's work for one invocation."""

    def result(self, status: RunStatus, **kwargs) -> StageResult:
        return StageResult(stage=self.name, status=status, **kwargs)

    async def _start_run(self) -> int:
        run = StageRun(stage=self.name, status=RunStatus.RUNNING, started_at=utcnow())
        self.db.add(run)
        await self.db.commit()
        return run.id

    async def run(self) -> StageResult:
        """Execute the stage and record its metrics. Never raises for stage errors."""
        logger.info(f"Stage {self.name.value}: starting")
        self.run_id = await self._start_run()

        try:
            result = await self.execute()
        except Exception as e:
            logger.exception(f"Stage {self.name.value}: unexpected failure")
            await self.db.rollback()
            result = self.result(
                RunStatus.FAILED,
                message=f"{type(e).__name__}: {e}",
                details={"error": e.to_dict()} if hasattr(e, "to_dict") else {}
            )

        result.duration_seconds = self.guard.elapsed()
        result.details.setdefault("checkpoints", self.guard.summary())
        await record_run_result(self.db, self.run_id, result)
        self.guard.log_performance_warning()

        logger.info(
            f"Stage {self.name.value}: {result.status.value} - "
            f"processed={result.items_processed}, failed={result.items_failed}, "
            f"duration={result.duration_seconds:.2f}s"
            + (f" ({result.message})" if result.message else "")
        )
        return result
