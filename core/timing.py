"""
Wall-clock helpers for time-boxed stage invocations.

The host gives every invocation a hard wall-clock budget. Stages check the
guard between pages or batches and, once the warning threshold is crossed,
persist their cursor and return. Nothing here preempts a running call; a
slow external call is bounded only by its own timeout.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from core.config import settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of the models."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimeBudgetGuard:
    """
    Tracks elapsed time of one stage invocation against its thresholds.

    Attributes:
        budget_seconds: Hard limit imposed by the host
        warning_seconds: Stop starting new work past this point
        critical_seconds: Past this point the invocation is about to be killed
    """

    def __init__(
        self,
        name: str = "stage",
        budget_seconds: Optional[float] = None,
        warning_seconds: Optional[float] = None,
        critical_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.budget_seconds = (
            budget_seconds if budget_seconds is not None else settings.STAGE_TIME_BUDGET_SECONDS
        )
        self.warning_seconds = (
            warning_seconds if warning_seconds is not None else settings.STAGE_WARNING_SECONDS
        )
        self.critical_seconds = (
            critical_seconds if critical_seconds is not None else settings.STAGE_CRITICAL_SECONDS
        )
        self._clock = clock
        self._started = clock()
        self._checkpoints: List[Tuple[str, float]] = []

    def elapsed(self) -> float:
        """Seconds since the guard was created."""
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    def checkpoint(self, label: str) -> float:
        """Record a named point in time for the performance log."""
        elapsed = self.elapsed()
        self._checkpoints.append((label, elapsed))
        return elapsed

    def is_exhausted(self) -> bool:
        """True once no new page or batch should be started."""
        return self.elapsed() >= self.warning_seconds

    def is_critical(self) -> bool:
        return self.elapsed() >= self.critical_seconds

    def summary(self) -> Dict[str, float]:
        return {label: round(at, 3) for label, at in self._checkpoints}

    def log_performance_warning(self) -> None:
        """Emit a warning line when thresholds were crossed."""
        elapsed = self.elapsed()
        if elapsed >= self.critical_seconds:
            logger.error(
                f"[PERFORMANCE CRITICAL] {self.name} took {elapsed:.2f}s "
                f"(budget {self.budget_seconds:.0f}s)",
                extra={"checkpoints": self.summary()}
            )
        elif elapsed >= self.warning_seconds:
            logger.warning(
                f"[PERFORMANCE WARNING] {self.name} took {elapsed:.2f}s "
                f"(warning at {self.warning_seconds:.0f}s)",
                extra={"checkpoints": self.summary()}
            )
