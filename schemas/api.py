"""
API request/response schemas
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HealthCheckResponse(BaseModel):
    """
    Health status.

    healthy: database reachable and configuration valid
    degraded: database reachable, configuration has errors
    unhealthy: database unreachable
    """

    status: str = "healthy"
    timestamp: datetime
    database_connected: bool
    environment: str
    config_errors: List[str] = Field(default_factory=list)
    config_warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def derive_status(self):
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.config_errors:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self


class StageRunSummary(BaseModel):
    """Most recent invocation of a stage"""

    model_config = ConfigDict(from_attributes=True)

    stage: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    items_processed: int = 0
    items_failed: int = 0
    error_message: Optional[str] = None


class PipelineStatusResponse(BaseModel):
    """Checkpoints, queue depths and recent runs"""

    checkpoints: Dict[str, Optional[str]]
    fail_queue_depth: int
    dead_letter_depth: int
    recent_runs: List[StageRunSummary]


class StageRunResponse(BaseModel):
    """Result of a manually triggered stage"""

    stage: str
    status: str
    items_processed: int
    items_failed: int
    duration_seconds: float
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error response"""

    error: str
    detail: Optional[str] = None
    timestamp: datetime
