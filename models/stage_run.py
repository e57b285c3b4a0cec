from sqlalchemy import Column, BigInteger, Enum, DateTime, Float, Integer, Text, Index
from core.timing import utcnow
from models.base import Base, JSONType, RunStatus, StageName


class StageRun(Base):
    """
    Metrics for one stage invocation.

    Purpose:
    - Operator visibility (success flag, item count, duration, error string)
    - Input for the status endpoint and the external dashboard
    """
    __tablename__ = "stage_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    stage = Column(Enum(StageName), nullable=False, index=True)
    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    items_processed = Column(Integer, default=0, nullable=False)
    items_failed = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
    details = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_stage_run_stage_started", "stage", "started_at"),
    )
