"""
Fail-queue and dead-letter messages
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from core.timing import utcnow


class FetchFailurePayload(BaseModel):
    """
    Unit of fetch work that failed.

    initial_fetch carries partition + page, incremental_fetch carries
    last_modified + page. A payload without a unit replays the whole stage.
    """

    type: Literal["initial_fetch", "incremental_fetch"]
    partition: Optional[str] = None
    page: Optional[int] = Field(None, ge=1)
    last_modified: Optional[str] = None

    @property
    def has_unit(self) -> bool:
        if self.type == "initial_fetch":
            return self.partition is not None
        return self.last_modified is not None


class FailQueueMessage(BaseModel):
    """Stored under fail_queue (or dead_letter) as JSON."""

    payload: FetchFailurePayload
    retry_count: int = Field(0, ge=0)
    error: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    def next_attempt(self, error: str) -> "FailQueueMessage":
        return FailQueueMessage(
            payload=self.payload,
            retry_count=self.retry_count + 1,
            error=error,
            timestamp=utcnow(),
        )
