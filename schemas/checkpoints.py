"""
Typed checkpoint cursors.

Cursors are only turned into strings at the checkpoint store boundary;
stages work with these models.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Settings keys in the durable key-value store
PARTITION_INDEX_KEY = "next_partition_index"
INITIAL_PARTITION_KEY = "initial_fetch_last_partition"
INITIAL_PAGE_KEY = "initial_fetch_last_page"
LAST_MODIFIED_KEY = "last_mod_date"
INCREMENTAL_PAGE_KEY = "incremental_fetch_last_page"

DEFAULT_PAGE = 1


def _parse_page(raw: Optional[str], key: str) -> int:
    if not raw:
        return DEFAULT_PAGE
    try:
        page = int(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable checkpoint {key}={raw!r}")
        return DEFAULT_PAGE
    return page if page >= 1 else DEFAULT_PAGE


class InitialFetchCursor(BaseModel):
    """
    Position of the by-partition fetch.

    partition_index: start of the next partition window
    resume_partition: partition interrupted mid-flight, if any
    resume_page: page to resume at within resume_partition
    """

    partition_index: int = Field(0, ge=0)
    resume_partition: Optional[str] = None
    resume_page: int = Field(DEFAULT_PAGE, ge=1)

    @classmethod
    def keys(cls):
        return [PARTITION_INDEX_KEY, INITIAL_PARTITION_KEY, INITIAL_PAGE_KEY]

    @classmethod
    def from_settings(cls, values: Dict[str, Optional[str]]) -> "InitialFetchCursor":
        raw_index = values.get(PARTITION_INDEX_KEY)
        try:
            index = max(int(raw_index), 0) if raw_index else 0
        except ValueError:
            logger.warning(f"Ignoring unparseable checkpoint {PARTITION_INDEX_KEY}={raw_index!r}")
            index = 0
        return cls(
            partition_index=index,
            resume_partition=values.get(INITIAL_PARTITION_KEY) or None,
            resume_page=_parse_page(values.get(INITIAL_PAGE_KEY), INITIAL_PAGE_KEY),
        )

    def to_settings(self) -> Dict[str, str]:
        return {
            PARTITION_INDEX_KEY: str(self.partition_index),
            INITIAL_PARTITION_KEY: self.resume_partition or "",
            INITIAL_PAGE_KEY: str(self.resume_page),
        }

    def resume_at(self, partition: str, page: int) -> "InitialFetchCursor":
        return self.model_copy(update={"resume_partition": partition, "resume_page": page})

    def cleared(self) -> "InitialFetchCursor":
        return self.model_copy(update={"resume_partition": None, "resume_page": DEFAULT_PAGE})


class IncrementalFetchCursor(BaseModel):
    """Watermark and page position of the by-date fetch."""

    last_modified: Optional[datetime] = None
    resume_page: int = Field(DEFAULT_PAGE, ge=1)

    @classmethod
    def keys(cls):
        return [LAST_MODIFIED_KEY, INCREMENTAL_PAGE_KEY]

    @classmethod
    def from_settings(cls, values: Dict[str, Optional[str]]) -> "IncrementalFetchCursor":
        raw_date = values.get(LAST_MODIFIED_KEY)
        last_modified = None
        if raw_date:
            try:
                last_modified = datetime.fromisoformat(raw_date)
            except ValueError:
                logger.warning(f"Ignoring unparseable checkpoint {LAST_MODIFIED_KEY}={raw_date!r}")
        return cls(
            last_modified=last_modified,
            resume_page=_parse_page(values.get(INCREMENTAL_PAGE_KEY), INCREMENTAL_PAGE_KEY),
        )

    def to_settings(self) -> Dict[str, str]:
        values = {INCREMENTAL_PAGE_KEY: str(self.resume_page)}
        if self.last_modified is not None:
            values[LAST_MODIFIED_KEY] = self.last_modified.isoformat()
        return values
