from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class StageName(str, enum.Enum):
    """Pipeline stages, in chain order"""
    INITIAL_FETCH = "initial_fetch"
    INCREMENTAL_FETCH = "incremental_fetch"
    NORMALIZE = "normalize"
    ENRICH = "enrich"
    PUBLISH = "publish"
    RETRY = "retry"


class RunStatus(str, enum.Enum):
    """Outcome of one stage invocation"""
    RUNNING = "running"
    SUCCESS = "success"
    INTERRUPTED = "interrupted"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FAILED = "failed"
