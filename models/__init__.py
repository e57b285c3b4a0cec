"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (StageName, RunStatus)
    raw_record: Upstream items as fetched (write-once)
    place: Normalized places derived from raw records
    publish_meta: Enrichment and publication state per place
    kv_entry: Durable key-value store (checkpoints, fail queue, cache)
    stage_run: Per-invocation metrics

Relationships:
    - RawRecord.source_id → NormalizedPlace.source_id (one-to-one)
    - NormalizedPlace.id → PublishMeta.biz_id (one-to-one)
"""

from models.base import Base, StageName, RunStatus
from models.raw_record import RawRecord
from models.place import NormalizedPlace
from models.publish_meta import PublishMeta
from models.kv_entry import KVEntry
from models.stage_run import StageRun

__all__ = [
    "Base",
    "StageName",
    "RunStatus",
    "RawRecord",
    "NormalizedPlace",
    "PublishMeta",
    "KVEntry",
    "StageRun",
]
