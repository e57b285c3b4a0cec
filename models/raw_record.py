from sqlalchemy import Column, String, DateTime, Float, Text, Index
from models.base import Base, JSONType
from core.timing import utcnow


class RawRecord(Base):
    """
    One row per upstream item, exactly as fetched.

    Write-once: fetch stages insert with conflict-ignore on source_id, so
    fetching the same page twice is a no-op.
    """
    __tablename__ = "raw_records"

    source_id = Column(String(64), primary_key=True)

    name_raw = Column(String(255), nullable=True)
    addr_raw = Column(Text, nullable=True)
    category_raw = Column(String(255), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    raw_payload = Column(JSONType, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_raw_records_fetched_at", "fetched_at"),
    )
