from sqlalchemy import Column, String, DateTime, Text, Index
from core.timing import utcnow
from models.base import Base


class KVEntry(Base):
    """
    Durable key-value entry.

    Namespaces in use:
        settings      checkpoint cursors
        fail_queue    failed work units awaiting retry
        dead_letter   work units that exhausted their retries
        cache         cached read responses (TTL bounded)
        sitemap       generated sitemap documents
    """
    __tablename__ = "kv_entries"

    namespace = Column(String(50), primary_key=True)
    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)

    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_kv_expires", "namespace", "expires_at"),
    )
