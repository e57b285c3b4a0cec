from sqlalchemy import Column, String, DateTime, Text, Boolean, ForeignKey, Index
from models.base import Base


class PublishMeta(Base):
    """
    Publication state of a NormalizedPlace (1:1, same primary key).

    State machine:
        NORMALIZED  is_publishable=False, ai_summary NULL
        ENRICHED    is_publishable=True
        PUBLISHED   slug set, last_published_at set (exactly once)
    """
    __tablename__ = "publish_meta"

    biz_id = Column(String(36), ForeignKey("normalized_places.id"), primary_key=True)

    slug = Column(String(255), unique=True, nullable=True)
    ai_summary = Column(Text, nullable=True)
    ai_faq = Column(Text, nullable=True)
    is_publishable = Column(Boolean, nullable=False, default=False)
    last_published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_publish_meta_pending", "is_publishable", "last_published_at"),
    )
