from sqlalchemy import Column, String, DateTime, Float, Text, Index
from core.timing import utcnow
from models.base import Base
import uuid


def _new_place_id() -> str:
    return str(uuid.uuid4())


class NormalizedPlace(Base):
    """
    Structured place derived once from a RawRecord.

    Never re-derived: the normalize stage only picks raw records that do
    not have a place yet.
    """
    __tablename__ = "normalized_places"

    id = Column(String(36), primary_key=True, default=_new_place_id)
    source_id = Column(String(64), unique=True, nullable=False, index=True)

    name = Column(String(255), nullable=False)

    # Address components
    addr_road = Column(Text, nullable=True)
    addr_jibun = Column(Text, nullable=True)
    sido = Column(String(50), nullable=True)
    sigungu = Column(String(50), nullable=True)
    dong = Column(String(50), nullable=True)

    category = Column(String(255), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    status = Column(String(50), nullable=True)
    license_date = Column(String(20), nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_places_region", "sido", "sigungu", "dong"),
        Index("idx_places_category", "category"),
    )
