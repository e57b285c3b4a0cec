"""
Pydantic schemas for insert-ready rows and typed partial updates
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class RawRecordCreate(BaseModel):
    """
    Insert-ready RawRecord.

    Built by prepare_store_for_insert; coordinates are already
    range-checked.
    """

    source_id: str = Field(..., min_length=1, max_length=64)
    name_raw: Optional[str] = Field(None, max_length=255)
    addr_raw: Optional[str] = None
    category_raw: Optional[str] = Field(None, max_length=255)
    lat: Optional[float] = None
    lng: Optional[float] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    fetched_at: Optional[datetime] = None

    @field_validator("source_id")
    @classmethod
    def clean_source_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("source_id cannot be empty after stripping")
        return v


class NormalizedPlaceCreate(BaseModel):
    """Insert-ready NormalizedPlace derived from one RawRecord."""

    id: str
    source_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    addr_road: Optional[str] = None
    addr_jibun: Optional[str] = None
    sido: Optional[str] = None
    sigungu: Optional[str] = None
    dong: Optional[str] = None
    category: Optional[str] = Field(None, max_length=255)
    lat: Optional[float] = None
    lng: Optional[float] = None
    status: Optional[str] = None
    license_date: Optional[str] = None


class PublishMetaCreate(BaseModel):
    """PublishMeta row created alongside its place."""

    biz_id: str
    slug: Optional[str] = None
    is_publishable: bool = False


class EnrichmentUpdate(BaseModel):
    """Partial update written by the enrichment stage."""

    ai_summary: str
    ai_faq: Optional[str] = None
    is_publishable: bool = True


class PublishMetaUpdate(BaseModel):
    """
    Partial update written by the publish stage.

    slug is only present when it was computed during this publish.
    """

    slug: Optional[str] = None
    last_published_at: datetime

    def values(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
