"""Per-field AI metadata with independent classification timestamps."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


METADATA_FIELDS = frozenset(
    {
        "recommended_category",
        "category",
        "time_estimate",
        "time_estimate_minutes",
        "size",
        "priority_score",
        "energy_level",
        "needs_supplies",
        "can_delegate",
        "requires_driving",
        "time_constraint",
        "ai_confidence",
        "ai_reasoning",
        "classification_source",
        "recommendation_applied",
    }
)

SOURCE_AI = "ai"
SOURCE_MANUAL = "manual"


class FieldMetadata(SQLModel, table=True):
    """One ``(task, field)`` pair; ``classified_at`` only ever moves forward."""

    __tablename__ = "field_metadata"

    task_id: str = Field(primary_key=True)
    field_name: str = Field(primary_key=True)
    value: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    classified_at: datetime
    source: str = SOURCE_AI
    content_hash: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class FieldValue:
    value: Any
    classified_at: datetime
    source: str = SOURCE_AI
    content_hash: Optional[str] = None


__all__ = [
    "FieldMetadata",
    "FieldValue",
    "METADATA_FIELDS",
    "SOURCE_AI",
    "SOURCE_MANUAL",
]
