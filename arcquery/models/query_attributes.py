"""
Denormalized aggregate rows for study and series queries.

One row exists per entity and visibility view; ``view_id`` names the set of
query parameters that decided which instances were counted.
"""

from datetime import UTC, datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from .base import Availability, BaseModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class StudyQueryAttributes(BaseModel, table=True):
    """Cached aggregate of a study."""

    __tablename__ = "study_query_attributes"
    __table_args__ = (UniqueConstraint("study_fk", "view_id"),)

    pk: int | None = Field(default=None, primary_key=True)
    study_fk: int = Field(foreign_key="study.pk", index=True)
    view_id: str = Field(max_length=64)
    number_of_series: int = 0
    number_of_instances: int = 0
    modalities_in_study: str | None = None
    sop_classes_in_study: str | None = None
    retrieve_aets: str | None = None
    external_retrieve_aet: str | None = None
    availability: Availability = Field(default=Availability.UNAVAILABLE)
    updated_at: datetime = Field(default_factory=utcnow)


class SeriesQueryAttributes(BaseModel, table=True):
    """Cached aggregate of a series."""

    __tablename__ = "series_query_attributes"
    __table_args__ = (UniqueConstraint("series_fk", "view_id"),)

    pk: int | None = Field(default=None, primary_key=True)
    series_fk: int = Field(foreign_key="series.pk", index=True)
    view_id: str = Field(max_length=64)
    number_of_instances: int = 0
    retrieve_aets: str | None = None
    external_retrieve_aet: str | None = None
    availability: Availability = Field(default=Availability.UNAVAILABLE)
    updated_at: datetime = Field(default_factory=utcnow)
