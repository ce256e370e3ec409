"""
Study, series and instance models for arcquery.

Each child row carries a foreign key to its parent; the query engine composes
joins explicitly, so no ORM relationships are declared.
"""

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field

from .base import Availability, BaseModel


class Study(BaseModel, table=True):
    """Model representing a medical imaging study."""

    pk: int | None = Field(default=None, primary_key=True)
    patient_fk: int = Field(foreign_key="patient.pk", index=True)
    study_iuid: str = Field(max_length=64, unique=True)
    study_id: str | None = Field(default=None, max_length=16)
    study_date: str | None = Field(default=None, max_length=8)
    study_time: str | None = Field(default=None, max_length=16)
    accession_number: str | None = Field(default=None, max_length=16)
    study_description: str | None = Field(default=None, max_length=64)
    referring_physician_name: str | None = Field(default=None, max_length=320)
    attributes: bytes = Field(sa_column=Column(LargeBinary, nullable=False))


class Series(BaseModel, table=True):
    """Model representing a series within a study."""

    pk: int | None = Field(default=None, primary_key=True)
    study_fk: int = Field(foreign_key="study.pk", index=True)
    series_iuid: str = Field(max_length=64, unique=True)
    series_number: int | None = None
    modality: str | None = Field(default=None, max_length=16)
    series_description: str | None = Field(default=None, max_length=64)
    body_part_examined: str | None = Field(default=None, max_length=16)
    institution_name: str | None = Field(default=None, max_length=64)
    attributes: bytes = Field(sa_column=Column(LargeBinary, nullable=False))


class Instance(BaseModel, table=True):
    """Model representing a single composite object (image) of a series."""

    pk: int | None = Field(default=None, primary_key=True)
    series_fk: int = Field(foreign_key="series.pk", index=True)
    sop_iuid: str = Field(max_length=64, unique=True)
    sop_cuid: str = Field(max_length=64)
    instance_number: int | None = None
    retrieve_aets: str | None = Field(default=None, max_length=256)
    external_retrieve_aet: str | None = Field(default=None, max_length=16)
    availability: Availability = Field(default=Availability.ONLINE)
    rejection_code: str | None = Field(default=None, max_length=64)
    attributes: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
