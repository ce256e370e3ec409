"""
Patient model for arcquery.

Searchable patient attributes are kept in columns; the full (filtered)
attribute set is stored as an encoded blob.
"""

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field

from .base import BaseModel


class Patient(BaseModel, table=True):
    """Model representing a patient in the archive."""

    pk: int | None = Field(default=None, primary_key=True)
    patient_id: str | None = Field(default=None, max_length=64, index=True)
    issuer_of_patient_id: str | None = Field(default=None, max_length=64)
    patient_name: str | None = Field(default=None, max_length=320, index=True)
    patient_name_fuzzy: str | None = Field(default=None, max_length=64)
    patient_birth_date: str | None = Field(default=None, max_length=8)
    patient_sex: str | None = Field(default=None, max_length=16)
    attributes: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
