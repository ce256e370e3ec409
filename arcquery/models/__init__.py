"""
arcquery data models.

This package contains the SQLModel-based models that define the archive
schema read by the query engine.
"""

from .base import Availability, BaseModel, MatchingMode, QueryRetrieveLevel
from .patient import Patient
from .query_attributes import SeriesQueryAttributes, StudyQueryAttributes
from .study import Instance, Series, Study

__all__ = [
    # Base
    "Availability",
    "BaseModel",
    "MatchingMode",
    "QueryRetrieveLevel",
    # Entities
    "Instance",
    "Patient",
    "Series",
    "Study",
    # Aggregates
    "SeriesQueryAttributes",
    "StudyQueryAttributes",
]
