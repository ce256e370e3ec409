"""
Base models for arcquery.

This module provides the base SQLModel class and the enumerations shared by
the stored entities and the query engine.
"""

import enum

from sqlmodel import SQLModel


class BaseModel(SQLModel):
    """Base model for all arcquery tables."""

    pass


class QueryRetrieveLevel(str, enum.Enum):
    """Enumeration of DICOM query levels, root first."""

    PATIENT = "PATIENT"
    STUDY = "STUDY"
    SERIES = "SERIES"
    IMAGE = "IMAGE"

    @property
    def depth(self) -> int:
        """Position of the level in the Patient → Instance hierarchy."""
        return _LEVEL_ORDER.index(self)

    def ancestors(self) -> tuple["QueryRetrieveLevel", ...]:
        """Levels above this one, nearest first."""
        return tuple(reversed(_LEVEL_ORDER[: self.depth]))

    def descendants(self) -> tuple["QueryRetrieveLevel", ...]:
        """Levels below this one, nearest first."""
        return _LEVEL_ORDER[self.depth + 1 :]


_LEVEL_ORDER = tuple(QueryRetrieveLevel)


class Availability(str, enum.Enum):
    """Where and how readily the data of an entity can be retrieved."""

    ONLINE = "ONLINE"
    NEARLINE = "NEARLINE"
    OFFLINE = "OFFLINE"
    UNAVAILABLE = "UNAVAILABLE"

    @classmethod
    def worst(cls, values: "list[Availability]") -> "Availability":
        """Least readily available value of ``values`` (UNAVAILABLE if empty)."""
        order = list(cls)
        return max(values, key=order.index, default=cls.UNAVAILABLE)


class MatchingMode(str, enum.Enum):
    """Comparison mode for textual attributes."""

    EXACT = "EXACT"
    FUZZY = "FUZZY"
