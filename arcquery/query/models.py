"""Value types exchanged by the query engine."""

from dataclasses import dataclass
from typing import NamedTuple

from arcquery.exceptions import AttributeCodecError
from arcquery.models.base import Availability, QueryRetrieveLevel


@dataclass(frozen=True, slots=True)
class StudyAggregate:
    """Derived counters and strings of a study."""

    study_pk: int
    view_id: str
    number_of_series: int
    number_of_instances: int
    modalities_in_study: tuple[str, ...] = ()
    sop_classes_in_study: tuple[str, ...] = ()
    retrieve_aets: tuple[str, ...] = ()
    external_retrieve_aet: str | None = None
    availability: Availability = Availability.UNAVAILABLE


@dataclass(frozen=True, slots=True)
class SeriesAggregate:
    """Derived counters and strings of a series."""

    series_pk: int
    view_id: str
    number_of_instances: int
    retrieve_aets: tuple[str, ...] = ()
    external_retrieve_aet: str | None = None
    availability: Availability = Availability.UNAVAILABLE


Aggregate = StudyAggregate | SeriesAggregate


@dataclass(frozen=True, slots=True)
class Present:
    """A cache row exists and may be trusted."""

    aggregate: Aggregate


class Absent:
    """No trustworthy cache row exists."""

    _instance: "Absent | None" = None

    def __new__(cls) -> "Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent()

CacheLookup = Present | Absent


class InstanceSnapshot(NamedTuple):
    """The columns of one visible instance an aggregate is computed from."""

    pk: int
    series_pk: int
    modality: str | None
    sop_cuid: str
    retrieve_aets: str | None
    external_retrieve_aet: str | None
    availability: Availability


@dataclass(frozen=True, slots=True)
class FailedRow:
    """A row whose stored attributes could not be decoded."""

    level: QueryRetrieveLevel
    pk: int
    error: AttributeCodecError
