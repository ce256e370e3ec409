"""
Level query variants.

One ``LevelQuery`` exists per query/retrieve level. Each carries the columns
it selects, how it joins the ancestor entities and its aggregate cache table,
the predicates of a request and the conversion of a result row into the
composed attribute set of the matched entity.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pydicom import Dataset
from sqlalchemy import Row, and_, exists, func, select
from sqlalchemy.sql import ColumnElement, Select
from sqlmodel import SQLModel

from arcquery.models import (
    Availability,
    Instance,
    Patient,
    QueryRetrieveLevel,
    Series,
    SeriesQueryAttributes,
    Study,
    StudyQueryAttributes,
)
from arcquery.query.aggregates import AggregateCache, series_lookup, split_values, study_lookup
from arcquery.query.builder import (
    ancestor_predicates,
    apply_join_chain,
    relational_predicates,
    visibility_predicates,
)
from arcquery.query.context import QueryContext
from arcquery.query.models import Present
from arcquery.utils.attributes import decode, filter_attributes, merge_and_normalize
from arcquery.utils.logger import logger

PATIENT = QueryRetrieveLevel.PATIENT
STUDY = QueryRetrieveLevel.STUDY
SERIES = QueryRetrieveLevel.SERIES
IMAGE = QueryRetrieveLevel.IMAGE

# Result column holding the attribute blob of each level
BLOB_COLUMNS = {
    PATIENT: "patient_attributes",
    STUDY: "study_attributes",
    SERIES: "series_attributes",
    IMAGE: "instance_attributes",
}

Converter = Callable[[Row, QueryContext, AggregateCache], Awaitable[Dataset | None]]


@dataclass(frozen=True)
class LevelQuery:
    """Query variant of one level.

    Attributes:
        level: The query/retrieve level
        entity: Table matched at this level
        projection: Selected columns of a request; ``pk`` and one blob per
            contributing level
        apply_joins: Adds ancestor joins and the aggregate cache join
        predicate: Builds the WHERE conditions of a request
        convert: Turns a result row into attributes, or None to skip it
    """

    level: QueryRetrieveLevel
    entity: type[SQLModel]
    projection: Callable[[QueryContext], tuple]
    apply_joins: Callable[[Select, QueryContext], Select]
    predicate: Callable[[QueryContext], list[ColumnElement[bool]]]
    convert: Converter

    def statement(self, context: QueryContext) -> Select:
        """Compose the full statement of a request, ordered by primary key."""
        statement = select(*self.projection(context)).select_from(self.entity)
        statement = self.apply_joins(statement, context)
        return statement.where(*self.predicate(context)).order_by(self.entity.pk)

    async def to_attributes(
        self, row: Row, context: QueryContext, cache: AggregateCache
    ) -> Dataset | None:
        """Composed attributes of a row, or None if the row must not be returned.

        Raises:
            DecodingError: If a stored attribute blob is corrupt
            AggregateComputeError: If a missing aggregate cannot be computed
        """
        return await self.convert(row, context, cache)


def _ancestor_joins(level: QueryRetrieveLevel) -> Callable[[Select, QueryContext], Select]:
    def apply(statement: Select, context: QueryContext) -> Select:
        return apply_join_chain(statement, level)

    return apply


def _study_joins(statement: Select, context: QueryContext) -> Select:
    statement = apply_join_chain(statement, STUDY)
    return statement.outerjoin(
        StudyQueryAttributes,
        and_(
            StudyQueryAttributes.study_fk == Study.pk,
            StudyQueryAttributes.view_id == context.params.view_id,
        ),
    )


def _series_joins(statement: Select, context: QueryContext) -> Select:
    statement = apply_join_chain(statement, SERIES)
    return statement.outerjoin(
        SeriesQueryAttributes,
        and_(
            SeriesQueryAttributes.series_fk == Series.pk,
            SeriesQueryAttributes.view_id == context.params.view_id,
        ),
    )


def _predicates(level: QueryRetrieveLevel) -> Callable[[QueryContext], list[ColumnElement[bool]]]:
    def build(context: QueryContext) -> list[ColumnElement[bool]]:
        return ancestor_predicates(
            level, context.keys, context.patient_ids, context.params
        ) + relational_predicates(level, context.keys, context.params)

    return build


def _compose(row: Row, context: QueryContext, levels: tuple[QueryRetrieveLevel, ...]) -> Dataset:
    """Decode, filter and merge the blobs of ``levels``, root first."""
    ds = Dataset()
    for level in levels:
        attrs = decode(getattr(row, BLOB_COLUMNS[level]))
        attrs = filter_attributes(attrs, context.params.attribute_filter(level))
        ds = merge_and_normalize(ds, attrs)
    return ds


def _stamp_retrieve(
    ds: Dataset,
    retrieve_aets: tuple[str, ...],
    external_retrieve_aet: str | None,
    availability: Availability,
) -> None:
    if retrieve_aets:
        ds.RetrieveAETitle = list(retrieve_aets)
    elif external_retrieve_aet:
        ds.RetrieveAETitle = external_retrieve_aet
    ds.InstanceAvailability = Availability(availability).value


async def _patient_attributes(
    row: Row, context: QueryContext, cache: AggregateCache
) -> Dataset | None:
    ds = _compose(row, context, (PATIENT,))
    ds.NumberOfPatientRelatedStudies = row.number_of_studies
    ds.QueryRetrieveLevel = PATIENT.value
    return ds


async def _study_attributes(
    row: Row, context: QueryContext, cache: AggregateCache
) -> Dataset | None:
    match study_lookup(row, row.pk, context.params):
        case Present(aggregate=aggregate):
            logger.debug(f"Using cached aggregate of study pk={row.pk}")
        case _:
            aggregate = await cache.recompute_study(row.pk, context.params)
            context.defer_write(aggregate)

    if aggregate.number_of_instances == 0:
        logger.debug(f"Skipping study pk={row.pk} without visible instances")
        return None

    ds = _compose(row, context, (PATIENT, STUDY))
    ds.NumberOfStudyRelatedSeries = aggregate.number_of_series
    ds.NumberOfStudyRelatedInstances = aggregate.number_of_instances
    ds.ModalitiesInStudy = list(aggregate.modalities_in_study)
    ds.SOPClassesInStudy = list(aggregate.sop_classes_in_study)
    _stamp_retrieve(
        ds, aggregate.retrieve_aets, aggregate.external_retrieve_aet, aggregate.availability
    )
    ds.QueryRetrieveLevel = STUDY.value
    return ds


async def _series_attributes(
    row: Row, context: QueryContext, cache: AggregateCache
) -> Dataset | None:
    match series_lookup(row, row.pk, context.params):
        case Present(aggregate=aggregate):
            logger.debug(f"Using cached aggregate of series pk={row.pk}")
        case _:
            aggregate = await cache.recompute_series(row.pk, context.params)
            context.defer_write(aggregate)

    if aggregate.number_of_instances == 0:
        logger.debug(f"Skipping series pk={row.pk} without visible instances")
        return None

    ds = _compose(row, context, (PATIENT, STUDY, SERIES))
    ds.NumberOfSeriesRelatedInstances = aggregate.number_of_instances
    _stamp_retrieve(
        ds, aggregate.retrieve_aets, aggregate.external_retrieve_aet, aggregate.availability
    )
    ds.QueryRetrieveLevel = SERIES.value
    return ds


async def _instance_attributes(
    row: Row, context: QueryContext, cache: AggregateCache
) -> Dataset | None:
    ds = _compose(row, context, (PATIENT, STUDY, SERIES, IMAGE))
    _stamp_retrieve(
        ds, split_values(row.retrieve_aets), row.external_retrieve_aet, row.availability
    )
    ds.QueryRetrieveLevel = IMAGE.value
    return ds


def _columns(*columns) -> Callable[[QueryContext], tuple]:
    return lambda context: columns


def _patient_columns(context: QueryContext) -> tuple:
    # Studies without visible instances are not returned at study level
    visible = (
        select(Instance.pk)
        .join(Series, Instance.series_fk == Series.pk)
        .where(Series.study_fk == Study.pk, *visibility_predicates(context.params))
        .correlate(Study)
    )
    number_of_studies = (
        select(func.count(Study.pk))
        .where(Study.patient_fk == Patient.pk, exists(visible))
        .correlate(Patient)
        .scalar_subquery()
        .label("number_of_studies")
    )
    return (
        Patient.pk.label("pk"),
        number_of_studies,
        Patient.attributes.label("patient_attributes"),
    )


_STUDY_CACHE_COLUMNS = (
    StudyQueryAttributes.number_of_series,
    StudyQueryAttributes.number_of_instances,
    StudyQueryAttributes.modalities_in_study,
    StudyQueryAttributes.sop_classes_in_study,
    StudyQueryAttributes.retrieve_aets,
    StudyQueryAttributes.external_retrieve_aet,
    StudyQueryAttributes.availability,
    StudyQueryAttributes.updated_at,
)

_SERIES_CACHE_COLUMNS = (
    SeriesQueryAttributes.number_of_instances,
    SeriesQueryAttributes.retrieve_aets,
    SeriesQueryAttributes.external_retrieve_aet,
    SeriesQueryAttributes.availability,
    SeriesQueryAttributes.updated_at,
)

PATIENT_QUERY = LevelQuery(
    level=PATIENT,
    entity=Patient,
    projection=_patient_columns,
    apply_joins=_ancestor_joins(PATIENT),
    predicate=_predicates(PATIENT),
    convert=_patient_attributes,
)

STUDY_QUERY = LevelQuery(
    level=STUDY,
    entity=Study,
    projection=_columns(
        Study.pk.label("pk"),
        *_STUDY_CACHE_COLUMNS,
        Study.attributes.label("study_attributes"),
        Patient.attributes.label("patient_attributes"),
    ),
    apply_joins=_study_joins,
    predicate=_predicates(STUDY),
    convert=_study_attributes,
)

SERIES_QUERY = LevelQuery(
    level=SERIES,
    entity=Series,
    projection=_columns(
        Series.pk.label("pk"),
        *_SERIES_CACHE_COLUMNS,
        Series.attributes.label("series_attributes"),
        Study.attributes.label("study_attributes"),
        Patient.attributes.label("patient_attributes"),
    ),
    apply_joins=_series_joins,
    predicate=_predicates(SERIES),
    convert=_series_attributes,
)

IMAGE_QUERY = LevelQuery(
    level=IMAGE,
    entity=Instance,
    projection=_columns(
        Instance.pk.label("pk"),
        Instance.retrieve_aets,
        Instance.external_retrieve_aet,
        Instance.availability,
        Instance.attributes.label("instance_attributes"),
        Series.attributes.label("series_attributes"),
        Study.attributes.label("study_attributes"),
        Patient.attributes.label("patient_attributes"),
    ),
    apply_joins=_ancestor_joins(IMAGE),
    predicate=_predicates(IMAGE),
    convert=_instance_attributes,
)

LEVEL_QUERIES: dict[QueryRetrieveLevel, LevelQuery] = {
    PATIENT: PATIENT_QUERY,
    STUDY: STUDY_QUERY,
    SERIES: SERIES_QUERY,
    IMAGE: IMAGE_QUERY,
}
