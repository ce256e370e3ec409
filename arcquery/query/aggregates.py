"""
Lazy aggregate cache of studies and series.

Aggregates are computed from a snapshot of the visible instances of an entity
and stored per visibility view. A cached row is trusted while it is younger
than ``aggregate_max_age``; otherwise the aggregate is recomputed. Storing is a
separate step whose failure never invalidates the computed value.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arcquery.exceptions import AggregateComputeError, CacheWriteError
from arcquery.models import Availability, Instance, Series, SeriesQueryAttributes, StudyQueryAttributes
from arcquery.models.query_attributes import utcnow
from arcquery.query.builder import visibility_predicates
from arcquery.query.models import (
    ABSENT,
    Aggregate,
    CacheLookup,
    InstanceSnapshot,
    Present,
    SeriesAggregate,
    StudyAggregate,
)
from arcquery.query.params import QueryParameters
from arcquery.utils.logger import logger

# Dialects with an atomic INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}


def split_values(value: str | None) -> tuple[str, ...]:
    """Split a backslash separated column value."""
    return tuple(value.split("\\")) if value else ()


def join_values(values: Iterable[str]) -> str | None:
    """Join values into a backslash separated column value."""
    return "\\".join(values) or None


def _common_retrieve_aets(instances: list[InstanceSnapshot]) -> tuple[str, ...]:
    common: list[str] | None = None
    for inst in instances:
        aets = split_values(inst.retrieve_aets)
        common = list(aets) if common is None else [aet for aet in common if aet in aets]
    return tuple(common or ())


def _common_external_aet(instances: list[InstanceSnapshot]) -> str | None:
    values = {inst.external_retrieve_aet for inst in instances}
    return values.pop() if len(values) == 1 else None


def compute_study_aggregate(
    study_pk: int, view_id: str, instances: Iterable[InstanceSnapshot]
) -> StudyAggregate:
    """Compute the aggregate of a study from its visible instances.

    Args:
        study_pk: Primary key of the study
        view_id: Visibility view the instances were selected for
        instances: Visible instances of the study

    Returns:
        The study aggregate; zero counts if there are no instances
    """
    snapshot = sorted(instances, key=lambda inst: inst.pk)
    return StudyAggregate(
        study_pk=study_pk,
        view_id=view_id,
        number_of_series=len({inst.series_pk for inst in snapshot}),
        number_of_instances=len(snapshot),
        modalities_in_study=tuple(sorted({inst.modality for inst in snapshot if inst.modality})),
        sop_classes_in_study=tuple(sorted({inst.sop_cuid for inst in snapshot})),
        retrieve_aets=_common_retrieve_aets(snapshot),
        external_retrieve_aet=_common_external_aet(snapshot),
        availability=Availability.worst([inst.availability for inst in snapshot]),
    )


def compute_series_aggregate(
    series_pk: int, view_id: str, instances: Iterable[InstanceSnapshot]
) -> SeriesAggregate:
    """Compute the aggregate of a series from its visible instances."""
    snapshot = sorted(instances, key=lambda inst: inst.pk)
    return SeriesAggregate(
        series_pk=series_pk,
        view_id=view_id,
        number_of_instances=len(snapshot),
        retrieve_aets=_common_retrieve_aets(snapshot),
        external_retrieve_aet=_common_external_aet(snapshot),
        availability=Availability.worst([inst.availability for inst in snapshot]),
    )


def is_fresh(updated_at: datetime | None, max_age: int | None) -> bool:
    """Check whether a cache row written at ``updated_at`` may be trusted."""
    if max_age is None:
        return True
    if updated_at is None:
        return False
    if updated_at.tzinfo is None:
        # SQLite drops the offset of stored UTC times
        updated_at = updated_at.replace(tzinfo=UTC)
    return (utcnow() - updated_at).total_seconds() < max_age


def study_lookup(cached: Any, study_pk: int, params: QueryParameters) -> CacheLookup:
    """Interpret cached study aggregate columns.

    ``cached`` is either a ``StudyQueryAttributes`` row or a result row
    carrying the same column names from an outer join; NULL counts mean
    there is no cache row for the view.
    """
    if cached is None or cached.number_of_instances is None:
        return ABSENT
    if not is_fresh(cached.updated_at, params.aggregate_max_age):
        logger.debug(f"Cached aggregate of study pk={study_pk} is stale")
        return ABSENT
    return Present(
        StudyAggregate(
            study_pk=study_pk,
            view_id=params.view_id,
            number_of_series=cached.number_of_series,
            number_of_instances=cached.number_of_instances,
            modalities_in_study=split_values(cached.modalities_in_study),
            sop_classes_in_study=split_values(cached.sop_classes_in_study),
            retrieve_aets=split_values(cached.retrieve_aets),
            external_retrieve_aet=cached.external_retrieve_aet,
            availability=Availability(cached.availability),
        )
    )


def series_lookup(cached: Any, series_pk: int, params: QueryParameters) -> CacheLookup:
    """Interpret cached series aggregate columns, see ``study_lookup``."""
    if cached is None or cached.number_of_instances is None:
        return ABSENT
    if not is_fresh(cached.updated_at, params.aggregate_max_age):
        logger.debug(f"Cached aggregate of series pk={series_pk} is stale")
        return ABSENT
    return Present(
        SeriesAggregate(
            series_pk=series_pk,
            view_id=params.view_id,
            number_of_instances=cached.number_of_instances,
            retrieve_aets=split_values(cached.retrieve_aets),
            external_retrieve_aet=cached.external_retrieve_aet,
            availability=Availability(cached.availability),
        )
    )


def _snapshot_statement(params: QueryParameters):
    return (
        select(
            Instance.pk,
            Instance.series_fk,
            Series.modality,
            Instance.sop_cuid,
            Instance.retrieve_aets,
            Instance.external_retrieve_aet,
            Instance.availability,
        )
        .join(Series, Instance.series_fk == Series.pk)
        .where(*visibility_predicates(params))
        .order_by(Instance.pk)
    )


class AggregateCache:
    """Read, recompute and store aggregates through one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def read_cached_study(self, study_pk: int, params: QueryParameters) -> CacheLookup:
        """Read the cached aggregate of a study; never recomputes."""
        statement = select(StudyQueryAttributes).where(
            StudyQueryAttributes.study_fk == study_pk,
            StudyQueryAttributes.view_id == params.view_id,
        ).execution_options(populate_existing=True)
        result = await self.session.execute(statement)
        return study_lookup(result.scalars().first(), study_pk, params)

    async def read_cached_series(self, series_pk: int, params: QueryParameters) -> CacheLookup:
        """Read the cached aggregate of a series; never recomputes."""
        statement = select(SeriesQueryAttributes).where(
            SeriesQueryAttributes.series_fk == series_pk,
            SeriesQueryAttributes.view_id == params.view_id,
        ).execution_options(populate_existing=True)
        result = await self.session.execute(statement)
        return series_lookup(result.scalars().first(), series_pk, params)

    async def _snapshot(self, statement, entity: str, key: int) -> list[InstanceSnapshot]:
        try:
            result = await self.session.execute(statement)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read instances of {entity} pk={key}: {e}")
            raise AggregateComputeError(entity, key) from e
        return [InstanceSnapshot(*row) for row in result.all()]

    async def recompute_study(self, study_pk: int, params: QueryParameters) -> StudyAggregate:
        """Compute the aggregate of a study from its live instances.

        Raises:
            AggregateComputeError: If the instances cannot be read
        """
        statement = _snapshot_statement(params).where(Series.study_fk == study_pk)
        snapshot = await self._snapshot(statement, "study", study_pk)
        return compute_study_aggregate(study_pk, params.view_id, snapshot)

    async def recompute_series(self, series_pk: int, params: QueryParameters) -> SeriesAggregate:
        """Compute the aggregate of a series from its live instances.

        Raises:
            AggregateComputeError: If the instances cannot be read
        """
        statement = _snapshot_statement(params).where(Instance.series_fk == series_pk)
        snapshot = await self._snapshot(statement, "series", series_pk)
        return compute_series_aggregate(series_pk, params.view_id, snapshot)

    async def _upsert(self, model, fk_name: str, key: int, view_id: str, values: dict) -> None:
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise CacheWriteError(f"Cannot store aggregates in a {dialect} database")
        values = {**values, "updated_at": utcnow()}
        statement = (
            insert(model)
            .values({fk_name: key, "view_id": view_id, **values})
            .on_conflict_do_update(index_elements=[fk_name, "view_id"], set_=values)
        )
        try:
            await self.session.execute(statement)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise CacheWriteError(
                f"Failed to store {model.__tablename__} row for pk={key}, view {view_id}: {e}"
            ) from e

    async def persist(self, aggregate: Aggregate) -> None:
        """Insert or update the cache row of ``aggregate`` and commit.

        Concurrent writers of the same row do not conflict; the last one wins.

        Raises:
            CacheWriteError: If the row cannot be written
        """
        common = {
            "number_of_instances": aggregate.number_of_instances,
            "retrieve_aets": join_values(aggregate.retrieve_aets),
            "external_retrieve_aet": aggregate.external_retrieve_aet,
            "availability": aggregate.availability,
        }
        if isinstance(aggregate, StudyAggregate):
            values = {
                **common,
                "number_of_series": aggregate.number_of_series,
                "modalities_in_study": join_values(aggregate.modalities_in_study),
                "sop_classes_in_study": join_values(aggregate.sop_classes_in_study),
            }
            await self._upsert(
                StudyQueryAttributes, "study_fk", aggregate.study_pk, aggregate.view_id, values
            )
        else:
            await self._upsert(
                SeriesQueryAttributes, "series_fk", aggregate.series_pk, aggregate.view_id, common
            )

    async def store(self, aggregate: Aggregate) -> bool:
        """Persist ``aggregate``, logging instead of raising on failure.

        Returns:
            True if the cache row was written
        """
        try:
            await self.persist(aggregate)
        except CacheWriteError as e:
            logger.warning(f"{e}; returning computed aggregate")
            return False
        return True

    async def get_study(self, study_pk: int, params: QueryParameters) -> StudyAggregate:
        """Cached aggregate of a study, recomputed and stored on a miss."""
        match await self.read_cached_study(study_pk, params):
            case Present(aggregate=aggregate):
                logger.debug(f"Aggregate cache hit for study pk={study_pk}")
                return aggregate
        aggregate = await self.recompute_study(study_pk, params)
        await self.store(aggregate)
        return aggregate

    async def get_series(self, series_pk: int, params: QueryParameters) -> SeriesAggregate:
        """Cached aggregate of a series, recomputed and stored on a miss."""
        match await self.read_cached_series(series_pk, params):
            case Present(aggregate=aggregate):
                logger.debug(f"Aggregate cache hit for series pk={series_pk}")
                return aggregate
        aggregate = await self.recompute_series(series_pk, params)
        await self.store(aggregate)
        return aggregate
