"""
Query service.

Entry point of the query engine: streams the composed attribute sets of the
entities matching a request and serves single aggregates.
"""

from collections.abc import AsyncIterator

from pydicom import Dataset
from sqlalchemy.ext.asyncio import AsyncSession

from arcquery.exceptions import AttributeCodecError, ConfigurationError
from arcquery.models import QueryRetrieveLevel
from arcquery.query.aggregates import AggregateCache
from arcquery.query.builder import check_keys
from arcquery.query.context import QueryContext
from arcquery.query.levels import LEVEL_QUERIES, LevelQuery
from arcquery.query.models import FailedRow, SeriesAggregate, StudyAggregate
from arcquery.query.params import QueryParameters
from arcquery.utils.logger import logger


class QueryService:
    """Service for hierarchical find requests."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.cache = AggregateCache(session)

    def execute_query(
        self, level: QueryRetrieveLevel | str, context: QueryContext
    ) -> AsyncIterator[Dataset | FailedRow]:
        """Find the entities of ``level`` matching the request.

        The level, keys and parameters are validated and the statement is
        built before this method returns, so invalid requests fail before
        any row is read.

        Args:
            level: Query/retrieve level of the request
            context: The request

        Returns:
            Lazy sequence of attribute sets in primary key order. Rows whose
            stored attributes cannot be decoded are reported as ``FailedRow``.
            A caller that stops iterating early should ``aclose()`` the
            sequence; the cursor stays open until then and the aggregates
            recomputed so far are not stored.

        Raises:
            ConfigurationError: If the level is unknown
            QueryBuildError: If a requested key cannot be matched
        """
        try:
            level = QueryRetrieveLevel(level)
        except ValueError as e:
            raise ConfigurationError(f"Unknown query/retrieve level: {level}") from e
        query = LEVEL_QUERIES[level]
        check_keys(context.keys)
        statement = query.statement(context)
        logger.info(
            f"Query at {level.value} level, view {context.params.view_id}, "
            f"max results {context.params.max_results or 'unbounded'}"
        )
        return self._stream(query, statement, context)

    async def _stream(self, query: LevelQuery, statement, context: QueryContext):
        max_results = context.params.max_results
        result = await self.session.stream(statement)
        finished = False
        try:
            while not context.should_stop():
                if max_results and context.matched >= max_results:
                    logger.debug(f"Reached max results {max_results}")
                    break
                row = await result.fetchone()
                if row is None:
                    break
                try:
                    ds = await query.to_attributes(row, context, self.cache)
                except AttributeCodecError as e:
                    context.failed += 1
                    logger.error(f"Failed to decode attributes of {query.level.value} pk={row.pk}: {e}")
                    yield FailedRow(query.level, row.pk, e)
                    continue
                if ds is None:
                    context.skipped += 1
                    continue
                context.matched += 1
                yield ds
            finished = True
        finally:
            await result.close()
            await self._flush_pending_writes(context, finished)
            logger.info(
                f"Query at {query.level.value} level finished: {context.matched} matched, "
                f"{context.skipped} skipped, {context.failed} failed"
                + (" (cancelled)" if context.cancelled else "")
                + ("" if finished else " (abandoned)")
            )

    async def _flush_pending_writes(self, context: QueryContext, finished: bool) -> None:
        # Only a query that ran to its end stores its recomputed aggregates
        pending, context.pending_writes = context.pending_writes, []
        if not finished or context.cancelled:
            if pending:
                logger.debug(f"Dropping {len(pending)} aggregate writes of unfinished query")
            return
        for aggregate in pending:
            await self.cache.store(aggregate)

    async def get_aggregate(self, study_pk: int, params: QueryParameters) -> StudyAggregate:
        """Aggregate of a study, from cache or recomputed.

        Raises:
            AggregateComputeError: If the aggregate cannot be computed
        """
        return await self.cache.get_study(study_pk, params)

    async def get_series_aggregate(
        self, series_pk: int, params: QueryParameters
    ) -> SeriesAggregate:
        """Aggregate of a series, from cache or recomputed.

        Raises:
            AggregateComputeError: If the aggregate cannot be computed
        """
        return await self.cache.get_series(series_pk, params)
