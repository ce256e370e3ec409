"""Query engine: parameters, request context, level queries and aggregate cache."""

from arcquery.query.aggregates import AggregateCache
from arcquery.query.context import QueryContext
from arcquery.query.levels import LEVEL_QUERIES, LevelQuery
from arcquery.query.models import (
    ABSENT,
    FailedRow,
    Present,
    SeriesAggregate,
    StudyAggregate,
)
from arcquery.query.params import IDWithIssuer, QueryParameters
from arcquery.query.service import QueryService

__all__ = [
    "ABSENT",
    "LEVEL_QUERIES",
    "AggregateCache",
    "FailedRow",
    "IDWithIssuer",
    "LevelQuery",
    "Present",
    "QueryContext",
    "QueryParameters",
    "QueryService",
    "SeriesAggregate",
    "StudyAggregate",
]
