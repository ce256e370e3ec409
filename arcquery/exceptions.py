"""
Exceptions for arcquery.

This module provides the error taxonomy of the query engine. Configuration and
query-building errors are raised before any row is read; codec errors are
per-row; aggregate computation errors fail the whole request; cache write
errors are logged and never reach the caller of a query.
"""


class ArcQueryError(Exception):
    """Base exception for all arcquery-specific errors."""

    pass


class ConfigurationError(ArcQueryError):
    """Invalid or missing query parameters, attribute filters or query level."""

    pass


class QueryBuildError(ArcQueryError):
    """A requested key cannot be turned into a matching predicate."""

    def __init__(self, keyword: str, reason: str) -> None:
        super().__init__(f"Unsupported matching key '{keyword}': {reason}")
        self.keyword = keyword


class AttributeCodecError(ArcQueryError):
    """Base exception for attribute blob encoding and decoding errors."""

    pass


class EncodingError(AttributeCodecError):
    """An attribute set holds a value that cannot be encoded."""

    pass


class DecodingError(AttributeCodecError):
    """A stored attribute blob is truncated or corrupt."""

    pass


class AggregateComputeError(ArcQueryError):
    """Child rows could not be read to compute an aggregate."""

    def __init__(self, entity: str, key: int) -> None:
        super().__init__(f"Failed to compute {entity} aggregate for pk={key}")
        self.entity = entity
        self.key = key


class CacheWriteError(ArcQueryError):
    """A computed aggregate could not be stored."""

    pass


class IndexingError(ArcQueryError):
    """An attribute set lacks attributes required to store it."""

    pass
