"""Pydantic models for query configuration."""

import hashlib
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydicom.datadict import tag_for_keyword

from arcquery.exceptions import ConfigurationError
from arcquery.models.base import MatchingMode, QueryRetrieveLevel
from arcquery.settings import Settings

WILDCARDS = ("*", "?")


def contains_wildcard(value: str | None) -> bool:
    """Check whether a matching key value uses wildcard characters."""
    return bool(value) and any(c in value for c in WILDCARDS)


class IDWithIssuer(BaseModel):
    """Patient identifier qualified by its issuing authority."""

    model_config = ConfigDict(frozen=True)

    id: str
    issuer: str | None = None

    @property
    def has_wildcard(self) -> bool:
        return contains_wildcard(self.id)

    def __str__(self) -> str:
        return f"{self.id}^^^{self.issuer}" if self.issuer else self.id


class QueryParameters(BaseModel):
    """Immutable per-request query configuration.

    Shared read-only by every row of a request. ``view_id`` identifies the
    instance visibility rules, so cached aggregates computed under different
    rules never mix.
    """

    model_config = ConfigDict(frozen=True)

    matching_mode: MatchingMode = MatchingMode.EXACT
    relational: bool = False
    max_results: int = Field(default=0, ge=0)
    match_unknown: bool = False
    show_rejected: bool = False
    aggregate_max_age: int | None = Field(default=None, ge=0)
    accessible_aets: tuple[str, ...] = ()
    attribute_filters: dict[QueryRetrieveLevel, tuple[str, ...]] = Field(default_factory=dict)

    @field_validator("attribute_filters")
    @classmethod
    def check_filter_keywords(
        cls, value: dict[QueryRetrieveLevel, tuple[str, ...]]
    ) -> dict[QueryRetrieveLevel, tuple[str, ...]]:
        for level, keywords in value.items():
            unknown = [k for k in keywords if tag_for_keyword(k) is None]
            if unknown:
                raise ValueError(f"Unknown attributes in {level.value} filter: {', '.join(unknown)}")
        return value

    @property
    def fuzzy(self) -> bool:
        return self.matching_mode == MatchingMode.FUZZY

    @property
    def view_id(self) -> str:
        """Name of the visibility view the aggregates are computed for."""
        view = "all" if self.show_rejected else "visible"
        if self.accessible_aets:
            view += ":" + ",".join(sorted(self.accessible_aets))
        if len(view) > 64:
            view = "h:" + hashlib.sha1(view.encode()).hexdigest()
        return view

    def attribute_filter(self, level: QueryRetrieveLevel) -> tuple[str, ...]:
        """Attribute keywords kept for ``level`` (empty keeps everything)."""
        return self.attribute_filters.get(level, ())

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> Self:
        """Build query parameters from settings, applying per-request overrides.

        Raises:
            ConfigurationError: If the resulting parameters are invalid
        """
        values = {
            "matching_mode": MatchingMode.FUZZY if settings.fuzzy_matching else MatchingMode.EXACT,
            "relational": settings.relational_queries,
            "max_results": settings.max_results,
            "match_unknown": settings.match_unknown,
            "show_rejected": settings.show_rejected,
            "aggregate_max_age": settings.aggregate_max_age,
            "accessible_aets": tuple(settings.accessible_aets),
            "attribute_filters": {
                QueryRetrieveLevel.PATIENT: tuple(settings.patient_attributes),
                QueryRetrieveLevel.STUDY: tuple(settings.study_attributes),
                QueryRetrieveLevel.SERIES: tuple(settings.series_attributes),
                QueryRetrieveLevel.IMAGE: tuple(settings.instance_attributes),
            },
        }
        values.update(overrides)
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid query parameters: {e}") from e
