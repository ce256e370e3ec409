"""
Configuration settings for arcquery.

This module provides a settings class for arcquery, with support for loading
configuration from TOML files and environment variables.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class DatabaseDriver(str, Enum):
    """Supported database drivers."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql+psycopg2"
    POSTGRESQL_ASYNC = "postgresql+asyncpg"


class Settings(BaseSettings):
    """Main settings class for arcquery.

    Query defaults declared here are turned into an immutable
    ``QueryParameters`` bundle once per request.
    """

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"], env_prefix="ARCQUERY_", extra="ignore"
    )

    debug: bool = False

    # Database settings
    database_driver: DatabaseDriver = DatabaseDriver.SQLITE
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "arcquery"
    database_username: str = "postgres"
    database_password: str = "postgres"

    # Query defaults
    fuzzy_matching: bool = False
    relational_queries: bool = False
    max_results: int = 0
    match_unknown: bool = False
    show_rejected: bool = False
    aggregate_max_age: int | None = None  # seconds; None trusts cached aggregates forever
    accessible_aets: list[str] = []  # empty: no retrieve AE title scoping

    # Storage defaults
    retrieve_aets: list[str] = ["ARCQUERY"]

    # Attribute filters (DICOM keywords); empty list keeps every attribute
    patient_attributes: list[str] = [
        "SpecificCharacterSet",
        "PatientName",
        "PatientID",
        "IssuerOfPatientID",
        "PatientBirthDate",
        "PatientBirthTime",
        "PatientSex",
        "OtherPatientNames",
        "PatientAge",
        "PatientSize",
        "PatientWeight",
    ]
    study_attributes: list[str] = [
        "SpecificCharacterSet",
        "StudyDate",
        "StudyTime",
        "AccessionNumber",
        "IssuerOfAccessionNumberSequence",
        "ReferringPhysicianName",
        "StudyDescription",
        "ProcedureCodeSequence",
        "StudyInstanceUID",
        "StudyID",
    ]
    series_attributes: list[str] = [
        "SpecificCharacterSet",
        "Modality",
        "Manufacturer",
        "InstitutionName",
        "StationName",
        "SeriesDescription",
        "BodyPartExamined",
        "SeriesInstanceUID",
        "SeriesNumber",
        "Laterality",
        "PerformedProcedureStepStartDate",
        "PerformedProcedureStepStartTime",
    ]
    instance_attributes: list[str] = [
        "SpecificCharacterSet",
        "ImageType",
        "SOPClassUID",
        "SOPInstanceUID",
        "ContentDate",
        "ContentTime",
        "InstanceNumber",
        "NumberOfFrames",
        "Rows",
        "Columns",
        "BitsAllocated",
    ]

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str | None = None
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None  # Use default if None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources for settings.

        Priority order: explicit init arguments, environment variables, then TOML config files
        """
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @property
    def database_url(self) -> str:
        """Get the database URL for SQLAlchemy."""
        if self.database_driver == DatabaseDriver.SQLITE:
            return f"sqlite:///{self.database_name}.db"
        else:
            return f"{self.database_driver.value}://{self.database_username}:{self.database_password}@{self.database_host}:{self.database_port}/{self.database_name}"

    def get_log_dir(self) -> Path:
        """Get the log directory path.

        Returns:
            Path to the log directory. Uses log_dir if specified,
            otherwise a ``logs`` directory under the working directory.
        """
        if self.log_dir:
            return Path(self.log_dir)
        return Path.cwd() / "logs"


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching.

    Returns:
        Cached Settings instance
    """
    return Settings()


# Create a global settings instance for easy imports
settings = get_settings()
