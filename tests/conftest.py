"""Global fixtures: in-memory archive database and a seeded hierarchy."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from pydicom import Dataset
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# Import all models to ensure metadata is populated
from arcquery.models import *  # noqa: F403
from arcquery.models import Availability, Study
from arcquery.query.params import QueryParameters
from arcquery.services.index_service import IndexService
from arcquery.settings import Settings

CT_IMAGE = "1.2.840.10008.5.1.4.1.1.2"
MR_IMAGE = "1.2.840.10008.5.1.4.1.1.4"
US_IMAGE = "1.2.840.10008.5.1.4.1.1.6.1"

STUDY_SMITH = "1.2.826.0.1.1"
STUDY_SMITHE = "1.2.826.0.1.2"
STUDY_JONES = "1.2.826.0.1.3"


def _make_instance(
    patient_id: str,
    patient_name: str,
    issuer: str | None,
    study_iuid: str,
    series_iuid: str,
    sop_iuid: str,
    modality: str = "CT",
    sop_cuid: str = CT_IMAGE,
    **extra,
) -> Dataset:
    """Build the attributes of one stored object."""
    ds = Dataset()
    ds.PatientName = patient_name
    ds.PatientID = patient_id
    if issuer is not None:
        ds.IssuerOfPatientID = issuer
    ds.PatientBirthDate = "19700101"
    ds.PatientSex = "O"
    ds.StudyInstanceUID = study_iuid
    ds.StudyDate = "20240115"
    ds.StudyTime = "101500"
    ds.AccessionNumber = f"ACC{study_iuid[-1]}"
    ds.StudyID = study_iuid[-1]
    ds.SeriesInstanceUID = series_iuid
    ds.SeriesNumber = series_iuid.rsplit(".", 1)[-1]
    ds.Modality = modality
    ds.SOPInstanceUID = sop_iuid
    ds.SOPClassUID = sop_cuid
    ds.InstanceNumber = sop_iuid.rsplit(".", 1)[-1]
    for keyword, value in extra.items():
        setattr(ds, keyword, value)
    return ds


@pytest.fixture
def make_instance():
    """Factory building the attributes of one stored object."""
    return _make_instance


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with the default attribute filters."""
    return Settings(retrieve_aets=["ARCQUERY"], aggregate_max_age=None)


@pytest.fixture
def params() -> QueryParameters:
    """Default query parameters: exact, non-relational, unbounded."""
    return QueryParameters()


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def test_session(test_engine) -> AsyncGenerator[AsyncSession]:
    """Create test database session."""
    async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def archive(test_session, test_settings) -> dict[str, Study]:
    """Index three patients with one study each.

    * SMITH^JOHN (A123, SITE_A): CT series with 2 instances, MR series with 1
    * SMITHE^ANNA (B456, SITE_B): CT series with 1 nearline instance
    * JONES^MARY (C789, SITE_A): US series with 1 rejected instance

    Returns:
        Studies by family name of their patient
    """
    index = IndexService(test_session, test_settings)
    smith = ("A123", "SMITH^JOHN", "SITE_A", STUDY_SMITH)
    await index.store(_make_instance(*smith, f"{STUDY_SMITH}.1", f"{STUDY_SMITH}.1.1"))
    await index.store(_make_instance(*smith, f"{STUDY_SMITH}.1", f"{STUDY_SMITH}.1.2"))
    await index.store(
        _make_instance(*smith, f"{STUDY_SMITH}.2", f"{STUDY_SMITH}.2.1", "MR", MR_IMAGE),
        retrieve_aets=["ARCQUERY", "BACKUP"],
    )
    await index.store(
        _make_instance(
            "B456", "SMITHE^ANNA", "SITE_B", STUDY_SMITHE, f"{STUDY_SMITHE}.1", f"{STUDY_SMITHE}.1.1"
        ),
        retrieve_aets=[],
        availability=Availability.NEARLINE,
        external_retrieve_aet="REMOTE",
    )
    jones = await index.store(
        _make_instance(
            "C789",
            "JONES^MARY",
            "SITE_A",
            STUDY_JONES,
            f"{STUDY_JONES}.1",
            f"{STUDY_JONES}.1.1",
            "US",
            US_IMAGE,
        )
    )
    await index.reject(jones.sop_iuid, "113001^DCM")

    result = await test_session.execute(select(Study).order_by(Study.pk))
    return dict(zip(("SMITH", "SMITHE", "JONES"), result.scalars().all(), strict=True))
