"""Integration tests for indexing stored objects — real SQLite, no mocks."""

import pytest
from pydicom import Dataset
from sqlalchemy import func, select

from arcquery.exceptions import IndexingError
from arcquery.models import Availability, Instance, Patient, Series, Study
from arcquery.services.index_service import IndexService
from arcquery.utils.attributes import decode
from arcquery.utils.fuzzy import fuzzy_key


async def _count(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestIndexService:
    @pytest.mark.asyncio
    async def test_hierarchy_created_once(self, test_session, archive):
        assert await _count(test_session, Patient) == 3
        assert await _count(test_session, Study) == 3
        assert await _count(test_session, Series) == 4
        assert await _count(test_session, Instance) == 5

    @pytest.mark.asyncio
    async def test_searchable_columns(self, test_session, archive):
        result = await test_session.execute(select(Patient).where(Patient.patient_id == "A123"))
        patient = result.scalar_one()
        assert patient.issuer_of_patient_id == "SITE_A"
        assert patient.patient_name == "SMITH^JOHN"
        assert patient.patient_name_fuzzy == fuzzy_key("SMITH^JOHN")
        assert archive["SMITH"].study_date == "20240115"

    @pytest.mark.asyncio
    async def test_blobs_filtered_per_level(self, test_session, archive):
        study_attrs = decode(archive["SMITH"].attributes)
        assert "StudyInstanceUID" in study_attrs
        assert "PatientName" not in study_attrs
        assert "SOPInstanceUID" not in study_attrs

    @pytest.mark.asyncio
    async def test_retrieve_aets_and_availability(self, test_session, archive):
        result = await test_session.execute(
            select(Instance).where(Instance.sop_iuid == "1.2.826.0.1.2.1.1")
        )
        instance = result.scalar_one()
        assert instance.retrieve_aets is None
        assert instance.external_retrieve_aet == "REMOTE"
        assert instance.availability == Availability.NEARLINE

    @pytest.mark.asyncio
    async def test_default_retrieve_aets(self, test_session, archive):
        result = await test_session.execute(
            select(Instance).where(Instance.sop_iuid == "1.2.826.0.1.1.1.1")
        )
        assert result.scalar_one().retrieve_aets == "ARCQUERY"

    @pytest.mark.asyncio
    async def test_duplicate_store_returns_existing(
        self, test_session, test_settings, archive, make_instance
    ):
        index = IndexService(test_session, test_settings)
        ds = make_instance(
            "A123", "SMITH^JOHN", "SITE_A", "1.2.826.0.1.1", "1.2.826.0.1.1.1", "1.2.826.0.1.1.1.1"
        )
        instance = await index.store(ds)
        assert instance.sop_iuid == "1.2.826.0.1.1.1.1"
        assert await _count(test_session, Instance) == 5

    @pytest.mark.asyncio
    async def test_missing_uid_rejected(self, test_session, test_settings):
        ds = Dataset()
        ds.PatientID = "A123"
        ds.StudyInstanceUID = "1.2.3"
        with pytest.raises(IndexingError, match="SOPInstanceUID"):
            await IndexService(test_session, test_settings).store(ds)

    @pytest.mark.asyncio
    async def test_reject(self, test_session, archive):
        result = await test_session.execute(
            select(Instance.rejection_code).where(Instance.sop_iuid == "1.2.826.0.1.3.1.1")
        )
        assert result.scalar_one() == "113001^DCM"

    @pytest.mark.asyncio
    async def test_reject_unknown(self, test_session):
        assert not await IndexService(test_session).reject("9.9.9", "113001^DCM")
