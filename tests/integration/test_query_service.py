"""Integration tests for the query service — real SQLite, no mocks."""

from datetime import timedelta

import pytest
from pydicom import Dataset
from sqlalchemy import func, select

from arcquery.exceptions import (
    AggregateComputeError,
    ConfigurationError,
    DecodingError,
    QueryBuildError,
)
from arcquery.models import Availability, QueryRetrieveLevel, Series, StudyQueryAttributes
from arcquery.models.query_attributes import utcnow
from arcquery.query.context import QueryContext
from arcquery.query.models import FailedRow
from arcquery.query.params import IDWithIssuer, QueryParameters
from arcquery.query.service import QueryService


async def _collect(session, level: str, context: QueryContext) -> list:
    return [item async for item in QueryService(session).execute_query(level, context)]


def _uids(results: list) -> list[str]:
    return [ds.StudyInstanceUID for ds in results]


async def _cache_rows(session) -> int:
    result = await session.execute(select(func.count()).select_from(StudyQueryAttributes))
    return result.scalar_one()


@pytest.fixture
def track_streams(test_session, monkeypatch):
    """Record the results opened by ``session.stream``."""
    streams = []
    original = test_session.stream

    async def tracking_stream(statement, *args, **kwargs):
        result = await original(statement, *args, **kwargs)
        streams.append(result)
        return result

    monkeypatch.setattr(test_session, "stream", tracking_stream)
    return streams


class TestScenarios:
    @pytest.mark.asyncio
    async def test_empty_keys_return_studies_with_visible_instances(self, test_session, archive):
        context = QueryContext(Dataset(), QueryParameters(relational=False))
        results = await _collect(test_session, "STUDY", context)

        assert _uids(results) == [archive["SMITH"].study_iuid, archive["SMITHE"].study_iuid]
        assert context.matched == 2
        assert context.skipped == 1

    @pytest.mark.asyncio
    async def test_wildcard_identity_filter_matches_all(self, test_session, archive):
        unfiltered = await _collect(test_session, "STUDY", QueryContext(None, QueryParameters()))
        pids = [IDWithIssuer(id="A123", issuer="SITE_A"), IDWithIssuer(id="*", issuer=None)]
        context = QueryContext(None, QueryParameters(), patient_ids=pids)

        results = await _collect(test_session, "STUDY", context)

        assert _uids(results) == _uids(unfiltered)

    @pytest.mark.asyncio
    async def test_identity_filter(self, test_session, archive):
        pids = [IDWithIssuer(id="A123", issuer="SITE_A")]
        context = QueryContext(None, QueryParameters(), patient_ids=pids)
        results = await _collect(test_session, "STUDY", context)
        assert _uids(results) == [archive["SMITH"].study_iuid]

    @pytest.mark.asyncio
    async def test_stale_cache_recomputed_to_zero(self, test_session, archive):
        jones = archive["JONES"]
        test_session.add(
            StudyQueryAttributes(
                study_fk=jones.pk,
                view_id="visible",
                number_of_series=1,
                number_of_instances=3,
                modalities_in_study="US",
                availability=Availability.ONLINE,
                updated_at=utcnow() - timedelta(hours=1),
            )
        )
        await test_session.commit()

        trusted = await _collect(test_session, "STUDY", QueryContext(None, QueryParameters()))
        assert jones.study_iuid in _uids(trusted)

        context = QueryContext(None, QueryParameters(aggregate_max_age=60))
        results = await _collect(test_session, "STUDY", context)

        assert jones.study_iuid not in _uids(results)
        result = await test_session.execute(
            select(StudyQueryAttributes.number_of_instances).where(
                StudyQueryAttributes.study_fk == jones.pk
            )
        )
        assert result.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_fuzzy_wildcard_name(self, test_session, archive):
        keys = Dataset()
        keys.PatientName = "SMI*"
        context = QueryContext(keys, QueryParameters(matching_mode="FUZZY"))

        results = await _collect(test_session, "PATIENT", context)

        assert sorted(str(ds.PatientName) for ds in results) == ["SMITH^JOHN", "SMITHE^ANNA"]


class TestMatching:
    @pytest.mark.asyncio
    async def test_fuzzy_spelling_variant(self, test_session, archive):
        keys = Dataset()
        keys.PatientName = "SMYTH"
        fuzzy = QueryContext(keys, QueryParameters(matching_mode="FUZZY"))
        exact = QueryContext(keys, QueryParameters())

        assert len(await _collect(test_session, "PATIENT", fuzzy)) == 2
        assert await _collect(test_session, "PATIENT", exact) == []

    @pytest.mark.asyncio
    async def test_relational_matching(self, test_session, archive):
        keys = Dataset()
        keys.Modality = "MR"

        relational = QueryContext(keys, QueryParameters(relational=True))
        results = await _collect(test_session, "STUDY", relational)
        assert _uids(results) == [archive["SMITH"].study_iuid]

        ignored = QueryContext(keys, QueryParameters(relational=False))
        assert len(await _collect(test_session, "STUDY", ignored)) == 2

    @pytest.mark.asyncio
    async def test_pix_identifiers(self, test_session, archive):
        keys = Dataset()
        keys.PatientID = "A123"
        keys.IssuerOfPatientID = "SITE_A"
        context = QueryContext(keys, QueryParameters())
        context.add_patient_ids([IDWithIssuer(id="B456", issuer="SITE_B")])

        results = await _collect(test_session, "STUDY", context)

        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_wildcard_patient_id(self, test_session, archive):
        keys = Dataset()
        keys.PatientID = "B4*"
        results = await _collect(test_session, "STUDY", QueryContext(keys, QueryParameters()))
        assert _uids(results) == [archive["SMITHE"].study_iuid]

    @pytest.mark.asyncio
    async def test_retrieve_aet_scope(self, test_session, archive):
        context = QueryContext(None, QueryParameters(accessible_aets=("BACKUP",)))
        [ds] = await _collect(test_session, "STUDY", context)

        assert ds.StudyInstanceUID == archive["SMITH"].study_iuid
        assert ds.NumberOfStudyRelatedInstances == 1
        assert ds.ModalitiesInStudy == "MR"


class TestExecution:
    @pytest.mark.asyncio
    async def test_cache_written_after_query(self, test_session, archive):
        assert await _cache_rows(test_session) == 0
        await _collect(test_session, "STUDY", QueryContext(None, QueryParameters()))
        assert await _cache_rows(test_session) == 3

    @pytest.mark.asyncio
    async def test_cached_aggregates_reused(self, test_session, archive, monkeypatch):
        await _collect(test_session, "STUDY", QueryContext(None, QueryParameters()))
        service = QueryService(test_session)

        async def no_recompute(*args, **kwargs):
            raise AssertionError("aggregate recomputed")

        monkeypatch.setattr(service.cache, "recompute_study", no_recompute)
        context = QueryContext(None, QueryParameters())
        results = [ds async for ds in service.execute_query("STUDY", context)]
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_max_results_bound_releases_cursor(self, test_session, archive, track_streams):
        context = QueryContext(None, QueryParameters(max_results=1))
        results = await _collect(test_session, "IMAGE", context)

        assert len(results) == 1
        assert results[0].SOPInstanceUID == "1.2.826.0.1.1.1.1"
        assert track_streams[0].closed

    @pytest.mark.asyncio
    async def test_abandoned_iteration_releases_cursor(self, test_session, archive, track_streams):
        context = QueryContext(None, QueryParameters())
        results = QueryService(test_session).execute_query("IMAGE", context)
        first = await anext(results)
        await results.aclose()

        assert first.SOPInstanceUID == "1.2.826.0.1.1.1.1"
        assert track_streams[0].closed

    @pytest.mark.asyncio
    async def test_abandoned_iteration_stores_nothing(self, test_session, archive):
        context = QueryContext(None, QueryParameters())
        results = QueryService(test_session).execute_query("STUDY", context)
        await anext(results)
        await results.aclose()

        assert context.pending_writes == []
        assert await _cache_rows(test_session) == 0

    @pytest.mark.asyncio
    async def test_bounded_query_stores_aggregates(self, test_session, archive):
        context = QueryContext(None, QueryParameters(max_results=1))
        [ds] = await _collect(test_session, "STUDY", context)

        assert ds.StudyInstanceUID == archive["SMITH"].study_iuid
        assert await _cache_rows(test_session) == 1

    @pytest.mark.asyncio
    async def test_zero_matches_is_empty(self, test_session, archive):
        keys = Dataset()
        keys.PatientName = "NOBODY"
        assert await _collect(test_session, "STUDY", QueryContext(keys, QueryParameters())) == []

    @pytest.mark.asyncio
    async def test_corrupt_blob_reported_and_skipped(self, test_session, archive):
        smithe = archive["SMITHE"]
        smithe.attributes = b"not an attribute blob"
        test_session.add(smithe)
        await test_session.commit()

        context = QueryContext(None, QueryParameters())
        results = await _collect(test_session, "STUDY", context)

        assert len(results) == 2
        assert results[0].StudyInstanceUID == archive["SMITH"].study_iuid
        failed = results[1]
        assert isinstance(failed, FailedRow)
        assert failed.level is QueryRetrieveLevel.STUDY
        assert failed.pk == smithe.pk
        assert isinstance(failed.error, DecodingError)
        assert context.failed == 1

    @pytest.mark.asyncio
    async def test_cancellation(self, test_session, archive):
        context = QueryContext(None, QueryParameters())
        results = []
        async for ds in QueryService(test_session).execute_query("STUDY", context):
            results.append(ds)
            context.cancel()

        assert len(results) == 1
        assert context.cancelled
        assert await _cache_rows(test_session) == 0

    @pytest.mark.asyncio
    async def test_invalid_level(self, test_session):
        with pytest.raises(ConfigurationError):
            QueryService(test_session).execute_query("WORKLIST", QueryContext(None, QueryParameters()))

    @pytest.mark.asyncio
    async def test_unmatchable_key_fails_before_execution(self, test_session, track_streams):
        keys = Dataset()
        keys.Manufacturer = "ACME"
        with pytest.raises(QueryBuildError):
            QueryService(test_session).execute_query("STUDY", QueryContext(keys, QueryParameters()))
        assert track_streams == []

    @pytest.mark.asyncio
    async def test_aggregate_failure_fails_request(self, test_session, archive, monkeypatch):
        service = QueryService(test_session)

        async def unavailable(study_pk, params):
            raise AggregateComputeError("study", study_pk)

        monkeypatch.setattr(service.cache, "recompute_study", unavailable)
        with pytest.raises(AggregateComputeError):
            [ds async for ds in service.execute_query("STUDY", QueryContext(None, QueryParameters()))]


class TestGetAggregate:
    @pytest.mark.asyncio
    async def test_study(self, test_session, archive, params):
        aggregate = await QueryService(test_session).get_aggregate(archive["SMITH"].pk, params)
        assert aggregate.number_of_instances == 3
        assert await _cache_rows(test_session) == 1

    @pytest.mark.asyncio
    async def test_series(self, test_session, archive, params):
        service = QueryService(test_session)
        result = await test_session.execute(
            select(Series.pk).where(Series.series_iuid == "1.2.826.0.1.1.1")
        )
        aggregate = await service.get_series_aggregate(result.scalar_one(), params)
        assert aggregate.number_of_instances == 2
        assert aggregate.retrieve_aets == ("ARCQUERY",)
