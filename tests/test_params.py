"""Unit tests for query parameters and the query context."""

import time

import pytest
from pydantic import ValidationError
from pydicom import Dataset

from arcquery.exceptions import ConfigurationError
from arcquery.models import MatchingMode, QueryRetrieveLevel
from arcquery.query.context import QueryContext
from arcquery.query.params import IDWithIssuer, QueryParameters
from arcquery.settings import Settings


class TestQueryParameters:
    def test_defaults(self):
        params = QueryParameters()
        assert params.matching_mode == MatchingMode.EXACT
        assert not params.fuzzy
        assert not params.relational
        assert params.max_results == 0
        assert params.view_id == "visible"

    def test_immutable(self):
        params = QueryParameters()
        with pytest.raises(ValidationError):
            params.max_results = 10

    def test_negative_max_results_rejected(self):
        with pytest.raises(ValidationError):
            QueryParameters(max_results=-1)

    def test_unknown_filter_keyword_rejected(self):
        with pytest.raises(ValidationError, match="NoSuchAttribute"):
            QueryParameters(attribute_filters={QueryRetrieveLevel.STUDY: ("NoSuchAttribute",)})

    def test_view_id_depends_on_visibility(self):
        assert QueryParameters(show_rejected=True).view_id == "all"
        scoped = QueryParameters(accessible_aets=("B_AET", "A_AET"))
        assert scoped.view_id == "visible:A_AET,B_AET"

    def test_long_view_id_hashed(self):
        params = QueryParameters(accessible_aets=tuple(f"AET_NUMBER_{i:02d}" for i in range(10)))
        assert params.view_id.startswith("h:")
        assert len(params.view_id) <= 64

    def test_attribute_filter(self):
        params = QueryParameters(attribute_filters={QueryRetrieveLevel.SERIES: ("Modality",)})
        assert params.attribute_filter(QueryRetrieveLevel.SERIES) == ("Modality",)
        assert params.attribute_filter(QueryRetrieveLevel.STUDY) == ()

    def test_from_settings(self):
        settings = Settings(
            fuzzy_matching=True, max_results=1000, study_attributes=["StudyInstanceUID"]
        )
        params = QueryParameters.from_settings(settings, relational=True)
        assert params.fuzzy
        assert params.relational
        assert params.max_results == 1000
        assert params.attribute_filter(QueryRetrieveLevel.STUDY) == ("StudyInstanceUID",)

    def test_from_settings_invalid(self):
        with pytest.raises(ConfigurationError):
            QueryParameters.from_settings(Settings(), max_results=-5)


class TestSettings:
    @pytest.fixture
    def settings_dir(self, tmp_path, monkeypatch):
        (tmp_path / "settings.toml").write_text(
            'max_results = 25\nretrieve_aets = ["STORESCP"]\n'
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("ARCQUERY_MAX_RESULTS", raising=False)
        return tmp_path

    def test_toml_file_loaded(self, settings_dir):
        settings = Settings()
        assert settings.max_results == 25
        assert settings.retrieve_aets == ["STORESCP"]

    def test_custom_toml_overrides(self, settings_dir):
        (settings_dir / "settings.custom.toml").write_text("max_results = 50\n")
        assert Settings().max_results == 50

    def test_environment_overrides_toml(self, settings_dir, monkeypatch):
        monkeypatch.setenv("ARCQUERY_MAX_RESULTS", "7")
        assert Settings().max_results == 7

    def test_init_arguments_win(self, settings_dir):
        assert Settings(max_results=3).max_results == 3


class TestIDWithIssuer:
    def test_str(self):
        assert str(IDWithIssuer(id="A123", issuer="SITE_A")) == "A123^^^SITE_A"
        assert str(IDWithIssuer(id="A123")) == "A123"

    def test_wildcard(self):
        assert IDWithIssuer(id="A*").has_wildcard
        assert IDWithIssuer(id="A?23").has_wildcard
        assert not IDWithIssuer(id="A123").has_wildcard


class TestQueryContext:
    def test_requires_params(self):
        with pytest.raises(ConfigurationError):
            QueryContext(Dataset(), None)

    def test_patient_ids_from_keys(self):
        keys = Dataset()
        keys.PatientID = "A123"
        keys.IssuerOfPatientID = "SITE_A"
        context = QueryContext(keys, QueryParameters())
        assert context.patient_ids == [IDWithIssuer(id="A123", issuer="SITE_A")]

    def test_no_patient_id(self):
        context = QueryContext(None, QueryParameters())
        assert context.patient_ids == []
        assert len(context.keys) == 0

    def test_add_patient_ids_skips_known(self):
        keys = Dataset()
        keys.PatientID = "A123"
        context = QueryContext(keys, QueryParameters())
        context.add_patient_ids([IDWithIssuer(id="A123"), IDWithIssuer(id="X9", issuer="PIX")])
        assert [str(pid) for pid in context.patient_ids] == ["A123", "X9^^^PIX"]

    def test_cancel(self):
        context = QueryContext(None, QueryParameters())
        assert not context.should_stop()
        context.cancel()
        assert context.should_stop()
        assert context.cancelled

    def test_deadline(self):
        context = QueryContext(None, QueryParameters(), deadline=time.monotonic() - 1)
        assert context.should_stop()
        assert context.cancelled

    def test_stop_callback(self):
        stop = False
        context = QueryContext(None, QueryParameters(), stop_requested=lambda: stop)
        assert not context.should_stop()
        stop = True
        assert context.should_stop()
