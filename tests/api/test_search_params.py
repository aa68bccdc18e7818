"""Tests for search query parsing."""

from datetime import datetime

import pytest

from fhir_bridge.api.params import parse_search_query
from fhir_bridge.domain.ports import InvalidSearchParameterError
from fhir_bridge.domain.search import ParamPrefix, ReferenceParam, StringParam, TokenParam
from fhir_bridge.domain.translators.practitioner import PRACTITIONER_SEARCH_FIELDS
from fhir_bridge.domain.services.search_compiler import ParamKind, SearchField

FIELDS = {f.name: f for f in PRACTITIONER_SEARCH_FIELDS}
FIELDS["patient"] = SearchField("patient", ParamKind.REFERENCE, ("person_uuid",), target_type="Patient")


class TestParseSearchQuery:

    def test_empty(self):
        filter_set, offset, count = parse_search_query([], FIELDS)

        assert filter_set.is_empty()
        assert (offset, count) == (0, None)

    def test_window(self):
        _, offset, count = parse_search_query([("_count", "20"), ("_offset", "40")], FIELDS)

        assert (offset, count) == (40, 20)

    def test_commas_are_alternatives(self):
        filter_set, _, _ = parse_search_query([("family", "Doe, Roe")], FIELDS)

        assert filter_set.params["family"].groups == ((StringParam("Doe"), StringParam("Roe")),)

    def test_repeats_are_conjoined(self):
        filter_set, _, _ = parse_search_query([("given", "Jo"), ("given", "Ann")], FIELDS)

        assert filter_set.params["given"].groups == ((StringParam("Jo"),), (StringParam("Ann"),))

    def test_string_modifiers(self):
        filter_set, _, _ = parse_search_query([("family:exact", "Doe"), ("name:contains", "oh")], FIELDS)

        assert filter_set.params["family"].groups == ((StringParam("Doe", exact=True),),)
        assert filter_set.params["name"].groups == ((StringParam("oh", contains=True),),)

    def test_tokens_and_references(self):
        filter_set, _, _ = parse_search_query(
            [("identifier", "http://example.org/ids|PRV-1"), ("patient", "Patient/abc")], FIELDS
        )

        assert filter_set.params["identifier"].groups == ((TokenParam("PRV-1", "http://example.org/ids"),),)
        assert filter_set.params["patient"].groups == ((ReferenceParam("abc", "Patient"),),)

    def test_dates_combine_into_one_range(self):
        filter_set, _, _ = parse_search_query(
            [("_lastUpdated", "ge2020-01-01"), ("_lastUpdated", "lt2021")], FIELDS
        )

        [[date_range]] = filter_set.params["_lastUpdated"].groups
        assert date_range.lower.value == datetime(2020, 1, 1)
        assert date_range.upper.prefix == ParamPrefix.LT

    def test_ignored_parameters(self):
        filter_set, _, _ = parse_search_query([("_format", "json"), ("_summary", "true")], FIELDS)

        assert filter_set.is_empty()

    @pytest.mark.parametrize("items", [
        [("nickname", "x")],
        [("identifier:exact", "x")],
        [("family:text", "x")],
        [("_count", "ten")],
        [("_count", "-1")],
        [("_lastUpdated", "2020-13")],
        [("_lastUpdated", "ge2020"), ("_lastUpdated", "gt2019")],
    ])
    def test_rejected(self, items):
        with pytest.raises(InvalidSearchParameterError):
            parse_search_query(items, FIELDS)
