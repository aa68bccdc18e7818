"""Tests for the DuckDB adapter and entity stores.

Tests cover:
- Concept dictionary lookups
- Predicate rendering to SQL
- Practitioner and immunization persistence, search and soft delete
- Audit trail appends
"""

from concurrent.futures import ThreadPoolExecutor

import duckdb
import pytest

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter, PredicateRenderer, render_comparison
from fhir_bridge.domain.cdc_models import AuditAction
from fhir_bridge.domain.ports import AmbiguousOrMissingMappingError, StorageError
from fhir_bridge.domain.predicate import (
    MATCH_ALL,
    AllOf,
    AnyOf,
    FieldCriterion,
    MemberCriterion,
    Operator,
    Predicate,
)
from fhir_bridge.domain.records import ProviderRecord
from fhir_bridge.domain.resources import Immunization
from fhir_bridge.domain.search import (
    AndOrParam,
    DateParam,
    DateRangeParam,
    ReferenceParam,
    SearchFilterSet,
    StringParam,
    TokenParam,
)
from fhir_bridge.domain.services.search_compiler import SearchPredicateCompiler
from fhir_bridge.domain.translators.practitioner import PRACTITIONER_SEARCH_FIELDS
from fhir_bridge.domain.utils import utc_now

from conftest import CIEL_URL, PATIENT_UUID, PERFORMER_UUID

CITIES = ["Boston", "Chicago", "Denver", "Eldoret", "Fresno", "Indianapolis", "Kampala", "Lima", "Nairobi", "Oslo"]


class TestDuckDBAdapter:
    """Test adapter setup and the concept dictionary."""

    def test_defaults_to_memory(self):
        assert DuckDBAdapter().db_path == ":memory:"

    def test_missing_directory(self, tmp_path):
        with pytest.raises(StorageError, match="does not exist"):
            DuckDBAdapter(db_path=str(tmp_path / "missing" / "store.duckdb"))

    def test_file_database(self, tmp_path):
        path = str(tmp_path / "store.duckdb")
        adapter = DuckDBAdapter(db_path=path)
        adapter.seed_concept("CIEL:1421", name="Immunization history").unwrap()
        adapter.close()

        reopened = DuckDBAdapter(db_path=path)
        try:
            assert len(reopened.concepts_for_mapping("CIEL", "1421").unwrap()) == 1
        finally:
            reopened.close()

    def test_concurrent_first_use_opens_one_connection(self, tmp_path, monkeypatch):
        connect = duckdb.connect
        opened = []

        def counting_connect(*args, **kwargs):
            opened.append(args)
            return connect(*args, **kwargs)

        monkeypatch.setattr(duckdb, "connect", counting_connect)
        adapter = DuckDBAdapter(db_path=str(tmp_path / "store.duckdb"))
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                found = list(pool.map(lambda _: adapter.concepts_for_mapping("CIEL", "1421").unwrap(), range(16)))
        finally:
            adapter.close()

        assert found == [[]] * 16
        assert len(opened) == 1

    def test_concepts_for_mapping(self, adapter, concepts):
        found = adapter.concepts_for_mapping("CIEL", "886").unwrap()

        assert found == [concepts["CIEL:886"]]
        assert found[0].name == "Bacillus Calmette-Guerin vaccine"

    def test_unmapped_code(self, adapter, concepts):
        assert adapter.concepts_for_mapping("CIEL", "404").unwrap() == []

    def test_seed_concept_with_fixed_uuid(self, adapter):
        concept = adapter.seed_concept("CIEL:5089", name="Weight (kg)", concept_uuid="5089AAAA").unwrap()

        assert concept.uuid == "5089AAAA"
        assert concept.concept_id == 1

    def test_seed_concept_with_bad_mapping(self, adapter):
        result = adapter.seed_concept("no-colon", name="Broken")

        assert result.is_failure()
        assert adapter.concepts_for_mapping("no-colon", "").unwrap() == []

    def test_audit_events_in_append_order(self, adapter):
        with adapter.transaction() as cursor:
            adapter.record_audit_event(cursor, "practitioner", "p-1", AuditAction.CREATE, "a")
            adapter.record_audit_event(cursor, "practitioner", "p-1", AuditAction.UPDATE, "b", ["city"])
            adapter.record_audit_event(cursor, "practitioner", "p-2", AuditAction.CREATE, "c")

        events = adapter.events_for("p-1").unwrap()

        assert [e.action for e in events] == [AuditAction.CREATE, AuditAction.UPDATE]
        assert events[1].changed_fields == ["city"]
        assert adapter.events_for("p-3").unwrap() == []

    def test_audit_events_of_one_entity_type(self, adapter):
        with adapter.transaction() as cursor:
            adapter.record_audit_event(cursor, "practitioner", "x-1", AuditAction.CREATE, "a")
            adapter.record_audit_event(cursor, "immunization", "x-1", AuditAction.UPDATE, "b")

        assert [e.agent for e in adapter.events_for("x-1", "practitioner").unwrap()] == ["a"]
        assert [e.agent for e in adapter.events_for("x-1").unwrap()] == ["a", "b"]

    def test_identifier_in_use(self, adapter, practitioner_store):
        practitioner_store.save(ProviderRecord(uuid="p-1", family_name="Doe"), "seed").unwrap()
        practitioner_store.delete("p-1", "seed").unwrap()

        assert adapter.identifier_in_use("p-1").unwrap() is True
        assert adapter.identifier_in_use("p-2").unwrap() is False

    def test_failed_transaction_rolls_back(self, adapter):
        with pytest.raises(RuntimeError):
            with adapter.transaction() as cursor:
                adapter.record_audit_event(cursor, "practitioner", "p-1", AuditAction.CREATE, "a")
                raise RuntimeError("boom")

        assert adapter.events_for("p-1").unwrap() == []


class TestPredicateRenderer:
    """Test SQL rendering of predicate trees."""

    @pytest.fixture
    def renderer(self):
        return PredicateRenderer({"family_name": "p.family_name", "city": "p.city"})

    def test_match_all(self, renderer):
        assert renderer.render(MATCH_ALL) == ("1=1", [])

    def test_nested_criteria(self, renderer):
        predicate = Predicate((
            AnyOf((
                FieldCriterion("family_name", Operator.ISTARTS, "do"),
                FieldCriterion("city", Operator.IEQ, "oslo"),
            )),
            AllOf((FieldCriterion("city", Operator.EQ, "Lima"),)),
        ))

        sql, params = renderer.render(predicate)

        assert sql == "(starts_with(lower(p.family_name), lower(?)) OR lower(p.city) = lower(?)) AND (p.city = ?)"
        assert params == ["do", "oslo", "Lima"]

    def test_unknown_field(self, renderer):
        with pytest.raises(StorageError, match="Unknown search field"):
            renderer.render(Predicate((FieldCriterion("nickname", Operator.EQ, "x"),)))

    def test_member_criterion_without_members(self, renderer):
        with pytest.raises(StorageError):
            renderer.render(Predicate((MemberCriterion("CIEL:1410", FieldCriterion("city", Operator.EQ, "x")),)))

    @pytest.mark.parametrize("operator,sql", [
        (Operator.EQ, "c = ?"),
        (Operator.IEQ, "lower(c) = lower(?)"),
        (Operator.ISTARTS, "starts_with(lower(c), lower(?))"),
        (Operator.ICONTAINS, "contains(lower(c), lower(?))"),
        (Operator.GE, "c >= ?"),
        (Operator.LT, "c < ?"),
    ])
    def test_comparisons(self, operator, sql):
        assert render_comparison("c", operator, 1) == (sql, [1])


class TestPractitionerStore:
    """Test provider persistence and search."""

    @pytest.fixture
    def providers(self, practitioner_store):
        for i, city in enumerate(CITIES):
            practitioner_store.save(ProviderRecord(
                uuid=f"p-{i:02d}",
                given_name=f"Given{i}",
                family_name=f"Family{i:02d}",
                city=city,
                identifier=f"PRV-{i:04d}",
            ), "seed").unwrap()

    def search(self, store, **params):
        compiler = SearchPredicateCompiler(PRACTITIONER_SEARCH_FIELDS)
        filter_set = SearchFilterSet()
        for name, param in params.items():
            filter_set.add(name.replace("_", "-"), param)
        return store.search(compiler.compile(filter_set), 0, 100).unwrap()

    def test_search_by_city(self, practitioner_store, providers):
        """One matching provider out of ten."""
        page = self.search(practitioner_store, address_city=AndOrParam.of(StringParam("Indianapolis")))

        assert page.total == 1
        assert [p.city for p in page.entities] == ["Indianapolis"]

    def test_search_prefix_is_case_insensitive(self, practitioner_store, providers):
        page = self.search(practitioner_store, address_city=AndOrParam.of(StringParam("indi")))

        assert [p.uuid for p in page.entities] == ["p-05"]

    def test_search_exact_is_case_sensitive(self, practitioner_store, providers):
        assert self.search(practitioner_store, address_city=AndOrParam.of(StringParam("oslo", exact=True))).total == 0
        assert self.search(practitioner_store, address_city=AndOrParam.of(StringParam("Oslo", exact=True))).total == 1

    def test_search_contains(self, practitioner_store, providers):
        page = self.search(practitioner_store, address_city=AndOrParam.of(StringParam("na", contains=True)))

        assert {p.city for p in page.entities} == {"Indianapolis", "Nairobi"}

    def test_search_non_ascii_case_folding(self, practitioner_store):
        """Both sides of a case-insensitive match are lowered the same way."""
        practitioner_store.save(ProviderRecord(uuid="p-de", family_name="Weiß", city="Straße"), "seed").unwrap()

        assert self.search(practitioner_store, address_city=AndOrParam.of(StringParam("Straße"))).total == 1
        assert self.search(practitioner_store, address_city=AndOrParam.of(StringParam("STRAß"))).total == 1
        assert self.search(practitioner_store, family=AndOrParam.of(StringParam("weiß"))).total == 1
        assert self.search(practitioner_store, address_city=AndOrParam.of(StringParam("aße", contains=True))).total == 1

    def test_search_name_or(self, practitioner_store, providers):
        page = self.search(practitioner_store, name=AndOrParam.any_of(StringParam("Family01"), StringParam("Given2")))

        assert [p.uuid for p in page.entities] == ["p-01", "p-02"]

    def test_search_identifier(self, practitioner_store, providers):
        page = self.search(practitioner_store, identifier=AndOrParam.of(TokenParam.parse("PRV-0003")))

        assert [p.uuid for p in page.entities] == ["p-03"]

    def test_search_last_updated(self, practitioner_store, providers):
        today = utc_now().strftime("%Y-%m-%d")
        compiler = SearchPredicateCompiler(PRACTITIONER_SEARCH_FIELDS)

        def count(token):
            param = AndOrParam.of(DateRangeParam.from_params([DateParam.parse(token)]))
            return practitioner_store.search(
                compiler.compile(SearchFilterSet().add("_lastUpdated", param)), 0, 100
            ).unwrap().total

        assert count(f"ge{today}") == 10
        assert count("lt2000-01-01") == 0
        assert count("9999") == 0
        assert count("le9999-12-31") == 10

    def test_window(self, practitioner_store, providers):
        page = practitioner_store.search(MATCH_ALL, 2, 3).unwrap()

        assert page.total == 10
        assert [p.uuid for p in page.entities] == ["p-02", "p-03", "p-04"]

    def test_save_update_audits_changed_fields(self, adapter, practitioner_store, providers):
        existing = practitioner_store.get("p-00").unwrap()

        saved = practitioner_store.save(existing.model_copy(update={"city": "Lagos"}), "clerk").unwrap()

        assert saved.city == "Lagos"
        assert saved.date_changed is not None
        events = adapter.events_for("p-00").unwrap()
        assert [e.action for e in events] == [AuditAction.CREATE, AuditAction.UPDATE]
        assert events[1].changed_fields == ["city"]
        assert events[1].agent == "clerk"

    def test_save_without_changes(self, adapter, practitioner_store, providers):
        existing = practitioner_store.get("p-00").unwrap()

        practitioner_store.save(existing, "clerk").unwrap()

        assert len(adapter.events_for("p-00").unwrap()) == 1

    def test_soft_delete(self, adapter, practitioner_store, providers):
        deleted = practitioner_store.delete("p-05", "admin").unwrap()

        assert deleted.city == "Indianapolis"
        assert practitioner_store.get("p-05").unwrap() is None
        assert practitioner_store.get("p-05", include_deleted=True).unwrap().voided is True
        assert practitioner_store.search(MATCH_ALL, 0, 100).unwrap().total == 9
        assert adapter.events_for("p-05").unwrap()[-1].action == AuditAction.DELETE

    def test_delete_unknown(self, practitioner_store):
        assert practitioner_store.delete("nobody", "admin").unwrap() is None


class TestImmunizationStore:
    """Test obs group persistence and search."""

    @pytest.fixture
    def saved(self, immunization_store, immunization_translator, immunization_payload):
        def save(**overrides):
            resource = Immunization.model_validate(immunization_payload(**overrides))
            return immunization_store.save(immunization_translator.to_internal(resource), "nurse").unwrap()
        return save

    def search(self, store, translator, name, param):
        compiler = SearchPredicateCompiler(translator.search_fields())
        return store.search(compiler.compile(SearchFilterSet().add(name, param)), 0, 100).unwrap()

    def test_save_and_load(self, immunization_store, saved, concepts):
        node = saved(id="imm-1")

        loaded = immunization_store.get("imm-1").unwrap()

        assert loaded == node
        assert loaded.concept == concepts["CIEL:1421"]
        assert len(loaded.group_members) == 6
        assert loaded.encounter.participants[0].provider_uuid == PERFORMER_UUID

    def test_members_are_not_top_level(self, immunization_store, saved):
        node = saved(id="imm-1")

        assert immunization_store.get(node.group_members[0].uuid).unwrap() is None

    def test_search_by_patient(self, immunization_store, immunization_translator, saved):
        saved(id="imm-1")
        saved(id="imm-2", patient={"reference": "Patient/someone-else"})

        page = self.search(immunization_store, immunization_translator, "patient",
                           AndOrParam.of(ReferenceParam.parse(f"Patient/{PATIENT_UUID}")))

        assert [n.uuid for n in page.entities] == ["imm-1"]

    def test_search_by_vaccine_code(self, immunization_store, immunization_translator, saved):
        saved(id="imm-1")
        saved(id="imm-2", vaccineCode={"coding": [{"system": CIEL_URL, "code": "783"}]})

        page = self.search(immunization_store, immunization_translator, "vaccine-code",
                           AndOrParam.of(TokenParam.parse(f"{CIEL_URL}|783")))

        assert [n.uuid for n in page.entities] == ["imm-2"]

    def test_search_by_vaccine_concept_uuid(self, immunization_store, immunization_translator, saved, concepts):
        saved(id="imm-1")

        page = self.search(immunization_store, immunization_translator, "vaccine-code",
                           AndOrParam.of(TokenParam.parse(concepts["CIEL:886"].uuid)))

        assert page.total == 1

    def test_search_by_date(self, immunization_store, immunization_translator, saved):
        saved(id="imm-1")
        saved(id="imm-2", occurrenceDateTime="2021-03-01T10:00:00Z")

        page = self.search(immunization_store, immunization_translator, "date",
                           AndOrParam.of(DateRangeParam.from_params([DateParam.parse("2020-07")])))

        assert [n.uuid for n in page.entities] == ["imm-1"]

    def test_search_by_lot_number(self, immunization_store, immunization_translator, saved):
        saved(id="imm-1")
        saved(id="imm-2", lotNumber="BAR5678")

        page = self.search(immunization_store, immunization_translator, "lot-number",
                           AndOrParam.of(StringParam("bar")))

        assert [n.uuid for n in page.entities] == ["imm-2"]

    def test_search_by_performer(self, immunization_store, immunization_translator, saved):
        saved(id="imm-1")
        saved(id="imm-2", performer=[{"actor": {"reference": "Practitioner/other-provider"}}])

        page = self.search(immunization_store, immunization_translator, "performer",
                           AndOrParam.of(ReferenceParam.parse("Practitioner/other-provider")))

        assert [n.uuid for n in page.entities] == ["imm-2"]

    def test_search_requires_grouping_concept(self, adapter):
        from fhir_bridge.adapters.storage.immunization_store import DuckDBImmunizationStore

        store = DuckDBImmunizationStore(adapter, grouping_reference="CIEL:1421")

        with pytest.raises(AmbiguousOrMissingMappingError):
            store.search(MATCH_ALL, 0, 10).unwrap()

    def test_removed_member_is_voided(self, adapter, immunization_store, immunization_translator, saved):
        node = saved(id="imm-1")
        update = Immunization.model_validate({"resourceType": "Immunization", "id": "imm-1", "lotNumber": None})

        immunization_store.save(immunization_translator.to_internal(update, node), "nurse").unwrap()

        loaded = immunization_store.get("imm-1").unwrap()
        assert len(loaded.group_members) == 5
        voided = adapter.cursor().execute("SELECT COUNT(*) FROM observations WHERE voided").fetchone()[0]
        assert voided == 1

    def test_delete_voids_group_and_members(self, adapter, immunization_store, saved):
        saved(id="imm-1")

        immunization_store.delete("imm-1", "nurse").unwrap()

        assert immunization_store.get("imm-1").unwrap() is None
        assert immunization_store.search(MATCH_ALL, 0, 10).unwrap().total == 0
        live = adapter.cursor().execute("SELECT COUNT(*) FROM observations WHERE NOT voided").fetchone()[0]
        assert live == 0
