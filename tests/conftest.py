"""Shared fixtures: an in-memory store seeded with the immunization concept dictionary."""

import pytest

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_bridge.adapters.storage.immunization_store import DuckDBImmunizationStore
from fhir_bridge.adapters.storage.practitioner_store import DuckDBPractitionerStore
from fhir_bridge.domain.services.history import HistoryReconstructor
from fhir_bridge.domain.services.obs_group_codec import ObsGroupCodec
from fhir_bridge.domain.services.resource_service import ResourceService
from fhir_bridge.domain.services.terminology import TerminologyResolver
from fhir_bridge.domain.translators.immunization import ImmunizationTranslator
from fhir_bridge.domain.translators.practitioner import PractitionerTranslator

ADMINISTERING_ROLE = "546cce2d-6d58-4097-ba92-206c1a2a0462"
CIEL_URL = "https://cielterminology.org"
PATIENT_UUID = "a7e04421-525f-442f-8138-05b619d16def"
PERFORMER_UUID = "f9badd80-ab76-11e2-9e96-0800200c9a66"

IMMUNIZATION_CONCEPTS = [
    ("CIEL:1421", "Immunization history"),
    ("CIEL:984", "Immunizations"),
    ("CIEL:1410", "Vaccination date"),
    ("CIEL:1418", "Immunization sequence number"),
    ("CIEL:1419", "Vaccine manufacturer"),
    ("CIEL:1420", "Vaccine lot number"),
    ("CIEL:165907", "Date of vaccine expiration"),
]

VACCINE_CONCEPTS = [
    ("CIEL:886", "Bacillus Calmette-Guerin vaccine"),
    ("CIEL:783", "Polio vaccine"),
]


@pytest.fixture
def adapter():
    """In-memory DuckDB adapter with the schema in place."""
    adapter = DuckDBAdapter(db_path=":memory:")
    adapter.initialize_schema().unwrap()
    yield adapter
    adapter.close()


@pytest.fixture
def concepts(adapter):
    """Seed the immunization concepts; keyed by terminology reference."""
    return {
        reference: adapter.seed_concept(reference, name=name).unwrap()
        for reference, name in IMMUNIZATION_CONCEPTS + VACCINE_CONCEPTS
    }


@pytest.fixture
def codec(adapter, concepts):
    return ObsGroupCodec(TerminologyResolver(adapter))


@pytest.fixture
def immunization_translator(codec):
    return ImmunizationTranslator(
        codec,
        administering_role_uuid=ADMINISTERING_ROLE,
        terminology_systems={"CIEL": CIEL_URL},
    )


@pytest.fixture
def immunization_store(adapter, concepts):
    return DuckDBImmunizationStore(
        adapter,
        grouping_reference="CIEL:1421",
        administering_role_uuid=ADMINISTERING_ROLE,
        terminology_systems={"CIEL": CIEL_URL},
    )


@pytest.fixture
def practitioner_store(adapter):
    return DuckDBPractitionerStore(adapter)


@pytest.fixture
def practitioner_service(adapter, practitioner_store):
    return ResourceService(
        store=practitioner_store,
        translator=PractitionerTranslator(identifier_system="http://example.org/provider-id"),
        history=HistoryReconstructor(adapter),
    )


@pytest.fixture
def immunization_service(adapter, immunization_store, immunization_translator):
    return ResourceService(
        store=immunization_store,
        translator=immunization_translator,
        history=HistoryReconstructor(adapter),
    )


@pytest.fixture
def immunization_payload():
    """Factory for Immunization JSON bodies; keyword arguments override elements."""

    def build(**overrides):
        payload = {
            "resourceType": "Immunization",
            "status": "completed",
            "vaccineCode": {"coding": [{"system": CIEL_URL, "code": "886"}]},
            "patient": {"reference": f"Patient/{PATIENT_UUID}"},
            "occurrenceDateTime": "2020-07-08T18:30:00Z",
            "performer": [{"actor": {"reference": f"Practitioner/{PERFORMER_UUID}"}}],
            "manufacturer": {"display": "Pfizer"},
            "lotNumber": "FOO1234",
            "expirationDate": "2022-07-08",
            "protocolApplied": [{"doseNumberPositiveInt": 2}],
        }
        payload.update(overrides)
        return {k: v for k, v in payload.items() if v is not None}

    return build
