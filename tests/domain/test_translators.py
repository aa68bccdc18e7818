"""Unit tests for the Practitioner and Immunization translators.

Tests cover:
- Store record -> resource mapping
- Resource -> store record mapping on create and on partial update
- Rejection of resources the store cannot represent
"""

from datetime import date, datetime, timezone

import pytest

from fhir_bridge.domain.ports import MissingRequiredAgentError, ValidationError
from fhir_bridge.domain.records import ProviderRecord
from fhir_bridge.domain.resources import Immunization, Practitioner
from fhir_bridge.domain.translators.immunization import ImmunizationConcepts
from fhir_bridge.domain.translators.practitioner import PractitionerTranslator

from conftest import ADMINISTERING_ROLE, CIEL_URL, PATIENT_UUID, PERFORMER_UUID

PROVIDER_UUID = "c51d0879-ed58-4655-a450-98a8fb7e831f"


@pytest.fixture
def provider():
    return ProviderRecord(
        uuid=PROVIDER_UUID,
        identifier="PRV-1001",
        given_name="John",
        middle_name="Adam",
        family_name="Doe",
        prefix="Dr.",
        gender="M",
        birthdate=date(1970, 5, 17),
        address_line1="1 Main St",
        city="Indianapolis",
        state="IN",
        postal_code="46202",
        country="USA",
        date_created=datetime(2021, 3, 1, 9, 0),
    )


class TestPractitionerToExternal:
    """Test provider record -> Practitioner."""

    def test_demographics(self, provider):
        practitioner = PractitionerTranslator(identifier_system="urn:prv").to_external(provider)

        assert practitioner.id == PROVIDER_UUID
        assert practitioner.active is True
        assert practitioner.gender == "male"
        assert practitioner.birth_date == date(1970, 5, 17)
        assert practitioner.identifier[0].system == "urn:prv"
        assert practitioner.identifier[0].value == "PRV-1001"
        assert practitioner.name[0].family == "Doe"
        assert practitioner.name[0].given == ["John", "Adam"]
        assert practitioner.name[0].prefix == ["Dr."]
        assert practitioner.address[0].city == "Indianapolis"
        assert practitioner.address[0].postal_code == "46202"

    def test_last_updated(self, provider):
        practitioner = PractitionerTranslator().to_external(provider)
        assert practitioner.meta.last_updated == datetime(2021, 3, 1, 9, 0, tzinfo=timezone.utc)

        changed = provider.model_copy(update={"date_changed": datetime(2021, 4, 1)})
        assert PractitionerTranslator().to_external(changed).meta.last_updated.month == 4

    def test_retired_provider_is_inactive(self, provider):
        practitioner = PractitionerTranslator().to_external(provider.model_copy(update={"retired": True}))

        assert practitioner.active is False

    def test_empty_elements_are_omitted(self):
        body = PractitionerTranslator().to_external(ProviderRecord(uuid="p-1")).to_fhir()

        assert body == {"resourceType": "Practitioner", "id": "p-1", "active": True}

    def test_fhir_json_aliases(self, provider):
        body = PractitionerTranslator().to_external(provider).to_fhir()

        assert body["birthDate"] == "1970-05-17"
        assert body["address"][0]["postalCode"] == "46202"
        assert body["meta"]["lastUpdated"] == "2021-03-01T09:00:00Z"


class TestPractitionerToInternal:
    """Test Practitioner -> provider record."""

    def test_create(self):
        resource = Practitioner.model_validate({
            "resourceType": "Practitioner",
            "id": PROVIDER_UUID,
            "identifier": [{"value": "PRV-1001"}],
            "name": [{"family": "Doe", "given": ["John", "Adam", "Quincy"]}],
            "gender": "female",
            "active": False,
            "address": [{"line": ["1 Main St"], "city": "Indianapolis"}],
        })

        record = PractitionerTranslator().to_internal(resource)

        assert record.uuid == PROVIDER_UUID
        assert record.identifier == "PRV-1001"
        assert (record.given_name, record.middle_name, record.family_name) == ("John", "Adam Quincy", "Doe")
        assert record.gender == "F"
        assert record.retired is True
        assert (record.address_line1, record.city) == ("1 Main St", "Indianapolis")

    def test_create_without_id_generates_one(self):
        record = PractitionerTranslator().to_internal(Practitioner(name=[{"family": "Doe"}]))

        assert record.uuid

    def test_update_changes_only_present_elements(self, provider):
        resource = Practitioner.model_validate({
            "resourceType": "Practitioner",
            "id": PROVIDER_UUID,
            "address": [{"city": "Chicago"}],
        })

        record = PractitionerTranslator().to_internal(resource, provider)

        assert record.city == "Chicago"
        assert record.address_line1 is None
        assert record.family_name == "Doe"
        assert record.identifier == "PRV-1001"
        assert record.gender == "M"

    def test_unknown_gender(self):
        resource = Practitioner.model_validate({"resourceType": "Practitioner", "gender": "robot"})

        with pytest.raises(ValidationError, match="Unsupported gender"):
            PractitionerTranslator().to_internal(resource)

    def test_round_trip(self, provider):
        translator = PractitionerTranslator()
        first = translator.to_external(provider)

        again = translator.to_external(translator.to_internal(first, provider))

        assert again == first


class TestImmunizationToInternal:
    """Test Immunization -> obs group."""

    def test_create_builds_group(self, immunization_translator, immunization_payload, concepts):
        resource = Immunization.model_validate(immunization_payload())

        node = immunization_translator.to_internal(resource)

        assert node.concept == concepts["CIEL:1421"]
        assert node.person_uuid == PATIENT_UUID
        assert node.encounter.patient_uuid == PATIENT_UUID
        assert node.encounter.participants[0].provider_uuid == PERFORMER_UUID
        assert node.encounter.participants[0].encounter_role_uuid == ADMINISTERING_ROLE

        by_concept = {m.concept.mappings[0]: m for m in node.group_members}
        assert by_concept["CIEL:984"].value_coded == concepts["CIEL:886"]
        assert by_concept["CIEL:1410"].value_datetime == datetime(2020, 7, 8, 18, 30)
        assert by_concept["CIEL:1418"].value_numeric == 2.0
        assert by_concept["CIEL:1419"].value_text == "Pfizer"
        assert by_concept["CIEL:1420"].value_text == "FOO1234"
        assert by_concept["CIEL:165907"].value_datetime == datetime(2022, 7, 8)

    def test_empty_slots_are_not_stored(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(
            manufacturer=None, lotNumber=None, expirationDate=None, protocolApplied=None
        ))

        node = immunization_translator.to_internal(resource)

        assert {m.concept.mappings[0] for m in node.group_members} == {"CIEL:984", "CIEL:1410"}

    def test_declared_id_is_kept(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(id="imm-1"))

        assert immunization_translator.to_internal(resource).uuid == "imm-1"

    def test_missing_patient(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(patient=None))

        with pytest.raises(ValidationError, match="patient"):
            immunization_translator.to_internal(resource)

    def test_missing_vaccine_code(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(vaccineCode=None))

        with pytest.raises(ValidationError, match="vaccineCode"):
            immunization_translator.to_internal(resource)

    def test_two_performers(self, immunization_translator, immunization_payload):
        actor = {"actor": {"reference": f"Practitioner/{PERFORMER_UUID}"}}
        resource = Immunization.model_validate(immunization_payload(performer=[actor, actor]))

        with pytest.raises(ValidationError, match="exactly one performer"):
            immunization_translator.to_internal(resource)

    def test_unknown_vaccine_code(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(
            vaccineCode={"coding": [{"system": CIEL_URL, "code": "999999"}]}
        ))

        with pytest.raises(ValidationError, match="CIEL:999999"):
            immunization_translator.to_internal(resource)

    def test_vaccine_code_from_unknown_system(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(
            vaccineCode={"coding": [{"system": "http://hl7.org/fhir/sid/cvx", "code": "19"}]}
        ))

        with pytest.raises(ValidationError, match="needs a coding"):
            immunization_translator.to_internal(resource)

    def test_status_other_than_completed(self, immunization_translator, immunization_payload):
        resource = Immunization.model_validate(immunization_payload(status="not-done"))

        with pytest.raises(ValidationError, match="not-done"):
            immunization_translator.to_internal(resource)

    def test_update_merges_present_elements(self, immunization_translator, immunization_payload, concepts):
        existing = immunization_translator.to_internal(
            Immunization.model_validate(immunization_payload(id="imm-1"))
        )
        update = Immunization.model_validate({
            "resourceType": "Immunization",
            "id": "imm-1",
            "lotNumber": "BAR5678",
            "vaccineCode": {"coding": [{"system": CIEL_URL, "code": "783"}]},
        })

        node = immunization_translator.to_internal(update, existing)

        by_concept = {m.concept.mappings[0]: m for m in node.group_members}
        assert by_concept["CIEL:1420"].value_text == "BAR5678"
        assert by_concept["CIEL:984"].value_coded == concepts["CIEL:783"]
        assert by_concept["CIEL:1419"].value_text == "Pfizer"
        assert by_concept["CIEL:1420"].uuid == {
            m.concept.mappings[0]: m for m in existing.group_members
        }["CIEL:1420"].uuid

    def test_update_can_clear_a_slot(self, immunization_translator, immunization_payload):
        existing = immunization_translator.to_internal(
            Immunization.model_validate(immunization_payload(id="imm-1"))
        )
        update = Immunization.model_validate({"resourceType": "Immunization", "id": "imm-1", "lotNumber": None})

        node = immunization_translator.to_internal(update, existing)

        assert "CIEL:1420" not in {m.concept.mappings[0] for m in node.group_members}

    def test_update_replaces_performer(self, immunization_translator, immunization_payload):
        existing = immunization_translator.to_internal(
            Immunization.model_validate(immunization_payload(id="imm-1"))
        )
        update = Immunization.model_validate({
            "resourceType": "Immunization",
            "id": "imm-1",
            "performer": [{"actor": {"reference": "Practitioner/other-provider"}}],
        })

        node = immunization_translator.to_internal(update, existing)

        assert [p.provider_uuid for p in node.encounter.participants] == ["other-provider"]


class TestImmunizationToExternal:
    """Test obs group -> Immunization."""

    def test_round_trip(self, immunization_translator, immunization_payload, concepts):
        node = immunization_translator.to_internal(Immunization.model_validate(immunization_payload(id="imm-1")))

        body = immunization_translator.to_external(node).to_fhir()

        assert body["id"] == "imm-1"
        assert body["status"] == "completed"
        assert body["patient"]["reference"] == f"Patient/{PATIENT_UUID}"
        assert body["performer"][0]["actor"]["reference"] == f"Practitioner/{PERFORMER_UUID}"
        assert body["performer"][0]["function"]["coding"][0]["code"] == "AP"
        assert body["occurrenceDateTime"] == "2020-07-08T18:30:00Z"
        assert body["lotNumber"] == "FOO1234"
        assert body["manufacturer"] == {"display": "Pfizer"}
        assert body["expirationDate"] == "2022-07-08"
        assert body["protocolApplied"] == [{"doseNumberPositiveInt": 2}]

        codings = body["vaccineCode"]["coding"]
        assert codings[0]["code"] == concepts["CIEL:886"].uuid
        assert {"system": CIEL_URL, "code": "886", "display": "Bacillus Calmette-Guerin vaccine"} in codings

    def test_translation_is_idempotent(self, immunization_translator, immunization_payload):
        node = immunization_translator.to_internal(Immunization.model_validate(immunization_payload(id="imm-1")))
        first = immunization_translator.to_external(node)

        again = immunization_translator.to_external(immunization_translator.to_internal(first, node))

        assert again == first

    def test_group_without_performer(self, immunization_translator, immunization_payload):
        node = immunization_translator.to_internal(Immunization.model_validate(immunization_payload()))
        orphan = node.model_copy(update={"encounter": node.encounter.model_copy(update={"participants": ()})})

        with pytest.raises(MissingRequiredAgentError):
            immunization_translator.to_external(orphan)

    def test_default_concepts(self):
        schema = ImmunizationConcepts().schema()

        assert schema.grouping_reference == "CIEL:1421"
        assert schema.member_references[0] == "CIEL:984"
        assert len(schema.member_references) == 6
