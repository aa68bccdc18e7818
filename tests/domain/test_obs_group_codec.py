"""Unit tests for the obs-group codec.

Tests cover:
- Schema declaration checks
- Encoding new groups
- Decoding into slot maps and the structural failures
- Administering agent lookup on the owning encounter
"""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from fhir_bridge.domain.ports import (
    AmbiguousOrMissingMappingError,
    DuplicateSlotError,
    MissingRequiredAgentError,
    MissingSlotsError,
    Result,
    SchemaMismatchError,
    TerminologyPort,
)
from fhir_bridge.domain.records import Concept, Encounter, EncounterParticipant, ObservationNode
from fhir_bridge.domain.services.obs_group_codec import ObsGroupCodec, ObsGroupSchema
from fhir_bridge.domain.services.terminology import TerminologyResolver

ROLE = "role-administering"
OTHER_ROLE = "role-clerk"
TIMESTAMP = datetime(2020, 7, 8, 18, 30)


class DictionaryTerminology(TerminologyPort):
    """Concept dictionary held in memory."""

    def __init__(self, concepts: list[Concept]):
        self.concepts = concepts

    def concepts_for_mapping(self, vocabulary, code):
        reference = f"{vocabulary}:{code}"
        return Result.success_result([c for c in self.concepts if reference in c.mappings])


GROUPING = Concept(concept_id=1, uuid="uuid-1421", name="Immunization history", mappings=("CIEL:1421",))
DOSE = Concept(concept_id=2, uuid="uuid-1418", name="Immunization sequence number", mappings=("CIEL:1418",))
LOT = Concept(concept_id=3, uuid="uuid-1420", name="Vaccine lot number", mappings=("CIEL:1420",))
OTHER = Concept(concept_id=4, uuid="uuid-5089", name="Weight (kg)", mappings=("CIEL:5089",))


@pytest.fixture
def codec():
    return ObsGroupCodec(TerminologyResolver(DictionaryTerminology([GROUPING, DOSE, LOT, OTHER])))


@pytest.fixture
def schema():
    return ObsGroupSchema(grouping_reference="CIEL:1421", member_references=("CIEL:1418", "CIEL:1420"))


def leaf(uuid: str, concept: Concept, **values) -> ObservationNode:
    return ObservationNode(uuid=uuid, concept=concept, obs_datetime=TIMESTAMP, **values)


def group(*members: ObservationNode, concept: Concept = GROUPING, encounter=None) -> ObservationNode:
    return ObservationNode(
        uuid="group-1", concept=concept, obs_datetime=TIMESTAMP, encounter=encounter, group_members=members
    )


def encounter_with(*participants: EncounterParticipant) -> Encounter:
    return Encounter(
        uuid="encounter-1", patient_uuid="patient-1", encounter_datetime=TIMESTAMP, participants=participants
    )


class TestObsGroupSchema:
    """Test schema declaration checks."""

    def test_schema_requires_members(self):
        with pytest.raises(PydanticValidationError):
            ObsGroupSchema(grouping_reference="CIEL:1421", member_references=())

    def test_schema_rejects_duplicate_members(self):
        with pytest.raises(PydanticValidationError):
            ObsGroupSchema(grouping_reference="CIEL:1421", member_references=("CIEL:1418", "CIEL:1418"))

    def test_members_resolving_to_same_concept(self):
        both = Concept(concept_id=9, uuid="uuid-both", name="Both", mappings=("CIEL:1418", "LOCAL:dose"))
        codec = ObsGroupCodec(TerminologyResolver(DictionaryTerminology([GROUPING, both])))
        schema = ObsGroupSchema(grouping_reference="CIEL:1421", member_references=("CIEL:1418", "LOCAL:dose"))

        with pytest.raises(AmbiguousOrMissingMappingError):
            codec.resolve_schema(schema)


class TestEncode:
    """Test construction of new obs groups."""

    def test_encode_builds_one_empty_leaf_per_member(self, codec, schema):
        node = codec.encode(schema, TIMESTAMP, person_uuid="patient-1")

        assert node.concept == GROUPING
        assert [m.concept for m in node.group_members] == [DOSE, LOT]
        assert all(not m.has_value() for m in node.group_members)
        assert all(m.obs_datetime == TIMESTAMP for m in node.group_members)
        assert all(m.person_uuid == "patient-1" for m in node.group_members)

    def test_encode_assigns_fresh_identifiers(self, codec, schema):
        first = codec.encode(schema, TIMESTAMP)
        second = codec.encode(schema, TIMESTAMP)

        ids = {first.uuid, second.uuid} | {m.uuid for m in first.group_members + second.group_members}
        assert len(ids) == 6

    def test_encode_with_unmapped_member_raises(self, codec):
        schema = ObsGroupSchema(grouping_reference="CIEL:1421", member_references=("CIEL:404",))

        with pytest.raises(AmbiguousOrMissingMappingError):
            codec.encode(schema, TIMESTAMP)


class TestDecode:
    """Test decoding into slot maps."""

    def test_decode_single_member(self, codec):
        """A group with one schema member decodes to a one-entry slot map."""
        schema = ObsGroupSchema(grouping_reference="CIEL:1421", member_references=("CIEL:1418",))
        dose = leaf("dose-1", DOSE, value_numeric=1.0)

        slots = codec.decode(schema, group(dose))

        assert slots == {"CIEL:1418": dose}

    def test_decode_all_members(self, codec, schema):
        dose = leaf("dose-1", DOSE, value_numeric=2.0)
        lot = leaf("lot-1", LOT, value_text="FOO1234")

        slots = codec.decode(schema, group(lot, dose))

        assert slots == {"CIEL:1418": dose, "CIEL:1420": lot}

    def test_decode_ignores_non_schema_members(self, codec, schema):
        dose = leaf("dose-1", DOSE, value_numeric=2.0)

        slots = codec.decode(schema, group(dose, leaf("weight-1", OTHER, value_numeric=70.0)))

        assert list(slots) == ["CIEL:1418"]

    def test_wrong_grouping_concept(self, codec, schema):
        result = codec.validate(schema, group(leaf("dose-1", DOSE), concept=OTHER))

        assert result.is_failure()
        assert result.error_type == "SchemaMismatchError"
        with pytest.raises(SchemaMismatchError, match="CIEL:1421"):
            result.unwrap()

    def test_duplicate_slot(self, codec, schema):
        node = group(leaf("dose-1", DOSE, value_numeric=1.0), leaf("dose-2", DOSE, value_numeric=2.0))

        with pytest.raises(DuplicateSlotError) as exc_info:
            codec.decode(schema, node)

        assert exc_info.value.details["slot"] == "CIEL:1418"

    def test_no_schema_member(self, codec, schema):
        with pytest.raises(MissingSlotsError):
            codec.decode(schema, group(leaf("weight-1", OTHER, value_numeric=70.0)))

    def test_empty_group(self, codec, schema):
        with pytest.raises(MissingSlotsError):
            codec.decode(schema, group())

    def test_validate_success_result(self, codec, schema):
        result = codec.validate(schema, group(leaf("lot-1", LOT, value_text="A1")))

        assert result.is_success()
        assert list(result.value) == ["CIEL:1420"]

    def test_leaf_cannot_be_group(self):
        with pytest.raises(PydanticValidationError):
            ObservationNode(
                uuid="bad",
                concept=GROUPING,
                obs_datetime=TIMESTAMP,
                value_text="value",
                group_members=(leaf("dose-1", DOSE),),
            )


class TestAgentForRole:
    """Test lookup of the single participant holding a role."""

    def test_single_participant(self, codec):
        participant = EncounterParticipant(provider_uuid="provider-1", encounter_role_uuid=ROLE)
        node = group(encounter=encounter_with(
            EncounterParticipant(provider_uuid="provider-2", encounter_role_uuid=OTHER_ROLE),
            participant,
        ))

        assert codec.get_agent_for_role(node, ROLE) == participant

    def test_no_encounter(self, codec):
        with pytest.raises(MissingRequiredAgentError, match="attached to an encounter"):
            codec.get_agent_for_role(group(), ROLE)

    def test_no_participant_in_role(self, codec):
        node = group(encounter=encounter_with(
            EncounterParticipant(provider_uuid="provider-2", encounter_role_uuid=OTHER_ROLE),
        ))

        with pytest.raises(MissingRequiredAgentError):
            codec.get_agent_for_role(node, ROLE)

    def test_several_participants_in_role(self, codec):
        node = group(encounter=encounter_with(
            EncounterParticipant(provider_uuid="provider-1", encounter_role_uuid=ROLE),
            EncounterParticipant(provider_uuid="provider-2", encounter_role_uuid=ROLE),
        ))

        with pytest.raises(MissingRequiredAgentError) as exc_info:
            codec.get_agent_for_role(node, ROLE)

        assert exc_info.value.details["role"] == ROLE
