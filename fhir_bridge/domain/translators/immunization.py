"""Immunization translator: obs groups <-> Immunization resources.

An immunization is stored as an obs group attached to an encounter. The
group's members carry the vaccine, occurrence, dose number, manufacturer,
lot number and expiration date; the administering provider is the encounter
participant holding the administering encounter role.
"""

import logging
import uuid
from datetime import datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict

from fhir_bridge.domain.ports import AmbiguousOrMissingMappingError, ValidationError
from fhir_bridge.domain.records import Concept, Encounter, EncounterParticipant, ObservationNode
from fhir_bridge.domain.resources import (
    CodeableConcept,
    Coding,
    Immunization,
    ImmunizationPerformer,
    ImmunizationProtocolApplied,
    Reference,
)
from fhir_bridge.domain.services.obs_group_codec import ObsGroupCodec, ObsGroupSchema
from fhir_bridge.domain.services.search_compiler import ParamKind, SearchField
from fhir_bridge.domain.translators.base import ResourceTranslator, last_updated_meta
from fhir_bridge.domain.utils import to_instant, to_store_time, utc_now

logger = logging.getLogger(__name__)

PERFORMER_FUNCTION = CodeableConcept(coding=[Coding(
    system="http://terminology.hl7.org/CodeSystem/v2-0443",
    code="AP",
    display="Administering Provider",
)])


class ImmunizationConcepts(BaseModel):
    """Terminology references of the immunization obs group."""

    model_config = ConfigDict(frozen=True)

    grouping: str = "CIEL:1421"
    vaccine: str = "CIEL:984"
    occurrence: str = "CIEL:1410"
    dose_number: str = "CIEL:1418"
    manufacturer: str = "CIEL:1419"
    lot_number: str = "CIEL:1420"
    expiration_date: str = "CIEL:165907"

    def schema(self) -> ObsGroupSchema:
        return ObsGroupSchema(
            grouping_reference=self.grouping,
            member_references=(
                self.vaccine,
                self.occurrence,
                self.dose_number,
                self.manufacturer,
                self.lot_number,
                self.expiration_date,
            ),
        )


class ImmunizationTranslator(ResourceTranslator[ObservationNode, Immunization]):
    """Translate between immunization obs groups and Immunization resources."""

    resource_type = "Immunization"
    resource_class = Immunization

    def __init__(
        self,
        codec: ObsGroupCodec,
        administering_role_uuid: str,
        encounter_type_uuid: Optional[str] = None,
        concepts: Optional[ImmunizationConcepts] = None,
        terminology_systems: Optional[dict[str, str]] = None
    ):
        """Initialize translator.

        Parameters:
            codec: Obs-group codec (carries the per-request terminology resolver)
            administering_role_uuid: Encounter role of the administering provider
            encounter_type_uuid: Encounter type given to encounters created for immunizations
            concepts: Obs group terminology references
            terminology_systems: Vocabulary name -> coding system URI
        """
        self.codec = codec
        self.administering_role_uuid = administering_role_uuid
        self.encounter_type_uuid = encounter_type_uuid
        self.concepts = concepts or ImmunizationConcepts()
        self.schema = self.concepts.schema()
        self.terminology_systems = terminology_systems or {}
        self._vocabularies = {url: vocabulary for vocabulary, url in self.terminology_systems.items()}

    def entity_id(self, entity: ObservationNode) -> str:
        return entity.uuid

    def search_fields(self) -> list[SearchField]:
        c = self.concepts
        return [
            SearchField("_id", ParamKind.TOKEN, ("uuid",)),
            SearchField("_lastUpdated", ParamKind.DATE, ("last_updated",)),
            SearchField("patient", ParamKind.REFERENCE, ("person_uuid",), target_type="Patient"),
            SearchField("performer", ParamKind.REFERENCE, ("performer",), target_type="Practitioner"),
            SearchField(
                "vaccine-code", ParamKind.TOKEN, ("value_coded.code",),
                system_field="value_coded.system", member_concept=c.vaccine
            ),
            SearchField("date", ParamKind.DATE, ("value_datetime",), member_concept=c.occurrence),
            SearchField("lot-number", ParamKind.STRING, ("value_text",), member_concept=c.lot_number),
        ]

    # ------------------------------------------------------------------
    # Store -> external
    # ------------------------------------------------------------------

    def to_external(self, entity: ObservationNode) -> Immunization:
        slots = self.codec.decode(self.schema, entity)
        performer = self.codec.get_agent_for_role(entity, self.administering_role_uuid)
        c = self.concepts

        immunization = Immunization(
            id=entity.uuid,
            meta=last_updated_meta(entity.date_changed or entity.date_created),
            status="completed",
            patient=Reference(reference=f"Patient/{entity.person_uuid}", type="Patient"),
            encounter=Reference(reference=f"Encounter/{entity.encounter.uuid}", type="Encounter"),
            performer=[ImmunizationPerformer(
                function=PERFORMER_FUNCTION,
                actor=Reference(reference=f"Practitioner/{performer.provider_uuid}", type="Practitioner"),
            )],
        )

        vaccine = slots.get(c.vaccine)
        if vaccine is not None and vaccine.value_coded is not None:
            immunization.vaccine_code = self._codeable_concept(vaccine.value_coded)

        occurrence = slots.get(c.occurrence)
        if occurrence is not None and occurrence.value_datetime is not None:
            immunization.occurrence_date_time = to_instant(occurrence.value_datetime)

        dose = slots.get(c.dose_number)
        if dose is not None and dose.value_numeric is not None:
            immunization.protocol_applied = [
                ImmunizationProtocolApplied(dose_number_positive_int=int(dose.value_numeric))
            ]

        manufacturer = slots.get(c.manufacturer)
        if manufacturer is not None and manufacturer.value_text is not None:
            immunization.manufacturer = Reference(display=manufacturer.value_text)

        lot = slots.get(c.lot_number)
        if lot is not None and lot.value_text is not None:
            immunization.lot_number = lot.value_text

        expiration = slots.get(c.expiration_date)
        if expiration is not None and expiration.value_datetime is not None:
            immunization.expiration_date = expiration.value_datetime.date()

        return immunization

    def _codeable_concept(self, concept: Concept) -> CodeableConcept:
        codings = [Coding(code=concept.uuid, display=concept.name)]
        for mapping in concept.mappings:
            vocabulary, _, code = mapping.partition(":")
            system = self.terminology_systems.get(vocabulary)
            if system:
                codings.append(Coding(system=system, code=code, display=concept.name))
        return CodeableConcept(coding=codings, text=concept.name)

    # ------------------------------------------------------------------
    # External -> store
    # ------------------------------------------------------------------

    def to_internal(self, resource: Immunization, existing: Optional[ObservationNode] = None) -> ObservationNode:
        present = resource.model_fields_set
        if existing is None:
            self._check_required(resource)
            present = present | {"vaccine_code", "occurrence_date_time", "patient", "performer"}

        if "status" in present and resource.status not in (None, "completed"):
            raise ValidationError(
                f"Immunization status '{resource.status}' is not supported; only 'completed' can be stored",
                source=resource.id
            )

        if existing is None:
            occurrence = to_store_time(resource.occurrence_date_time) or utc_now()
            patient_uuid = resource.patient.id_part()
            encounter = Encounter(
                uuid=(resource.encounter.id_part() if resource.encounter else None) or str(uuid.uuid4()),
                patient_uuid=patient_uuid,
                encounter_type_uuid=self.encounter_type_uuid,
                encounter_datetime=occurrence,
                participants=(self._participant(resource),),
            )
            group = self.codec.encode(self.schema, occurrence, person_uuid=patient_uuid, encounter=encounter)
            if resource.id:
                group = group.model_copy(update={"uuid": resource.id})
            if resource.meta is not None and resource.meta.last_updated is not None:
                group = group.model_copy(update={"date_changed": to_store_time(resource.meta.last_updated)})
            leaves = dict(zip(self.schema.member_references, group.group_members))
            others: tuple[ObservationNode, ...] = ()
            if resource.occurrence_date_time is None:
                leaves[self.concepts.occurrence] = leaves[self.concepts.occurrence].model_copy(
                    update={"value_datetime": occurrence}
                )
        else:
            group = existing
            leaves, others = self._existing_leaves(existing)
            patient_uuid = existing.person_uuid
            encounter = existing.encounter
            if "patient" in present:
                if resource.patient is None or not resource.patient.id_part():
                    raise ValidationError("Immunization.patient cannot be removed", source=existing.uuid)
                patient_uuid = resource.patient.id_part()
                encounter = encounter.model_copy(update={"patient_uuid": patient_uuid})
            if "performer" in present:
                participants = [
                    p for p in encounter.participants
                    if p.encounter_role_uuid != self.administering_role_uuid
                ]
                participants.append(self._participant(resource))
                encounter = encounter.model_copy(update={"participants": tuple(participants)})

        for reference, update in self._slot_values(resource, present).items():
            leaves[reference] = leaves[reference].model_copy(update=update)

        members = tuple(
            leaf.model_copy(update={"person_uuid": patient_uuid, "encounter": encounter})
            for leaf in leaves.values()
            if leaf.has_value()
        ) + others

        node = group.model_copy(update={
            "person_uuid": patient_uuid,
            "encounter": encounter,
            "group_members": members,
        })
        self.codec.validate(self.schema, node).unwrap()
        self.codec.get_agent_for_role(node, self.administering_role_uuid)
        return node

    def _check_required(self, resource: Immunization) -> None:
        missing = []
        if resource.patient is None or not resource.patient.id_part():
            missing.append("patient")
        if resource.vaccine_code is None or not resource.vaccine_code.coding:
            missing.append("vaccineCode")
        if missing:
            raise ValidationError(
                f"Immunization is missing required element(s): {', '.join(missing)}",
                source=resource.id,
                details={"missing": missing}
            )

    def _participant(self, resource: Immunization) -> EncounterParticipant:
        performers = resource.performer or []
        if len(performers) != 1 or not performers[0].actor.id_part():
            raise ValidationError(
                f"Immunization requires exactly one performer referencing a practitioner, got {len(performers)}",
                source=resource.id
            )
        return EncounterParticipant(
            provider_uuid=performers[0].actor.id_part(),
            encounter_role_uuid=self.administering_role_uuid,
        )

    def _existing_leaves(self, existing: ObservationNode) -> tuple[dict[str, ObservationNode], tuple]:
        slots = self.codec.decode(self.schema, existing)
        _, concepts = self.codec.resolve_schema(self.schema)
        leaves = {}
        for reference, concept in concepts.items():
            leaves[reference] = slots.get(reference) or ObservationNode(
                uuid=str(uuid.uuid4()),
                concept=concept,
                obs_datetime=existing.obs_datetime,
            )
        filled = {leaf.uuid for leaf in slots.values()}
        others = tuple(m for m in existing.group_members if m.uuid not in filled)
        return leaves, others

    def _slot_values(self, resource: Immunization, present: set[str]) -> dict[str, dict]:
        c = self.concepts
        values: dict[str, dict] = {}

        if "vaccine_code" in present:
            values[c.vaccine] = {"value_coded": self._vaccine_concept(resource)}

        if "occurrence_date_time" in present and resource.occurrence_date_time is not None:
            values[c.occurrence] = {"value_datetime": to_store_time(resource.occurrence_date_time)}

        if "protocol_applied" in present:
            dose = None
            if resource.protocol_applied and resource.protocol_applied[0].dose_number_positive_int is not None:
                dose = float(resource.protocol_applied[0].dose_number_positive_int)
            values[c.dose_number] = {"value_numeric": dose}

        if "manufacturer" in present:
            values[c.manufacturer] = {
                "value_text": resource.manufacturer.display if resource.manufacturer else None
            }

        if "lot_number" in present:
            values[c.lot_number] = {"value_text": resource.lot_number}

        if "expiration_date" in present:
            expiration = resource.expiration_date
            values[c.expiration_date] = {
                "value_datetime": datetime.combine(expiration, time()) if expiration else None
            }

        return values

    def _vaccine_concept(self, resource: Immunization) -> Optional[Concept]:
        if resource.vaccine_code is None:
            raise ValidationError("Immunization.vaccineCode cannot be removed", source=resource.id)

        for coding in resource.vaccine_code.coding or []:
            vocabulary = self._vocabularies.get(coding.system) if coding.system else None
            if vocabulary is None or not coding.code:
                continue
            reference = f"{vocabulary}:{coding.code}"
            try:
                return self.codec.resolver.resolve(reference)
            except AmbiguousOrMissingMappingError as e:
                raise ValidationError(
                    f"Vaccine code '{reference}' does not identify a single known concept",
                    source=resource.id,
                    details={"vaccineCode": reference}
                ) from e

        raise ValidationError(
            f"Immunization.vaccineCode needs a coding from one of {sorted(self._vocabularies)}",
            source=resource.id
        )
