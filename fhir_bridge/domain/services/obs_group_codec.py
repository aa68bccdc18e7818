"""Obs-Group Codec.

Bidirectional mapping between a generic observation group and a fixed set of
named slots declared by an ``ObsGroupSchema``. Decoding validates the
structural invariants the generic store cannot enforce itself:

    - the root node is defined by the schema's grouping concept
    - each slot is filled by at most one member
    - at least one member fills a slot (non-schema members are ignored)

Decoding is tagged: ``validate`` returns a Result that is either the Slot Map
or a failure carrying the specific validation error; ``decode`` raises it.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fhir_bridge.domain.ports import (
    AmbiguousOrMissingMappingError,
    DuplicateSlotError,
    MissingRequiredAgentError,
    MissingSlotsError,
    Result,
    SchemaMismatchError,
)
from fhir_bridge.domain.records import Concept, Encounter, EncounterParticipant, ObservationNode
from fhir_bridge.domain.services.terminology import TerminologyResolver

logger = logging.getLogger(__name__)

# Mapping from member terminology reference to the node filling that slot
SlotMap = dict[str, ObservationNode]


class ObsGroupSchema(BaseModel):
    """Static declaration of an obs group: grouping concept plus ordered member slots.

    Parameters:
        grouping_reference: Terminology reference of the group node's concept
        member_references: Terminology references of the member slots, in order
    """

    model_config = ConfigDict(frozen=True)

    grouping_reference: str = Field(..., description="Grouping concept reference")
    member_references: tuple[str, ...] = Field(..., description="Member concept references")

    @field_validator("member_references")
    @classmethod
    def validate_members(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("An obs group schema needs at least one member concept")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate member concepts in obs group schema: {list(v)}")
        return v


class ObsGroupCodec:
    """Encode and decode obs groups against a schema."""

    def __init__(self, resolver: TerminologyResolver):
        """Initialize codec.

        Parameters:
            resolver: Terminology resolver (memoizing, one per request)
        """
        self.resolver = resolver

    def resolve_schema(self, schema: ObsGroupSchema) -> tuple[Concept, dict[str, Concept]]:
        """Resolve every concept of a schema.

        Parameters:
            schema: Schema to resolve

        Returns:
            (grouping concept, member reference -> concept) in schema order

        Raises:
            AmbiguousOrMissingMappingError: If a reference does not resolve to
                exactly one concept, or two members resolve to the same concept
        """
        grouping = self.resolver.resolve(schema.grouping_reference)
        members: dict[str, Concept] = {}
        for reference in schema.member_references:
            concept = self.resolver.resolve(reference)
            for other_reference, other in members.items():
                if other == concept:
                    raise AmbiguousOrMissingMappingError(
                        f"Obs group members '{other_reference}' and '{reference}' resolve to the same concept",
                        key=reference
                    )
            members[reference] = concept
        return grouping, members

    def encode(
        self,
        schema: ObsGroupSchema,
        grouping_timestamp: datetime,
        person_uuid: Optional[str] = None,
        encounter: Optional[Encounter] = None
    ) -> ObservationNode:
        """Build a new obs group with one empty leaf per schema member.

        Pure construction; nothing is persisted.

        Parameters:
            schema: Schema describing the group
            grouping_timestamp: Timestamp shared by the group and all its members
            person_uuid: Patient the group is about
            encounter: Owning encounter

        Returns:
            ObservationNode: The new group node
        """
        grouping, members = self.resolve_schema(schema)
        leaves = tuple(
            ObservationNode(
                uuid=str(uuid.uuid4()),
                concept=concept,
                obs_datetime=grouping_timestamp,
                person_uuid=person_uuid,
                encounter=encounter,
            )
            for concept in members.values()
        )
        return ObservationNode(
            uuid=str(uuid.uuid4()),
            concept=grouping,
            obs_datetime=grouping_timestamp,
            person_uuid=person_uuid,
            encounter=encounter,
            group_members=leaves,
        )

    def validate(self, schema: ObsGroupSchema, node: ObservationNode) -> Result[SlotMap]:
        """Decode an obs group into a Slot Map without raising validation errors.

        Parameters:
            schema: Schema to decode against
            node: Root node of the group

        Returns:
            Result[SlotMap]: The Slot Map, or a failure carrying a
                SchemaMismatchError, DuplicateSlotError or MissingSlotsError

        Raises:
            AmbiguousOrMissingMappingError: If the schema itself does not resolve
        """
        grouping, members = self.resolve_schema(schema)

        if node.concept != grouping:
            return Result.failure_result(SchemaMismatchError(
                f"The obs group is required to be defined by a concept mapped as same as "
                f"{schema.grouping_reference}. That is not the case for obs '{node.uuid}' "
                f"that is defined by the concept named '{node.concept.name}'",
                source=node.uuid
            ))

        slots: SlotMap = {}
        for member in node.group_members:
            for reference, concept in members.items():
                if member.concept != concept:
                    continue
                if reference in slots:
                    return Result.failure_result(DuplicateSlotError(
                        f"The obs member defined by concept '{reference}' is found multiple "
                        f"times in obs group '{node.uuid}'",
                        source=node.uuid,
                        details={"slot": reference}
                    ))
                slots[reference] = member

        if not slots:
            return Result.failure_result(MissingSlotsError(
                f"Obs group '{node.uuid}' has no member defined by any of the concepts "
                f"{list(schema.member_references)}",
                source=node.uuid
            ))

        return Result.success_result(slots)

    def decode(self, schema: ObsGroupSchema, node: ObservationNode) -> SlotMap:
        """Decode an obs group into a Slot Map.

        Parameters:
            schema: Schema to decode against
            node: Root node of the group

        Returns:
            SlotMap: Member reference -> member node, for every filled slot

        Raises:
            SchemaMismatchError: Root concept is not the grouping concept
            DuplicateSlotError: Two members fill the same slot
            MissingSlotsError: No member fills any slot
        """
        return self.validate(schema, node).unwrap()

    def get_agent_for_role(self, node: ObservationNode, encounter_role_uuid: str) -> EncounterParticipant:
        """Get the single participant of the group's encounter holding a role.

        Parameters:
            node: Obs group attached to an encounter
            encounter_role_uuid: Required encounter role

        Returns:
            EncounterParticipant: The unique participant in that role

        Raises:
            MissingRequiredAgentError: If the group has no encounter, or zero or
                several participants hold the role
        """
        encounter = node.encounter
        if encounter is None:
            raise MissingRequiredAgentError(
                f"Obs group '{node.uuid}' is required to be attached to an encounter",
                source=node.uuid
            )

        participants = encounter.providers_by_role(encounter_role_uuid)
        if len(participants) != 1:
            raise MissingRequiredAgentError(
                f"Obs group '{node.uuid}' is required to be attached to an encounter involving a "
                f"single provider with the role '{encounter_role_uuid}'. Encounter '{encounter.uuid}' "
                f"has {len(participants)}",
                source=node.uuid,
                details={"encounter": encounter.uuid, "role": encounter_role_uuid}
            )
        return participants[0]
