"""Store Record Definitions.

This module defines the internal models for entities held by the generic
clinical store: coded concepts, observation nodes (leaves and groups),
encounters with their participants, and provider records.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are immutable; updates produce new instances via model_copy
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Concept(BaseModel):
    """A coded concept from the concept dictionary.

    Parameters:
        concept_id: Store-internal numeric identifier
        uuid: Stable external identifier
        name: Preferred display name
        mappings: Terminology references mapped to this concept ("CIEL:1421")
    """

    model_config = ConfigDict(frozen=True)

    concept_id: int = Field(..., description="Store-internal concept identifier")
    uuid: str = Field(..., description="Stable concept UUID")
    name: str = Field(..., description="Preferred display name")
    mappings: tuple[str, ...] = Field(default=(), description="Mapped terminology references")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Concept):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(self.uuid)


class EncounterParticipant(BaseModel):
    """A provider taking part in an encounter under a given role."""

    model_config = ConfigDict(frozen=True)

    provider_uuid: str = Field(..., description="Participating provider UUID")
    encounter_role_uuid: str = Field(..., description="Encounter role UUID")


class Encounter(BaseModel):
    """An encounter owning observations.

    Parameters:
        uuid: Encounter identifier
        patient_uuid: Patient the encounter belongs to
        encounter_type_uuid: Encounter type identifier
        encounter_datetime: When the encounter took place
        participants: Providers involved and their roles
    """

    model_config = ConfigDict(frozen=True)

    uuid: str
    patient_uuid: str
    encounter_type_uuid: Optional[str] = None
    encounter_datetime: datetime
    participants: tuple[EncounterParticipant, ...] = ()

    def providers_by_role(self, encounter_role_uuid: str) -> list[EncounterParticipant]:
        """Get the participants holding a role.

        Parameters:
            encounter_role_uuid: Encounter role to filter by

        Returns:
            Participants holding the role, in encounter order
        """
        return [p for p in self.participants if p.encounter_role_uuid == encounter_role_uuid]


class ObservationNode(BaseModel):
    """One recorded fact: a leaf holding a typed value, or a group of nodes.

    A node is either a leaf (may carry one value) or a group (has members),
    never both.

    Parameters:
        uuid: Unique identifier
        concept: Coded concept describing the fact
        obs_datetime: When the fact was recorded
        person_uuid: Patient the fact is about
        encounter: Owning encounter, if any
        value_numeric: Numeric value (leaf only)
        value_coded: Coded value (leaf only)
        value_text: Free text value (leaf only)
        value_datetime: Date/time value (leaf only)
        group_members: Child nodes (group only)
        voided: Soft-delete flag
        date_created: Server-assigned creation timestamp
        date_changed: Server-assigned last change timestamp
    """

    model_config = ConfigDict(frozen=True)

    uuid: str
    concept: Concept
    obs_datetime: datetime
    person_uuid: Optional[str] = None
    encounter: Optional[Encounter] = None
    value_numeric: Optional[float] = None
    value_coded: Optional[Concept] = None
    value_text: Optional[str] = None
    value_datetime: Optional[datetime] = None
    group_members: tuple['ObservationNode', ...] = ()
    voided: bool = False
    date_created: Optional[datetime] = None
    date_changed: Optional[datetime] = None

    @model_validator(mode="after")
    def check_leaf_or_group(self) -> 'ObservationNode':
        """Reject nodes that are both a group and a valued leaf."""
        if self.is_group() and self.has_value():
            raise ValueError(
                f"Observation '{self.uuid}' cannot carry a value and group members at the same time"
            )
        return self

    def is_group(self) -> bool:
        return bool(self.group_members)

    def has_value(self) -> bool:
        return any(
            v is not None
            for v in (self.value_numeric, self.value_coded, self.value_text, self.value_datetime)
        )


class ProviderRecord(BaseModel):
    """Store record for a healthcare provider and its person demographics.

    Parameters:
        uuid: Provider identifier (external resource id)
        identifier: Provider identifier value (e.g., license or staff number)
        given_name: Given/first name
        middle_name: Middle name
        family_name: Family/last name
        prefix: Name prefix (e.g., "Dr.")
        suffix: Name suffix (e.g., "Jr.")
        gender: Administrative gender code (M, F, O, U)
        birthdate: Date of birth
        address_line1: Street address
        city: City or village
        state: State or province
        postal_code: Postal code
        country: Country
        retired: Provider is no longer active
        voided: Soft-delete flag
        date_created: Server-assigned creation timestamp
        date_changed: Server-assigned last change timestamp
    """

    model_config = ConfigDict(frozen=True)

    uuid: str
    identifier: Optional[str] = None
    given_name: Optional[str] = None
    middle_name: Optional[str] = None
    family_name: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    gender: Optional[str] = None
    birthdate: Optional[date] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    retired: bool = False
    voided: bool = False
    date_created: Optional[datetime] = None
    date_changed: Optional[datetime] = None
