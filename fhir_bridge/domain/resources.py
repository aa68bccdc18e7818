"""External Resource Definitions (FHIR R4).

This module defines the strongly-typed resource representation exposed to
clients: Practitioner, Immunization, Provenance, Bundle and OperationOutcome,
plus the shared datatypes they are built from.

Only the elements the bridge maps are modelled; unknown elements in incoming
payloads are ignored. Field names are snake_case in Python and camelCase on
the wire (pydantic aliases).
"""

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class FhirModel(BaseModel):
    """Base class for FHIR elements: camelCase aliases, unknown elements ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_fhir(self) -> dict[str, Any]:
        """Serialize to FHIR JSON (aliases, no empty elements)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Datatypes
# ============================================================================

class Coding(FhirModel):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(FhirModel):
    coding: Optional[list[Coding]] = None
    text: Optional[str] = None


class Reference(FhirModel):
    reference: Optional[str] = None
    type: Optional[str] = None
    display: Optional[str] = None

    def id_part(self) -> Optional[str]:
        """Get the logical id of a relative reference ("Patient/123" -> "123")."""
        if not self.reference:
            return None
        return self.reference.rstrip("/").rsplit("/", 1)[-1]


class Identifier(FhirModel):
    system: Optional[str] = None
    value: Optional[str] = None


class HumanName(FhirModel):
    family: Optional[str] = None
    given: Optional[list[str]] = None
    prefix: Optional[list[str]] = None
    suffix: Optional[list[str]] = None


class Address(FhirModel):
    line: Optional[list[str]] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(None, alias="postalCode")
    country: Optional[str] = None


class Meta(FhirModel):
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")


class Resource(FhirModel):
    """Common elements of every resource."""

    resource_type: str = Field(..., alias="resourceType")
    id: Optional[str] = None
    meta: Optional[Meta] = None


# ============================================================================
# Resources
# ============================================================================

class Practitioner(Resource):
    """A person with a formal responsibility in the provisioning of healthcare."""

    resource_type: Literal["Practitioner"] = Field("Practitioner", alias="resourceType")
    identifier: Optional[list[Identifier]] = None
    active: Optional[bool] = None
    name: Optional[list[HumanName]] = None
    gender: Optional[str] = None
    birth_date: Optional[date] = Field(None, alias="birthDate")
    address: Optional[list[Address]] = None


class ImmunizationPerformer(FhirModel):
    function: Optional[CodeableConcept] = None
    actor: Reference


class ImmunizationProtocolApplied(FhirModel):
    dose_number_positive_int: Optional[int] = Field(None, alias="doseNumberPositiveInt")


class Immunization(Resource):
    """A vaccine administration event, stored as an obs group."""

    resource_type: Literal["Immunization"] = Field("Immunization", alias="resourceType")
    status: Optional[str] = None
    vaccine_code: Optional[CodeableConcept] = Field(None, alias="vaccineCode")
    patient: Optional[Reference] = None
    encounter: Optional[Reference] = None
    occurrence_date_time: Optional[datetime] = Field(None, alias="occurrenceDateTime")
    manufacturer: Optional[Reference] = None
    lot_number: Optional[str] = Field(None, alias="lotNumber")
    expiration_date: Optional[date] = Field(None, alias="expirationDate")
    performer: Optional[list[ImmunizationPerformer]] = None
    protocol_applied: Optional[list[ImmunizationProtocolApplied]] = Field(None, alias="protocolApplied")


class ProvenanceAgent(FhirModel):
    type: Optional[CodeableConcept] = None
    role: Optional[list[CodeableConcept]] = None
    who: Reference


class Provenance(Resource):
    """Who changed a resource, when, and how."""

    resource_type: Literal["Provenance"] = Field("Provenance", alias="resourceType")
    target: list[Reference]
    recorded: datetime
    activity: Optional[CodeableConcept] = None
    agent: list[ProvenanceAgent]


class BundleLink(FhirModel):
    relation: str
    url: str


class BundleEntry(FhirModel):
    full_url: Optional[str] = Field(None, alias="fullUrl")
    resource: dict[str, Any]


class Bundle(FhirModel):
    resource_type: Literal["Bundle"] = Field("Bundle", alias="resourceType")
    id: Optional[str] = None
    type: str
    total: Optional[int] = None
    link: Optional[list[BundleLink]] = None
    entry: Optional[list[BundleEntry]] = None


class OperationOutcomeIssue(FhirModel):
    severity: str
    code: str
    diagnostics: Optional[str] = None


class OperationOutcome(FhirModel):
    resource_type: Literal["OperationOutcome"] = Field("OperationOutcome", alias="resourceType")
    issue: list[OperationOutcomeIssue]
