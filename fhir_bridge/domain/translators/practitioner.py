"""Practitioner translator: provider records <-> Practitioner resources."""

import logging
import uuid
from typing import Optional

from fhir_bridge.domain.ports import ValidationError
from fhir_bridge.domain.records import ProviderRecord
from fhir_bridge.domain.resources import Address, HumanName, Identifier, Practitioner
from fhir_bridge.domain.services.search_compiler import ParamKind, SearchField
from fhir_bridge.domain.translators.base import ResourceTranslator, last_updated_meta
from fhir_bridge.domain.utils import to_store_time

logger = logging.getLogger(__name__)

GENDER_TO_FHIR = {"M": "male", "F": "female", "O": "other", "U": "unknown"}
GENDER_FROM_FHIR = {v: k for k, v in GENDER_TO_FHIR.items()}

PRACTITIONER_SEARCH_FIELDS = [
    SearchField("identifier", ParamKind.TOKEN, ("identifier",)),
    SearchField("name", ParamKind.STRING, ("given_name", "middle_name", "family_name")),
    SearchField("given", ParamKind.STRING, ("given_name", "middle_name")),
    SearchField("family", ParamKind.STRING, ("family_name",)),
    SearchField("address-city", ParamKind.STRING, ("city",)),
    SearchField("address-state", ParamKind.STRING, ("state",)),
    SearchField("address-postalcode", ParamKind.STRING, ("postal_code",)),
    SearchField("address-country", ParamKind.STRING, ("country",)),
    SearchField("_id", ParamKind.TOKEN, ("uuid",)),
    SearchField("_lastUpdated", ParamKind.DATE, ("last_updated",)),
]


class PractitionerTranslator(ResourceTranslator[ProviderRecord, Practitioner]):
    """Translate between ProviderRecord and Practitioner.

    The record holds a single name and a single address; only the first
    ``name``, ``address`` and ``identifier`` of an incoming resource are kept.
    """

    resource_type = "Practitioner"
    resource_class = Practitioner

    def __init__(self, identifier_system: Optional[str] = None):
        """Initialize translator.

        Parameters:
            identifier_system: System URI put on outgoing identifiers
        """
        self.identifier_system = identifier_system

    def entity_id(self, entity: ProviderRecord) -> str:
        return entity.uuid

    def search_fields(self) -> list[SearchField]:
        return PRACTITIONER_SEARCH_FIELDS

    def to_external(self, entity: ProviderRecord) -> Practitioner:
        practitioner = Practitioner(
            id=entity.uuid,
            meta=last_updated_meta(entity.date_changed or entity.date_created),
            active=not entity.retired,
            gender=GENDER_TO_FHIR.get(entity.gender) if entity.gender else None,
            birth_date=entity.birthdate,
        )

        if entity.identifier:
            practitioner.identifier = [Identifier(system=self.identifier_system, value=entity.identifier)]

        given = [g for g in (entity.given_name, entity.middle_name) if g]
        if given or entity.family_name or entity.prefix or entity.suffix:
            practitioner.name = [HumanName(
                family=entity.family_name,
                given=given or None,
                prefix=[entity.prefix] if entity.prefix else None,
                suffix=[entity.suffix] if entity.suffix else None,
            )]

        if any((entity.address_line1, entity.city, entity.state, entity.postal_code, entity.country)):
            practitioner.address = [Address(
                line=[entity.address_line1] if entity.address_line1 else None,
                city=entity.city,
                state=entity.state,
                postal_code=entity.postal_code,
                country=entity.country,
            )]

        return practitioner

    def to_internal(self, resource: Practitioner, existing: Optional[ProviderRecord] = None) -> ProviderRecord:
        present = resource.model_fields_set
        values: dict = {}

        if "identifier" in present:
            identifier = resource.identifier[0] if resource.identifier else None
            values["identifier"] = identifier.value if identifier else None

        if "name" in present:
            name = resource.name[0] if resource.name else HumanName()
            given = name.given or []
            values.update(
                given_name=given[0] if given else None,
                middle_name=" ".join(given[1:]) or None,
                family_name=name.family,
                prefix=" ".join(name.prefix) if name.prefix else None,
                suffix=" ".join(name.suffix) if name.suffix else None,
            )

        if "gender" in present:
            values["gender"] = self._gender(resource.gender)

        if "birth_date" in present:
            values["birthdate"] = resource.birth_date

        if "active" in present and resource.active is not None:
            values["retired"] = not resource.active

        if "address" in present:
            address = resource.address[0] if resource.address else Address()
            values.update(
                address_line1=address.line[0] if address.line else None,
                city=address.city,
                state=address.state,
                postal_code=address.postal_code,
                country=address.country,
            )

        if existing is not None:
            return existing.model_copy(update=values)

        if resource.meta is not None and resource.meta.last_updated is not None:
            values["date_changed"] = to_store_time(resource.meta.last_updated)
        return ProviderRecord(uuid=resource.id or str(uuid.uuid4()), **values)

    @staticmethod
    def _gender(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        code = GENDER_FROM_FHIR.get(value)
        if code is None:
            raise ValidationError(
                f"Unsupported gender '{value}'; expected one of {sorted(GENDER_FROM_FHIR)}",
                details={"element": "gender"}
            )
        return code
