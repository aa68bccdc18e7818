"""Domain layer for FHIR-Bridge.

This module contains the store's record models, the FHIR resource models,
the ports adapters implement and the services that translate between them.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .records import (
    Concept,
    Encounter,
    EncounterParticipant,
    ObservationNode,
    ProviderRecord,
)

__all__ = [
    "Concept",
    "Encounter",
    "EncounterParticipant",
    "ObservationNode",
    "ProviderRecord",
]
