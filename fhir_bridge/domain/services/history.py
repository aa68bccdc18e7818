"""History Reconstructor.

The store does not version entities; it keeps an append-only audit trail.
This service projects that trail into ordered revisions and renders them as
Provenance resources.
"""

import logging
import uuid
from typing import Optional

from fhir_bridge.domain.cdc_models import AuditAction, Revision
from fhir_bridge.domain.ports import AuditLogPort
from fhir_bridge.domain.resources import CodeableConcept, Coding, Provenance, ProvenanceAgent, Reference
from fhir_bridge.domain.utils import to_instant

logger = logging.getLogger(__name__)

# Namespace for deterministic revision identifiers
REVISION_NAMESPACE = uuid.UUID("6f1c2f4e-3a0b-5d7e-9c41-8b2e0d5a7f13")

DATA_OPERATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-DataOperation"
PARTICIPANT_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/provenance-participant-type"
PARTICIPATION_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ParticipationType"


def revision_id(entity_id: str, ordinal: int) -> str:
    """Stable identifier of the ``ordinal``-th revision of an entity."""
    return str(uuid.uuid5(REVISION_NAMESPACE, f"{entity_id}/{ordinal}"))


class HistoryReconstructor:
    """Reconstruct entity history from the audit trail."""

    def __init__(self, audit_log: AuditLogPort):
        self.audit_log = audit_log

    def history_for(self, entity_id: str, entity_type: Optional[str] = None) -> list[Revision]:
        """Get the revisions of an entity, oldest first.

        Events are ordered by timestamp; events with equal timestamps keep
        their audit trail order. Ordinals start at 1.

        Parameters:
            entity_id: Store identifier of the entity
            entity_type: Kind of entity whose events are read; all kinds if None

        Returns:
            Revisions in chronological order; empty if the trail is empty

        Raises:
            StorageError: If the audit trail cannot be read
        """
        events = self.audit_log.events_for(entity_id, entity_type).unwrap()
        ordered = sorted(events, key=lambda e: e.occurred_at)

        revisions = [
            Revision(
                revision_id=revision_id(entity_id, ordinal),
                entity_id=entity_id,
                ordinal=ordinal,
                activity=event.action,
                recorded=event.occurred_at,
                agent=event.agent,
            )
            for ordinal, event in enumerate(ordered, start=1)
        ]
        logger.debug(f"Reconstructed {len(revisions)} revision(s) for {entity_id}")
        return revisions

    def render(self, revisions: list[Revision], target: Reference) -> list[Provenance]:
        """Render revisions as Provenance resources targeting one resource."""
        return [self._to_provenance(revision, target) for revision in revisions]

    @staticmethod
    def _to_provenance(revision: Revision, target: Reference) -> Provenance:
        activity: AuditAction = revision.activity
        return Provenance(
            id=revision.revision_id,
            target=[target],
            recorded=to_instant(revision.recorded),
            activity=CodeableConcept(coding=[Coding(
                system=DATA_OPERATION_SYSTEM,
                code=activity.value,
                display=activity.value.lower(),
            )]),
            agent=[ProvenanceAgent(
                type=CodeableConcept(coding=[Coding(
                    system=PARTICIPANT_TYPE_SYSTEM,
                    code="author",
                    display="Author",
                )]),
                role=[CodeableConcept(coding=[Coding(
                    system=PARTICIPATION_TYPE_SYSTEM,
                    code="AUT",
                    display="author",
                )])],
                who=Reference(display=revision.agent or "unknown"),
            )],
        )
