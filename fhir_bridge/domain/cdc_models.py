"""Change Data Capture (CDC) Models.

This module defines models for tracking changes to store entities: field-level
change events produced by change detection, the audit events the store appends
on every write, and the revisions reconstructed from that audit trail.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Audit events are immutable (append-only)
    - Revisions are a read-side projection of audit events
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditAction(str, Enum):
    """Kinds of entity changes recorded in the audit trail."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """Represents a single field-level change in an entity.

    Parameters:
        entity_type: Kind of entity (practitioner, immunization)
        entity_id: Identifier of the entity
        field_name: Name of the field that changed
        old_value: Previous value (before change)
        new_value: New value (after change)
    """

    entity_type: str = Field(..., description="Kind of entity")
    entity_id: str = Field(..., description="Identifier of the entity")
    field_name: str = Field(..., description="Name of the field that changed")
    old_value: Optional[Any] = Field(None, description="Previous value (before change)")
    new_value: Optional[Any] = Field(None, description="New value (after change)")

    model_config = ConfigDict(frozen=True)


class AuditEvent(BaseModel):
    """One entry of the store's append-only audit trail.

    Parameters:
        event_id: Unique identifier of the audit entry
        entity_type: Kind of entity (practitioner, immunization)
        entity_id: Identifier of the entity
        action: CREATE, UPDATE or DELETE
        occurred_at: When the change was committed
        agent: Identity of the acting user
        changed_fields: Names of the fields the change touched
    """

    event_id: str = Field(..., description="Unique audit entry identifier")
    entity_type: str = Field(..., description="Kind of entity")
    entity_id: str = Field(..., description="Identifier of the entity")
    action: AuditAction = Field(..., description="Kind of change")
    occurred_at: datetime = Field(..., description="When the change was committed")
    agent: Optional[str] = Field(None, description="Acting user")
    changed_fields: list[str] = Field(default_factory=list, description="Fields touched by the change")

    model_config = ConfigDict(frozen=True)


class Revision(BaseModel):
    """One reconstructed historical event of an entity.

    Parameters:
        revision_id: Deterministic identifier derived from entity id and ordinal
        entity_id: Identifier of the entity
        ordinal: Position of the event in the entity's audit trail
        activity: CREATE, UPDATE or DELETE
        recorded: When the change was committed
        agent: Identity of the acting user
    """

    revision_id: str
    entity_id: str
    ordinal: int
    activity: AuditAction
    recorded: datetime
    agent: Optional[str] = None

    model_config = ConfigDict(frozen=True)
