"""Change Detection Service.

This service detects field-level changes between the stored and the incoming
state of an entity. Stores use it to decide whether an update actually
changes anything, and to record which fields an audited update touched.

Architecture:
    - Pure domain service with no infrastructure dependencies
    - Uses pandas for NaN/None/NaT aware value comparison
    - Returns domain models (ChangeEvent) for use by adapters
"""

import logging
from typing import Any, Iterable, List, Optional

import pandas as pd

from fhir_bridge.domain.cdc_models import ChangeEvent

logger = logging.getLogger(__name__)

# Bookkeeping fields never reported as changes
_IGNORED_FIELDS = frozenset({"date_created", "date_changed"})


class ChangeDetector:
    """Service for detecting field-level changes between entity states."""

    def __init__(self, ignored_fields: Optional[Iterable[str]] = None):
        """Initialize change detector.

        Parameters:
            ignored_fields: Extra field names excluded from comparison
        """
        self.ignored_fields = _IGNORED_FIELDS | frozenset(ignored_fields or ())

    def diff(
        self,
        entity_type: str,
        entity_id: str,
        old: dict[str, Any],
        new: dict[str, Any]
    ) -> List[ChangeEvent]:
        """Compare two flat snapshots of one entity.

        Parameters:
            entity_type: Kind of entity (practitioner, immunization)
            entity_id: Identifier of the entity
            old: Stored field values
            new: Incoming field values

        Returns:
            One ChangeEvent per field whose value differs, in field order
        """
        events = []
        for field_name in self._fields(old, new):
            old_value = old.get(field_name)
            new_value = new.get(field_name)
            if self.values_equal(old_value, new_value):
                continue
            events.append(ChangeEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
            ))

        if events:
            logger.debug(
                f"Detected {len(events)} changed field(s) on {entity_type} {entity_id}: "
                f"{[e.field_name for e in events]}"
            )
        return events

    def _fields(self, old: dict[str, Any], new: dict[str, Any]) -> list[str]:
        fields = list(old)
        fields.extend(k for k in new if k not in old)
        return [f for f in fields if f not in self.ignored_fields]

    @staticmethod
    def values_equal(old: Any, new: Any) -> bool:
        """Compare two values accounting for NaN, None, arrays, etc.

        Parameters:
            old: Old value
            new: New value

        Returns:
            True if values are equal, False otherwise
        """
        # Lists first, pd.isna() is elementwise on them
        if isinstance(old, (list, tuple)) and isinstance(new, (list, tuple)):
            return list(old) == list(new)
        if isinstance(old, (list, tuple)) or isinstance(new, (list, tuple)):
            return False

        if isinstance(old, dict) and isinstance(new, dict):
            return old == new
        if isinstance(old, dict) or isinstance(new, dict):
            return False

        try:
            if pd.isna(old) and pd.isna(new):
                return True
            if pd.isna(old) or pd.isna(new):
                return False
        except (ValueError, TypeError):
            pass

        return old == new
