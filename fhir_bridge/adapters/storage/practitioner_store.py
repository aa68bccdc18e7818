"""DuckDB entity store for provider records (Practitioner)."""

import logging
from typing import Optional

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter, PredicateRenderer, fetch_dicts
from fhir_bridge.domain.cdc_models import AuditAction
from fhir_bridge.domain.ports import EntityStorePort, FhirBridgeError, Result, SearchPage
from fhir_bridge.domain.predicate import Predicate
from fhir_bridge.domain.records import ProviderRecord
from fhir_bridge.domain.services.change_detector import ChangeDetector
from fhir_bridge.domain.utils import utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "practitioner"

_DATA_COLUMNS = [
    "identifier", "given_name", "middle_name", "family_name", "prefix", "suffix",
    "gender", "birthdate", "address_line1", "city", "state", "postal_code", "country",
    "retired",
]

_SEARCH_COLUMNS = {
    "uuid": "p.uuid",
    "identifier": "p.identifier",
    "given_name": "p.given_name",
    "middle_name": "p.middle_name",
    "family_name": "p.family_name",
    "city": "p.city",
    "state": "p.state",
    "postal_code": "p.postal_code",
    "country": "p.country",
    "last_updated": "COALESCE(p.date_changed, p.date_created)",
}

_SELECT = f"""
    SELECT p.uuid, {", ".join(f"p.{c}" for c in _DATA_COLUMNS)}, p.voided, p.date_created, p.date_changed
    FROM providers p
"""


class DuckDBPractitionerStore(EntityStorePort[ProviderRecord]):
    """Provider records persisted in the ``providers`` table."""

    entity_type = ENTITY_TYPE

    def __init__(self, adapter: DuckDBAdapter, change_detector: Optional[ChangeDetector] = None):
        """Initialize store.

        Parameters:
            adapter: Shared DuckDB adapter
            change_detector: Detector deciding whether an update changes anything
        """
        self.adapter = adapter
        self.change_detector = change_detector or ChangeDetector()
        self.renderer = PredicateRenderer(_SEARCH_COLUMNS)

    def _load(self, cursor, entity_id: str, include_deleted: bool) -> Optional[ProviderRecord]:
        rows = fetch_dicts(cursor, f"{_SELECT} WHERE p.uuid = ?", [entity_id])
        if not rows:
            return None
        record = ProviderRecord(**rows[0])
        if record.voided and not include_deleted:
            return None
        return record

    def get(self, entity_id: str, include_deleted: bool = False) -> Result[Optional[ProviderRecord]]:
        return self.adapter.run(
            "get practitioner",
            lambda cursor: self._load(cursor, entity_id, include_deleted),
            entity_id=entity_id
        )

    def search(self, predicate: Predicate, offset: int, limit: int) -> Result[SearchPage[ProviderRecord]]:
        def query(cursor):
            condition, params = self.renderer.render(predicate)
            where = f"WHERE p.voided = FALSE AND {condition}"
            total = cursor.execute(f"SELECT COUNT(*) FROM providers p {where}", params).fetchone()[0]
            if limit == 0:
                return SearchPage(entities=[], total=total)
            rows = fetch_dicts(
                cursor,
                f"{_SELECT} {where} ORDER BY p.family_name NULLS LAST, p.given_name NULLS LAST, p.uuid LIMIT ? OFFSET ?",
                params + [limit, offset]
            )
            return SearchPage(entities=[ProviderRecord(**row) for row in rows], total=total)

        return self.adapter.run("search practitioners", query)

    def save(self, entity: ProviderRecord, agent: str) -> Result[ProviderRecord]:
        try:
            with self.adapter.transaction() as cursor:
                existing = self._load(cursor, entity.uuid, include_deleted=True)
                now = utc_now()
                values = [getattr(entity, c) for c in _DATA_COLUMNS]

                if existing is None:
                    cursor.execute(f"""
                        INSERT INTO providers (
                            uuid, {", ".join(_DATA_COLUMNS)}, voided, date_created, date_changed, creator
                        ) VALUES (?, {", ".join("?" for _ in _DATA_COLUMNS)}, FALSE, ?, NULL, ?)
                    """, [entity.uuid] + values + [now, agent])
                    self.adapter.record_audit_event(
                        cursor, ENTITY_TYPE, entity.uuid, AuditAction.CREATE, agent,
                        changed_fields=[c for c in _DATA_COLUMNS if getattr(entity, c) is not None],
                        occurred_at=now
                    )
                    logger.info(f"Inserted provider {entity.uuid}")
                else:
                    changes = self.change_detector.diff(
                        ENTITY_TYPE,
                        entity.uuid,
                        existing.model_dump(include=set(_DATA_COLUMNS)),
                        entity.model_dump(include=set(_DATA_COLUMNS)),
                    )
                    if not changes:
                        logger.debug(f"No changes for provider {entity.uuid}; update skipped")
                        return Result.success_result(existing)

                    assignments = ", ".join(f"{c} = ?" for c in _DATA_COLUMNS)
                    cursor.execute(
                        f"UPDATE providers SET {assignments}, date_changed = ?, changed_by = ? WHERE uuid = ?",
                        values + [now, agent, entity.uuid]
                    )
                    self.adapter.record_audit_event(
                        cursor, ENTITY_TYPE, entity.uuid, AuditAction.UPDATE, agent,
                        changed_fields=[c.field_name for c in changes],
                        occurred_at=now
                    )
                    logger.info(f"Updated provider {entity.uuid} ({len(changes)} field(s))")

                saved = self._load(cursor, entity.uuid, include_deleted=True)
            return Result.success_result(saved)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.adapter.storage_failure("save practitioner", e, entity_id=entity.uuid)

    def delete(self, entity_id: str, agent: str) -> Result[Optional[ProviderRecord]]:
        try:
            with self.adapter.transaction() as cursor:
                existing = self._load(cursor, entity_id, include_deleted=False)
                if existing is None:
                    return Result.success_result(None)
                now = utc_now()
                cursor.execute(
                    "UPDATE providers SET voided = TRUE, date_changed = ?, changed_by = ? WHERE uuid = ?",
                    [now, agent, entity_id]
                )
                self.adapter.record_audit_event(
                    cursor, ENTITY_TYPE, entity_id, AuditAction.DELETE, agent, occurred_at=now
                )
            logger.info(f"Deleted provider {entity_id}")
            return Result.success_result(existing)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.adapter.storage_failure("delete practitioner", e, entity_id=entity_id)

    def identifier_in_use(self, entity_id: str) -> Result[bool]:
        return self.adapter.identifier_in_use(entity_id)
