"""DuckDB entity store for immunization obs groups.

An immunization is a top-level row of ``observations`` whose members are the
rows pointing at it through ``group_uuid``. The owning encounter and its
participants are saved with the group.
"""

import logging
from typing import Any, Optional

from fhir_bridge.adapters.storage.duckdb_adapter import (
    DuckDBAdapter,
    PredicateRenderer,
    fetch_dicts,
    render_comparison,
)
from fhir_bridge.domain.cdc_models import AuditAction
from fhir_bridge.domain.ports import ConflictError, EntityStorePort, FhirBridgeError, Result, SearchPage
from fhir_bridge.domain.predicate import FieldCriterion, MemberCriterion, Predicate
from fhir_bridge.domain.records import Concept, Encounter, EncounterParticipant, ObservationNode
from fhir_bridge.domain.services.change_detector import ChangeDetector
from fhir_bridge.domain.services.terminology import TerminologyResolver
from fhir_bridge.domain.utils import utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "immunization"

_VALUE_COLUMNS = ["value_numeric", "value_coded", "value_text", "value_datetime"]

_GROUP_COLUMNS = {
    "uuid": "g.uuid",
    "person_uuid": "g.person_uuid",
    "last_updated": "COALESCE(g.date_changed, g.date_created)",
}

_MEMBER_COLUMNS = {
    "value_numeric": "m.value_numeric",
    "value_text": "m.value_text",
    "value_datetime": "m.value_datetime",
}


class DuckDBImmunizationStore(EntityStorePort[ObservationNode]):
    """Immunization obs groups persisted in ``observations`` and ``encounters``."""

    entity_type = ENTITY_TYPE

    def __init__(
        self,
        adapter: DuckDBAdapter,
        grouping_reference: str,
        administering_role_uuid: Optional[str] = None,
        terminology_systems: Optional[dict[str, str]] = None,
        change_detector: Optional[ChangeDetector] = None
    ):
        """Initialize store.

        Parameters:
            adapter: Shared DuckDB adapter
            grouping_reference: Terminology reference of the immunization grouping concept
            administering_role_uuid: Encounter role searched by the performer parameter
            terminology_systems: Vocabulary name -> coding system URI, to match
                token systems against concept mappings
            change_detector: Detector deciding whether an update changes anything
        """
        self.adapter = adapter
        self.grouping_reference = grouping_reference
        self.administering_role_uuid = administering_role_uuid
        self._vocabularies = {url: vocabulary for vocabulary, url in (terminology_systems or {}).items()}
        self.change_detector = change_detector or ChangeDetector()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, cursor, entity_id: str, include_deleted: bool) -> Optional[ObservationNode]:
        rows = fetch_dicts(
            cursor, "SELECT * FROM observations WHERE uuid = ? AND group_uuid IS NULL", [entity_id]
        )
        if not rows or (rows[0]["voided"] and not include_deleted):
            return None
        return self._build_groups(cursor, rows)[0]

    def _build_groups(self, cursor, group_rows: list[dict]) -> list[ObservationNode]:
        if not group_rows:
            return []
        group_ids = [r["uuid"] for r in group_rows]
        placeholders = ", ".join("?" for _ in group_ids)
        member_rows = fetch_dicts(
            cursor,
            f"SELECT * FROM observations WHERE group_uuid IN ({placeholders}) AND voided = FALSE "
            f"ORDER BY group_uuid, position",
            group_ids
        )

        concept_ids = [r["concept_id"] for r in group_rows + member_rows]
        concept_ids += [r["value_coded"] for r in member_rows if r["value_coded"] is not None]
        concepts = self.adapter.load_concepts(cursor, concept_ids)
        encounters = self._load_encounters(cursor, [r["encounter_uuid"] for r in group_rows])

        members_by_group: dict[str, list[ObservationNode]] = {}
        for row in member_rows:
            members_by_group.setdefault(row["group_uuid"], []).append(
                self._node(row, concepts, encounters.get(row["encounter_uuid"]))
            )

        return [
            self._node(row, concepts, encounters.get(row["encounter_uuid"]), members_by_group.get(row["uuid"], []))
            for row in group_rows
        ]

    @staticmethod
    def _node(
        row: dict,
        concepts: dict[int, Concept],
        encounter: Optional[Encounter],
        members: Optional[list[ObservationNode]] = None
    ) -> ObservationNode:
        return ObservationNode(
            uuid=row["uuid"],
            concept=concepts[row["concept_id"]],
            obs_datetime=row["obs_datetime"],
            person_uuid=row["person_uuid"],
            encounter=encounter,
            value_numeric=row["value_numeric"],
            value_coded=concepts.get(row["value_coded"]) if row["value_coded"] is not None else None,
            value_text=row["value_text"],
            value_datetime=row["value_datetime"],
            group_members=tuple(members or ()),
            voided=row["voided"],
            date_created=row["date_created"],
            date_changed=row["date_changed"],
        )

    @staticmethod
    def _load_encounters(cursor, encounter_ids: list[Optional[str]]) -> dict[str, Encounter]:
        ids = sorted({i for i in encounter_ids if i})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        participants: dict[str, list[EncounterParticipant]] = {}
        for row in fetch_dicts(
            cursor,
            f"SELECT * FROM encounter_participants WHERE encounter_uuid IN ({placeholders}) "
            f"ORDER BY encounter_uuid, position",
            ids
        ):
            participants.setdefault(row["encounter_uuid"], []).append(EncounterParticipant(
                provider_uuid=row["provider_uuid"],
                encounter_role_uuid=row["encounter_role_uuid"],
            ))

        return {
            row["uuid"]: Encounter(
                uuid=row["uuid"],
                patient_uuid=row["patient_uuid"],
                encounter_type_uuid=row["encounter_type_uuid"],
                encounter_datetime=row["encounter_datetime"],
                participants=tuple(participants.get(row["uuid"], ())),
            )
            for row in fetch_dicts(cursor, f"SELECT * FROM encounters WHERE uuid IN ({placeholders})", ids)
        }

    # ------------------------------------------------------------------
    # EntityStorePort
    # ------------------------------------------------------------------

    def get(self, entity_id: str, include_deleted: bool = False) -> Result[Optional[ObservationNode]]:
        return self.adapter.run(
            "get immunization",
            lambda cursor: self._load(cursor, entity_id, include_deleted),
            entity_id=entity_id
        )

    def search(self, predicate: Predicate, offset: int, limit: int) -> Result[SearchPage[ObservationNode]]:
        def query(cursor):
            resolver = TerminologyResolver(self.adapter)
            grouping = resolver.resolve(self.grouping_reference)
            renderer = self._group_renderer(resolver)

            condition, params = renderer.render(predicate)
            where = f"WHERE g.group_uuid IS NULL AND g.voided = FALSE AND g.concept_id = ? AND {condition}"
            params = [grouping.concept_id] + params

            total = cursor.execute(f"SELECT COUNT(*) FROM observations g {where}", params).fetchone()[0]
            if limit == 0:
                return SearchPage(entities=[], total=total)
            rows = fetch_dicts(
                cursor,
                f"SELECT g.* FROM observations g {where} ORDER BY g.obs_datetime, g.uuid LIMIT ? OFFSET ?",
                params + [limit, offset]
            )
            return SearchPage(entities=self._build_groups(cursor, rows), total=total)

        return self.adapter.run("search immunizations", query)

    def _group_renderer(self, resolver: TerminologyResolver) -> PredicateRenderer:
        member_renderer = PredicateRenderer(_MEMBER_COLUMNS, field_renderers={
            "value_coded.code": self._render_coded_code,
            "value_coded.system": self._render_coded_system,
        })

        def render_member(criterion: MemberCriterion) -> tuple[str, list]:
            concept = resolver.resolve(criterion.concept_reference)
            inner, inner_params = member_renderer.render_criterion(criterion.criterion)
            return (
                "EXISTS (SELECT 1 FROM observations m WHERE m.group_uuid = g.uuid "
                f"AND m.voided = FALSE AND m.concept_id = ? AND {inner})",
                [concept.concept_id] + inner_params,
            )

        return PredicateRenderer(
            _GROUP_COLUMNS,
            field_renderers={"performer": self._render_performer},
            member_renderer=render_member,
        )

    def _render_performer(self, criterion: FieldCriterion) -> tuple[str, list]:
        role_sql, params = "", []
        if self.administering_role_uuid:
            role_sql, params = " AND ep.encounter_role_uuid = ?", [self.administering_role_uuid]
        inner, value_params = render_comparison("ep.provider_uuid", criterion.operator, criterion.value)
        return (
            "EXISTS (SELECT 1 FROM encounter_participants ep "
            f"WHERE ep.encounter_uuid = g.encounter_uuid{role_sql} AND {inner})",
            params + value_params,
        )

    @staticmethod
    def _render_coded_code(criterion: FieldCriterion) -> tuple[str, list]:
        # Coded values match on any mapping code or on the concept uuid
        return (
            "(m.value_coded IN (SELECT cm.concept_id FROM concept_mappings cm WHERE cm.code = ?) "
            "OR m.value_coded IN (SELECT c.concept_id FROM concepts c WHERE c.uuid = ?))",
            [criterion.value, criterion.value],
        )

    def _render_coded_system(self, criterion: FieldCriterion) -> tuple[str, list]:
        source = self._vocabularies.get(criterion.value, criterion.value)
        return (
            "m.value_coded IN (SELECT cm.concept_id FROM concept_mappings cm WHERE cm.source = ?)",
            [source],
        )

    def save(self, entity: ObservationNode, agent: str) -> Result[ObservationNode]:
        try:
            with self.adapter.transaction() as cursor:
                existing = self._load(cursor, entity.uuid, include_deleted=True)
                now = utc_now()

                if existing is None:
                    self._save_encounter(cursor, entity.uuid, entity.encounter, now)
                    self._insert_obs(cursor, entity, None, 0, now, agent)
                    for position, member in enumerate(entity.group_members):
                        self._insert_obs(cursor, member, entity, position, now, agent)
                    self.adapter.record_audit_event(
                        cursor, ENTITY_TYPE, entity.uuid, AuditAction.CREATE, agent,
                        changed_fields=list(self._snapshot(entity)), occurred_at=now
                    )
                    logger.info(f"Inserted immunization obs group {entity.uuid}")
                else:
                    changes = self.change_detector.diff(
                        ENTITY_TYPE, entity.uuid, self._snapshot(existing), self._snapshot(entity)
                    )
                    if not changes:
                        logger.debug(f"No changes for immunization {entity.uuid}; update skipped")
                        return Result.success_result(existing)

                    self._save_encounter(cursor, entity.uuid, entity.encounter, now)
                    cursor.execute("""
                        UPDATE observations
                        SET person_uuid = ?, encounter_uuid = ?, obs_datetime = ?, date_changed = ?, changed_by = ?
                        WHERE uuid = ?
                    """, [
                        entity.person_uuid,
                        entity.encounter.uuid if entity.encounter else None,
                        entity.obs_datetime,
                        now,
                        agent,
                        entity.uuid,
                    ])
                    self._replace_members(cursor, existing, entity, now, agent)
                    self.adapter.record_audit_event(
                        cursor, ENTITY_TYPE, entity.uuid, AuditAction.UPDATE, agent,
                        changed_fields=[c.field_name for c in changes], occurred_at=now
                    )
                    logger.info(f"Updated immunization obs group {entity.uuid} ({len(changes)} field(s))")

                saved = self._load(cursor, entity.uuid, include_deleted=True)
            return Result.success_result(saved)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.adapter.storage_failure("save immunization", e, entity_id=entity.uuid)

    def delete(self, entity_id: str, agent: str) -> Result[Optional[ObservationNode]]:
        try:
            with self.adapter.transaction() as cursor:
                existing = self._load(cursor, entity_id, include_deleted=False)
                if existing is None:
                    return Result.success_result(None)
                now = utc_now()
                cursor.execute(
                    "UPDATE observations SET voided = TRUE, date_changed = ?, changed_by = ? "
                    "WHERE uuid = ? OR group_uuid = ?",
                    [now, agent, entity_id, entity_id]
                )
                self.adapter.record_audit_event(
                    cursor, ENTITY_TYPE, entity_id, AuditAction.DELETE, agent, occurred_at=now
                )
            logger.info(f"Deleted immunization obs group {entity_id}")
            return Result.success_result(existing)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.adapter.storage_failure("delete immunization", e, entity_id=entity_id)

    def identifier_in_use(self, entity_id: str) -> Result[bool]:
        return self.adapter.identifier_in_use(entity_id)

    # ------------------------------------------------------------------
    # Writing helpers
    # ------------------------------------------------------------------

    def _save_encounter(self, cursor, owner_uuid: str, encounter: Optional[Encounter], now) -> None:
        """Write the group's encounter, merging into an existing one.

        An encounter that other live groups point at is shared: its patient,
        type and time stay as stored and the group may only add participants
        for roles nobody holds yet. An encounter only this group uses is
        updated and its participants in the group's roles are replaced.

        Raises:
            ConflictError: If a shared encounter belongs to another patient or
                already has a different provider in one of the group's roles
        """
        if encounter is None:
            return
        stored = self._load_encounters(cursor, [encounter.uuid]).get(encounter.uuid)
        if stored is None:
            cursor.execute("""
                INSERT INTO encounters (uuid, patient_uuid, encounter_type_uuid, encounter_datetime, date_created)
                VALUES (?, ?, ?, ?, ?)
            """, [encounter.uuid, encounter.patient_uuid, encounter.encounter_type_uuid, encounter.encounter_datetime, now])
            self._insert_participants(cursor, encounter.uuid, encounter.participants, 0)
            return

        shared = cursor.execute("""
            SELECT COUNT(*) FROM observations
            WHERE encounter_uuid = ? AND group_uuid IS NULL AND voided = FALSE AND uuid <> ?
        """, [encounter.uuid, owner_uuid]).fetchone()[0] > 0

        if not shared:
            roles = {p.encounter_role_uuid for p in encounter.participants}
            kept = tuple(p for p in stored.participants if p.encounter_role_uuid not in roles)
            cursor.execute("""
                UPDATE encounters
                SET patient_uuid = ?, encounter_type_uuid = ?, encounter_datetime = ?, date_changed = ?
                WHERE uuid = ?
            """, [encounter.patient_uuid, encounter.encounter_type_uuid, encounter.encounter_datetime, now, encounter.uuid])
            cursor.execute("DELETE FROM encounter_participants WHERE encounter_uuid = ?", [encounter.uuid])
            self._insert_participants(cursor, encounter.uuid, kept + encounter.participants, 0)
            return

        if stored.patient_uuid != encounter.patient_uuid:
            raise ConflictError(
                f"Encounter {encounter.uuid} belongs to another patient",
                details={"encounter": encounter.uuid, "patient": encounter.patient_uuid}
            )
        added = []
        for participant in encounter.participants:
            holders = stored.providers_by_role(participant.encounter_role_uuid)
            if participant in holders:
                continue
            if holders:
                raise ConflictError(
                    f"Encounter {encounter.uuid} already has provider {holders[0].provider_uuid} "
                    f"in role {participant.encounter_role_uuid}",
                    details={"encounter": encounter.uuid, "provider": participant.provider_uuid}
                )
            added.append(participant)
        self._insert_participants(cursor, encounter.uuid, tuple(added), len(stored.participants))

    @staticmethod
    def _insert_participants(cursor, encounter_uuid: str, participants, start: int) -> None:
        for position, participant in enumerate(participants, start=start):
            cursor.execute("""
                INSERT INTO encounter_participants (encounter_uuid, provider_uuid, encounter_role_uuid, position)
                VALUES (?, ?, ?, ?)
            """, [encounter_uuid, participant.provider_uuid, participant.encounter_role_uuid, position])

    @staticmethod
    def _value_params(node: ObservationNode) -> list:
        return [
            node.value_numeric,
            node.value_coded.concept_id if node.value_coded else None,
            node.value_text,
            node.value_datetime,
        ]

    def _insert_obs(
        self,
        cursor,
        node: ObservationNode,
        group: Optional[ObservationNode],
        position: int,
        now,
        agent: str
    ) -> None:
        owner = group or node
        cursor.execute(f"""
            INSERT INTO observations (
                uuid, concept_id, obs_datetime, person_uuid, encounter_uuid, group_uuid, position,
                {", ".join(_VALUE_COLUMNS)}, voided, date_created, creator
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE, ?, ?)
        """, [
            node.uuid,
            node.concept.concept_id,
            node.obs_datetime,
            owner.person_uuid,
            owner.encounter.uuid if owner.encounter else None,
            group.uuid if group else None,
            position,
        ] + self._value_params(node) + [now, agent])

    def _replace_members(
        self,
        cursor,
        existing: ObservationNode,
        entity: ObservationNode,
        now,
        agent: str
    ) -> None:
        stored = {m.uuid for m in existing.group_members}
        for position, member in enumerate(entity.group_members):
            if member.uuid in stored:
                cursor.execute(f"""
                    UPDATE observations
                    SET {", ".join(f"{c} = ?" for c in _VALUE_COLUMNS)},
                        person_uuid = ?, encounter_uuid = ?, position = ?, date_changed = ?, changed_by = ?
                    WHERE uuid = ?
                """, self._value_params(member) + [
                    entity.person_uuid,
                    entity.encounter.uuid if entity.encounter else None,
                    position,
                    now,
                    agent,
                    member.uuid,
                ])
            else:
                self._insert_obs(cursor, member, entity, position, now, agent)

        removed = stored - {m.uuid for m in entity.group_members}
        for member_uuid in sorted(removed):
            cursor.execute(
                "UPDATE observations SET voided = TRUE, date_changed = ?, changed_by = ? WHERE uuid = ?",
                [now, agent, member_uuid]
            )

    @staticmethod
    def _snapshot(node: ObservationNode) -> dict[str, Any]:
        """Flatten an obs group into comparable fields, one per member."""
        encounter = node.encounter
        snapshot: dict[str, Any] = {
            "person_uuid": node.person_uuid,
            "encounter": encounter.uuid if encounter else None,
            "participants": [
                [p.provider_uuid, p.encounter_role_uuid] for p in (encounter.participants if encounter else ())
            ],
        }
        for member in node.group_members:
            key = member.concept.mappings[0] if member.concept.mappings else member.concept.uuid
            if key in snapshot:
                key = f"{key}#{member.uuid}"
            snapshot[key] = (
                member.value_coded.uuid if member.value_coded is not None
                else next((v for v in (member.value_numeric, member.value_text, member.value_datetime) if v is not None), None)
            )
        return snapshot
