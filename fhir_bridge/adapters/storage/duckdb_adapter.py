"""DuckDB Storage Adapter.

This adapter owns the DuckDB connection and the clinical store schema:
concept dictionary, encounters with their participants, observations
(leaves and groups), providers and the append-only audit log.

It implements the TerminologyPort and AuditLogPort contracts directly; the
entity stores for each resource type (``DuckDBPractitionerStore``,
``DuckDBImmunizationStore``) run their queries through it.

Architecture:
    - Implements domain ports (Hexagonal Architecture)
    - Every store call runs on its own cursor; writes run in a transaction
    - Predicate trees are rendered into parameterized SQL by PredicateRenderer
    - Audit trail is append-only
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import duckdb

from fhir_bridge.domain.cdc_models import AuditAction, AuditEvent
from fhir_bridge.domain.ports import (
    AuditLogPort,
    FhirBridgeError,
    Result,
    StorageError,
    TerminologyPort,
)
from fhir_bridge.domain.predicate import (
    AllOf,
    AnyOf,
    Criterion,
    FieldCriterion,
    MemberCriterion,
    Operator,
    Predicate,
)
from fhir_bridge.domain.records import Concept
from fhir_bridge.domain.utils import utc_now
from fhir_bridge.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS concepts (
        concept_id INTEGER PRIMARY KEY,
        uuid VARCHAR NOT NULL UNIQUE,
        name VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS concept_mappings (
        concept_id INTEGER NOT NULL,
        source VARCHAR NOT NULL,
        code VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS encounters (
        uuid VARCHAR PRIMARY KEY,
        patient_uuid VARCHAR NOT NULL,
        encounter_type_uuid VARCHAR,
        encounter_datetime TIMESTAMP NOT NULL,
        date_created TIMESTAMP,
        date_changed TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS encounter_participants (
        encounter_uuid VARCHAR NOT NULL,
        provider_uuid VARCHAR NOT NULL,
        encounter_role_uuid VARCHAR NOT NULL,
        position INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS observations (
        uuid VARCHAR PRIMARY KEY,
        concept_id INTEGER NOT NULL,
        obs_datetime TIMESTAMP NOT NULL,
        person_uuid VARCHAR,
        encounter_uuid VARCHAR,
        group_uuid VARCHAR,
        position INTEGER,
        value_numeric DOUBLE,
        value_coded INTEGER,
        value_text VARCHAR,
        value_datetime TIMESTAMP,
        voided BOOLEAN NOT NULL DEFAULT FALSE,
        date_created TIMESTAMP,
        date_changed TIMESTAMP,
        creator VARCHAR,
        changed_by VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS providers (
        uuid VARCHAR PRIMARY KEY,
        identifier VARCHAR,
        given_name VARCHAR,
        middle_name VARCHAR,
        family_name VARCHAR,
        prefix VARCHAR,
        suffix VARCHAR,
        gender VARCHAR,
        birthdate DATE,
        address_line1 VARCHAR,
        city VARCHAR,
        state VARCHAR,
        postal_code VARCHAR,
        country VARCHAR,
        retired BOOLEAN NOT NULL DEFAULT FALSE,
        voided BOOLEAN NOT NULL DEFAULT FALSE,
        date_created TIMESTAMP,
        date_changed TIMESTAMP,
        creator VARCHAR,
        changed_by VARCHAR
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS audit_log_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id VARCHAR PRIMARY KEY,
        sequence_number BIGINT NOT NULL,
        entity_type VARCHAR NOT NULL,
        entity_id VARCHAR NOT NULL,
        action VARCHAR NOT NULL,
        event_timestamp TIMESTAMP NOT NULL,
        agent VARCHAR,
        changed_fields VARCHAR
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mappings_source_code ON concept_mappings(source, code)",
    "CREATE INDEX IF NOT EXISTS idx_participants_encounter ON encounter_participants(encounter_uuid)",
    "CREATE INDEX IF NOT EXISTS idx_observations_group ON observations(group_uuid)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id)",
]


def fetch_dicts(cursor: duckdb.DuckDBPyConnection, sql: str, params: Optional[list] = None) -> list[dict]:
    """Execute a query and return rows as column-name dictionaries."""
    rows = cursor.execute(sql, params or []).fetchall()
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


class PredicateRenderer:
    """Render predicate trees into a parameterized SQL condition.

    Parameters:
        columns: Logical field name -> SQL expression
        field_renderers: Logical field name -> custom renderer for fields that
            are not plain columns
        member_renderer: Renderer for obs-group member criteria; None if the
            entity has no members
    """

    def __init__(
        self,
        columns: dict[str, str],
        field_renderers: Optional[dict[str, Callable[[FieldCriterion], tuple[str, list]]]] = None,
        member_renderer: Optional[Callable[[MemberCriterion], tuple[str, list]]] = None
    ):
        self.columns = columns
        self.field_renderers = field_renderers or {}
        self.member_renderer = member_renderer

    def render(self, predicate: Predicate) -> tuple[str, list]:
        """Render a top-level predicate; an empty predicate renders as ``1=1``."""
        where = []
        params: list = []
        for criterion in predicate.criteria:
            sql, criterion_params = self.render_criterion(criterion)
            where.append(sql)
            params.extend(criterion_params)
        return (" AND ".join(where) if where else "1=1"), params

    def render_criterion(self, criterion: Criterion) -> tuple[str, list]:
        if isinstance(criterion, FieldCriterion):
            return self._render_field(criterion)
        if isinstance(criterion, (AnyOf, AllOf)):
            joiner = " OR " if isinstance(criterion, AnyOf) else " AND "
            parts = []
            params: list = []
            for child in criterion.criteria:
                sql, child_params = self.render_criterion(child)
                parts.append(sql)
                params.extend(child_params)
            return f"({joiner.join(parts)})", params
        if isinstance(criterion, MemberCriterion):
            if self.member_renderer is None:
                raise StorageError(
                    f"Member criteria are not supported here ({criterion.concept_reference})",
                    operation="search"
                )
            return self.member_renderer(criterion)
        raise StorageError(f"Unsupported criterion: {criterion!r}", operation="search")

    def _render_field(self, criterion: FieldCriterion) -> tuple[str, list]:
        custom = self.field_renderers.get(criterion.field)
        if custom is not None:
            return custom(criterion)

        column = self.columns.get(criterion.field)
        if column is None:
            raise StorageError(f"Unknown search field: {criterion.field}", operation="search")
        return render_comparison(column, criterion.operator, criterion.value)


def render_comparison(column: str, operator: Operator, value: Any) -> tuple[str, list]:
    """Render one comparison of a SQL expression with a parameter.

    Case-insensitive operators lower both sides with the same SQL function.
    """
    if operator == Operator.EQ:
        return f"{column} = ?", [value]
    if operator == Operator.IEQ:
        return f"lower({column}) = lower(?)", [value]
    if operator == Operator.ISTARTS:
        return f"starts_with(lower({column}), lower(?))", [value]
    if operator == Operator.ICONTAINS:
        return f"contains(lower({column}), lower(?))", [value]
    if operator == Operator.GE:
        return f"{column} >= ?", [value]
    if operator == Operator.LT:
        return f"{column} < ?", [value]
    raise StorageError(f"Unsupported operator: {operator}", operation="search")


class DuckDBAdapter(TerminologyPort, AuditLogPort):
    """DuckDB implementation of the clinical store.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        adapter = DuckDBAdapter(db_path=":memory:")
        adapter.initialize_schema().unwrap()
        adapter.seed_concept("CIEL:1421", name="Immunization history")
        practitioners = DuckDBPractitionerStore(adapter)
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        """Initialize DuckDB adapter.

        Parameters:
            db_config: DatabaseConfig from configuration manager (preferred)
            db_path: Path to DuckDB database file (or ':memory:' for in-memory)

        Note:
            If both are provided, db_config takes precedence. If neither is
            provided, defaults to an in-memory database.
        """
        self.read_only = False
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
            self.read_only = db_config.read_only
        elif db_path:
            self.db_path = db_path
        else:
            self.db_path = ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        # Guards connection setup and schema creation; cursors run concurrently
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        with self._lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path, read_only=self.read_only)
                    logger.info(f"Connected to DuckDB database: {self.db_path}")
                except Exception as e:
                    raise StorageError(
                        f"Failed to connect to DuckDB: {str(e)}",
                        operation="connect",
                        details={"db_path": self.db_path}
                    )
            return self._connection

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """Get a fresh cursor for one store call, initializing the schema first."""
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self.initialize_schema().unwrap()
        return self._get_connection().cursor()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block on its own cursor inside a transaction.

        Commits on success; rolls back and re-raises on any exception.
        """
        cursor = self.cursor()
        cursor.begin()
        try:
            yield cursor
            cursor.commit()
        except Exception:
            cursor.rollback()
            raise
        finally:
            cursor.close()

    def run(self, operation: str, fn: Callable[[duckdb.DuckDBPyConnection], Any], **details) -> Result:
        """Run a read on its own cursor and wrap the outcome in a Result.

        Bridge errors raised by ``fn`` are carried as-is; any other failure
        becomes a StorageError naming the operation.
        """
        try:
            cursor = self.cursor()
            try:
                return Result.success_result(fn(cursor))
            finally:
                cursor.close()
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.storage_failure(operation, e, **details)

    @staticmethod
    def storage_failure(operation: str, error: Exception, **details) -> Result:
        error_msg = f"Failed to {operation}: {str(error)}"
        logger.error(error_msg, exc_info=True)
        return Result.failure_result(
            StorageError(error_msg, operation=operation, details=details),
            error_type="StorageError"
        )

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema (tables, sequence, indexes).

        Returns:
            Result[None]: Success or failure result
        """
        try:
            with self._lock:
                conn = self._get_connection()
                if not self.read_only:
                    for statement in _SCHEMA:
                        conn.execute(statement)
                self._initialized = True
            logger.info("DuckDB schema initialized")
            return Result.success_result(None)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.storage_failure("initialize schema", e)

    # ------------------------------------------------------------------
    # Concept dictionary (TerminologyPort)
    # ------------------------------------------------------------------

    def concepts_for_mapping(self, vocabulary: str, code: str) -> Result[list[Concept]]:
        def query(cursor):
            rows = cursor.execute(
                "SELECT DISTINCT concept_id FROM concept_mappings WHERE source = ? AND code = ? ORDER BY concept_id",
                [vocabulary, code]
            ).fetchall()
            concepts = self.load_concepts(cursor, [r[0] for r in rows])
            return [concepts[r[0]] for r in rows]

        return self.run("look up concept mapping", query, reference=f"{vocabulary}:{code}")

    def load_concepts(self, cursor: duckdb.DuckDBPyConnection, concept_ids: list[int]) -> dict[int, Concept]:
        """Load concepts with their mappings, keyed by concept id."""
        ids = sorted({i for i in concept_ids if i is not None})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = fetch_dicts(cursor, f"SELECT concept_id, uuid, name FROM concepts WHERE concept_id IN ({placeholders})", ids)
        mappings: dict[int, list[str]] = {}
        for concept_id, source, code in cursor.execute(
            f"SELECT concept_id, source, code FROM concept_mappings WHERE concept_id IN ({placeholders}) "
            f"ORDER BY concept_id, source, code",
            ids
        ).fetchall():
            mappings.setdefault(concept_id, []).append(f"{source}:{code}")

        return {
            row["concept_id"]: Concept(
                concept_id=row["concept_id"],
                uuid=row["uuid"],
                name=row["name"],
                mappings=tuple(mappings.get(row["concept_id"], ())),
            )
            for row in rows
        }

    def seed_concept(
        self,
        *mappings: str,
        name: str,
        concept_uuid: Optional[str] = None,
        concept_id: Optional[int] = None
    ) -> Result[Concept]:
        """Add a concept to the dictionary.

        Parameters:
            mappings: Terminology references mapped to the concept ("CIEL:1421")
            name: Display name
            concept_uuid: Concept UUID (generated if omitted)
            concept_id: Numeric id (next free id if omitted)

        Returns:
            Result[Concept]: The stored concept or error
        """
        try:
            with self.transaction() as cursor:
                if concept_id is None:
                    concept_id = cursor.execute("SELECT COALESCE(MAX(concept_id), 0) + 1 FROM concepts").fetchone()[0]
                concept = Concept(
                    concept_id=concept_id,
                    uuid=concept_uuid or str(uuid.uuid4()),
                    name=name,
                    mappings=tuple(mappings),
                )
                cursor.execute(
                    "INSERT INTO concepts (concept_id, uuid, name) VALUES (?, ?, ?)",
                    [concept.concept_id, concept.uuid, concept.name]
                )
                for mapping in mappings:
                    source, sep, code = mapping.partition(":")
                    if not sep:
                        raise StorageError(f"Invalid concept mapping '{mapping}'", operation="seed_concept")
                    cursor.execute(
                        "INSERT INTO concept_mappings (concept_id, source, code) VALUES (?, ?, ?)",
                        [concept.concept_id, source, code]
                    )
            logger.debug(f"Seeded concept {concept.name} ({concept.uuid}) mapped to {list(mappings)}")
            return Result.success_result(concept)
        except FhirBridgeError as e:
            return Result.failure_result(e)
        except Exception as e:
            return self.storage_failure("seed concept", e, name=name)

    # ------------------------------------------------------------------
    # Audit trail (AuditLogPort)
    # ------------------------------------------------------------------

    def record_audit_event(
        self,
        cursor: duckdb.DuckDBPyConnection,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        agent: Optional[str],
        changed_fields: Optional[list[str]] = None,
        occurred_at=None
    ) -> str:
        """Append an audit event inside the caller's transaction.

        Returns:
            The audit event identifier
        """
        audit_id = str(uuid.uuid4())
        cursor.execute("""
            INSERT INTO audit_log (
                audit_id, sequence_number, entity_type, entity_id, action,
                event_timestamp, agent, changed_fields
            ) VALUES (?, nextval('audit_log_seq'), ?, ?, ?, ?, ?, ?)
        """, [
            audit_id,
            entity_type,
            entity_id,
            action.value,
            occurred_at or utc_now(),
            agent,
            json.dumps(changed_fields or []),
        ])
        logger.debug(f"Logged audit event: {action.value} {entity_type}/{entity_id} (ID: {audit_id})")
        return audit_id

    def events_for(self, entity_id: str, entity_type: Optional[str] = None) -> Result[list[AuditEvent]]:
        conditions, params = ["entity_id = ?"], [entity_id]
        if entity_type is not None:
            conditions.append("entity_type = ?")
            params.append(entity_type)

        def query(cursor):
            rows = fetch_dicts(cursor, f"""
                SELECT audit_id, entity_type, entity_id, action, event_timestamp, agent, changed_fields
                FROM audit_log
                WHERE {" AND ".join(conditions)}
                ORDER BY sequence_number
            """, params)
            return [
                AuditEvent(
                    event_id=row["audit_id"],
                    entity_type=row["entity_type"],
                    entity_id=row["entity_id"],
                    action=AuditAction(row["action"]),
                    occurred_at=row["event_timestamp"],
                    agent=row["agent"],
                    changed_fields=json.loads(row["changed_fields"]) if row["changed_fields"] else [],
                )
                for row in rows
            ]

        return self.run("read audit trail", query, entity_id=entity_id, entity_type=entity_type)

    def identifier_in_use(self, entity_id: str) -> Result[bool]:
        """Check the identifier against providers and every observation, voided ones included."""
        def query(cursor):
            row = cursor.execute("""
                SELECT EXISTS (SELECT 1 FROM providers WHERE uuid = ?)
                    OR EXISTS (SELECT 1 FROM observations WHERE uuid = ?)
            """, [entity_id, entity_id]).fetchone()
            return bool(row[0])

        return self.run("check identifier", query, entity_id=entity_id)

    def close(self) -> None:
        """Close storage connection and release resources."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    self._connection = None
                    self._initialized = False
                    logger.info("Closed DuckDB connection")
                except Exception as e:
                    logger.warning(f"Error closing connection: {str(e)}")
