"""Domain Ports - Abstract Contracts for the Clinical Store.

This module defines the Port interfaces (abstract contracts) that storage
adapters must implement, the Result type used to communicate store outcomes,
and the exception hierarchy shared by every component.

Following Hexagonal Architecture, the Domain Core defines what it needs from
the clinical store (terminology lookups, entity reads and writes, the audit
trail), not how it is provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, ...) implement these ports
    - Store calls return Result objects; the facade unwraps them and
      re-raises the carried exception unchanged
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar, Union

from fhir_bridge.domain.cdc_models import AuditEvent
from fhir_bridge.domain.records import Concept

# Type variables for Result and store generics
T = TypeVar('T')
E = TypeVar('E')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Storage adapters and the obs-group codec's validating decode return
    Result objects so that callers can inspect failures as data. The failing
    exception is kept on the result so that it can be re-raised with its
    specific kind preserved.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Type of error (StorageError, DuplicateSlotError, etc.)
        error_details: Additional error context (operation, identifiers)
        exception: The exception that caused the failure, if any

    Example:
        ```python
        result = store.get(practitioner_id)
        if result.is_failure():
            log_error(result.error, result.error_details)
        entity = result.unwrap()
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None
    exception: Optional[Exception] = field(default=None, compare=False)

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError", "DuplicateSlotError")
            error_details: Additional context (operation, identifiers, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        if error_details is None and isinstance(error, FhirBridgeError):
            error_details = dict(error.details)

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {},
            exception=error if isinstance(error, Exception) else None
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    def unwrap(self) -> T:
        """Return the value, or raise the failure.

        The carried exception is re-raised as-is so its kind reaches the
        caller unchanged. Failures created from a plain message raise
        StorageError.

        Returns:
            The successful result value

        Raises:
            FhirBridgeError: The exception carried by a failure result
        """
        if self.success:
            return self.value
        if self.exception is not None:
            raise self.exception
        raise StorageError(self.error or "Store operation failed", details=self.error_details)


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class FhirBridgeError(Exception):
    """Base exception for all bridge errors.

    Attributes:
        message: Human-readable description, safe to return to clients
        details: Additional structured context
        http_status: Status code used when the error reaches the HTTP boundary
    """

    http_status = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(FhirBridgeError):
    """Raised when a required setting or terminology mapping is missing or ambiguous.

    Fatal at first use; not recoverable by retrying the request.

    Attributes:
        key: The configuration key or terminology reference at fault
    """

    def __init__(self, message: str, key: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.key = key


class AmbiguousOrMissingMappingError(ConfigurationError):
    """Raised when a terminology reference maps to zero or several concepts."""
    pass


class ValidationError(FhirBridgeError):
    """Raised when data fails structural validation.

    Always a client error; never retried.

    Attributes:
        source: Identifier of the record that failed validation
    """

    http_status = 400

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.source = source


class SchemaMismatchError(ValidationError):
    """Raised when an obs group root is not defined by the schema's grouping concept."""
    pass


class DuplicateSlotError(ValidationError):
    """Raised when two members of an obs group fill the same schema slot."""
    pass


class MissingSlotsError(ValidationError):
    """Raised when no member of an obs group fills any schema slot."""
    pass


class MissingRequiredAgentError(ValidationError):
    """Raised when an encounter does not have exactly one participant in a required role."""
    pass


class InvalidSearchParameterError(ValidationError):
    """Raised when a search parameter is unknown or malformed."""
    pass


class NotFoundError(FhirBridgeError):
    """Raised when a resource does not exist in the store.

    Attributes:
        resource_type: External resource type (e.g., "Practitioner")
        resource_id: The identifier that was looked up
    """

    http_status = 404

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"Resource of type {resource_type} with ID {resource_id} is not known",
            details={"resource_type": resource_type, "resource_id": resource_id}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(FhirBridgeError):
    """Raised when a request's identifiers conflict with the request or the store."""

    http_status = 400


class MissingIdentifierError(ConflictError):
    """Raised when an update body carries no identifier."""
    pass


class IdentifierMismatchError(ConflictError):
    """Raised when an update body's identifier differs from the request URL."""
    pass


class DuplicateIdentifierError(ConflictError):
    """Raised when a create body declares an identifier the store already owns."""
    pass


class StorageError(FhirBridgeError):
    """Raised when a store operation fails or times out.

    The core never retries store calls.

    Attributes:
        operation: The store operation that failed (e.g., "search", "save")
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


# ============================================================================
# Store Ports
# ============================================================================

@dataclass(frozen=True)
class SearchPage(Generic[E]):
    """One window of search results as returned by the store.

    Attributes:
        entities: Matching entities in store order
        total: Total number of matches across all windows
    """

    entities: list
    total: int


class TerminologyPort(ABC):
    """Abstract contract for the concept dictionary."""

    @abstractmethod
    def concepts_for_mapping(self, vocabulary: str, code: str) -> Result[list[Concept]]:
        """Find all concepts mapped to a vocabulary/code pair.

        A well-formed dictionary maps each pair to at most one concept; the
        full list is returned so that callers can detect ambiguity.

        Parameters:
            vocabulary: Terminology source name (e.g., "CIEL")
            code: Code within the vocabulary (e.g., "1421")

        Returns:
            Result[list[Concept]]: Mapped concepts (possibly empty) or error
        """
        pass


class EntityStorePort(ABC, Generic[E]):
    """Abstract contract for reading and writing one kind of store entity.

    Key Principles:
        - Every call is atomic from the caller's point of view
        - Writes append to the audit trail (CREATE, UPDATE, DELETE)
        - Deletes are soft: the entity is flagged, never removed
        - Identifiers are unique across every entity kind of the store

    Attributes:
        entity_type: Kind of entity recorded in the audit trail
    """

    entity_type: str

    @abstractmethod
    def get(self, entity_id: str, include_deleted: bool = False) -> Result[Optional[E]]:
        """Load one entity by its unique identifier.

        Parameters:
            entity_id: Store-native unique identifier (UUID)
            include_deleted: Also return soft-deleted entities

        Returns:
            Result[Optional[E]]: The entity, None if absent, or error
        """
        pass

    @abstractmethod
    def search(self, predicate, offset: int, limit: int) -> Result[SearchPage[E]]:
        """Execute a compiled predicate with a page window.

        Parameters:
            predicate: Predicate produced by the search compiler
            offset: Number of matches to skip
            limit: Maximum number of matches to return

        Returns:
            Result[SearchPage[E]]: Page of entities plus total count, or error
        """
        pass

    @abstractmethod
    def save(self, entity: E, agent: str) -> Result[E]:
        """Insert or update an entity and record the change in the audit trail.

        Parameters:
            entity: Entity to persist
            agent: Identity of the acting user

        Returns:
            Result[E]: The entity as stored (server-assigned fields populated)
        """
        pass

    @abstractmethod
    def delete(self, entity_id: str, agent: str) -> Result[Optional[E]]:
        """Soft-delete an entity.

        Parameters:
            entity_id: Store-native unique identifier
            agent: Identity of the acting user

        Returns:
            Result[Optional[E]]: The entity as it was before deletion, None if absent
        """
        pass

    @abstractmethod
    def identifier_in_use(self, entity_id: str) -> Result[bool]:
        """Check whether any stored entity, of any kind, already carries an identifier.

        Soft-deleted entities and obs-group members count as in use.

        Parameters:
            entity_id: Candidate unique identifier

        Returns:
            Result[bool]: True if the identifier is taken, or error
        """
        pass


class AuditLogPort(ABC):
    """Abstract contract for the store's append-only audit trail."""

    @abstractmethod
    def events_for(self, entity_id: str, entity_type: Optional[str] = None) -> Result[list[AuditEvent]]:
        """Get the change log of an entity, oldest first.

        Parameters:
            entity_id: Store-native unique identifier
            entity_type: Only events recorded for this kind of entity; all kinds if None

        Returns:
            Result[list[AuditEvent]]: Ordered events (possibly empty) or error
        """
        pass
