"""Resource Access Facade.

``ResourceService`` exposes read, search, create, update, delete and history
for one resource type. It composes a store, a translator, the search
compiler and the history reconstructor, all passed in explicitly.

Every call moves through the request states

    RECEIVED -> VALIDATED -> EXECUTED -> RENDERED

and ends in FAILED if any step raises. Input is validated and translated
before the store is touched. Store results are unwrapped so the error kind
raised by the store reaches the caller unchanged.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Iterator, Optional, TypeVar

from fhir_bridge.domain.ports import (
    DuplicateIdentifierError,
    EntityStorePort,
    IdentifierMismatchError,
    InvalidSearchParameterError,
    MissingIdentifierError,
    NotFoundError,
    ValidationError,
)
from fhir_bridge.domain.resources import Provenance, Reference, Resource
from fhir_bridge.domain.search import SearchFilterSet
from fhir_bridge.domain.services.history import HistoryReconstructor
from fhir_bridge.domain.services.search_compiler import SearchPredicateCompiler
from fhir_bridge.domain.translators.base import ResourceTranslator

logger = logging.getLogger(__name__)

R = TypeVar('R', bound=Resource)

DEFAULT_PAGE_SIZE = 10
MAXIMUM_PAGE_SIZE = 100


class RequestState(str, Enum):
    """Lifecycle of one facade call."""
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    EXECUTED = "EXECUTED"
    RENDERED = "RENDERED"
    FAILED = "FAILED"


@dataclass
class PaginatedResult(Generic[R]):
    """One page of search results.

    Attributes:
        entries: Resources on this page, in store order
        total: Total number of matches
        offset: Index of the first entry within all matches
        count: Requested page size
    """

    entries: list[R] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    count: int = DEFAULT_PAGE_SIZE

    @property
    def has_next(self) -> bool:
        return self.count > 0 and self.offset + len(self.entries) < self.total


@dataclass
class _RequestTrace:
    operation: str
    resource_type: str
    resource_id: Optional[str] = None
    state: RequestState = RequestState.RECEIVED

    def advance(self, state: RequestState) -> None:
        logger.debug(
            f"{self.operation} {self.resource_type}/{self.resource_id or '-'}: "
            f"{self.state.value} -> {state.value}"
        )
        self.state = state


class ResourceService(Generic[R]):
    """Read, search, create, update, delete and history for one resource type."""

    def __init__(
        self,
        store: EntityStorePort,
        translator: ResourceTranslator,
        history: HistoryReconstructor,
        string_mode: str = "start",
        default_page_size: int = DEFAULT_PAGE_SIZE,
        maximum_page_size: int = MAXIMUM_PAGE_SIZE
    ):
        """Initialize facade.

        Parameters:
            store: Entity store of the resource type
            translator: Translator of the resource type
            history: History reconstructor over the store's audit trail
            string_mode: Default string search mode ("start", "exact", "contains")
            default_page_size: Page size when the caller gives none
            maximum_page_size: Upper bound on requested page sizes
        """
        self.store = store
        self.translator = translator
        self.history_reconstructor = history
        self.compiler = SearchPredicateCompiler(translator.search_fields(), string_mode=string_mode)
        self.default_page_size = default_page_size
        self.maximum_page_size = maximum_page_size

    @property
    def resource_type(self) -> str:
        return self.translator.resource_type

    @contextmanager
    def _request(self, operation: str, resource_id: Optional[str] = None) -> Iterator[_RequestTrace]:
        trace = _RequestTrace(operation, self.resource_type, resource_id)
        try:
            yield trace
        except Exception as e:
            logger.debug(
                f"{operation} {self.resource_type}/{resource_id or '-'}: "
                f"{trace.state.value} -> FAILED ({type(e).__name__})"
            )
            trace.state = RequestState.FAILED
            raise

    def get(self, resource_id: str) -> R:
        """Read one resource.

        Raises:
            NotFoundError: If no live entity has this identifier
        """
        with self._request("read", resource_id) as trace:
            trace.advance(RequestState.VALIDATED)
            entity = self.store.get(resource_id).unwrap()
            if entity is None:
                raise NotFoundError(self.resource_type, resource_id)
            trace.advance(RequestState.EXECUTED)
            resource = self.translator.to_external(entity)
            trace.advance(RequestState.RENDERED)
            return resource

    def search(
        self,
        filter_set: SearchFilterSet,
        offset: int = 0,
        count: Optional[int] = None
    ) -> PaginatedResult[R]:
        """Search resources.

        Parameters:
            filter_set: Search parameters; absent ones impose no constraint
            offset: Number of matches to skip
            count: Page size; defaults to the configured page size and is
                capped at the maximum page size. 0 only counts matches.

        Returns:
            PaginatedResult: The page plus the total number of matches

        Raises:
            InvalidSearchParameterError: On unknown parameters or a negative window
        """
        with self._request("search") as trace:
            if offset < 0:
                raise InvalidSearchParameterError(f"Search offset must not be negative, got {offset}")
            if count is None:
                count = self.default_page_size
            if count < 0:
                raise InvalidSearchParameterError(f"Search count must not be negative, got {count}")
            count = min(count, self.maximum_page_size)

            predicate = self.compiler.compile(filter_set)
            trace.advance(RequestState.VALIDATED)

            page = self.store.search(predicate, offset, count).unwrap()
            trace.advance(RequestState.EXECUTED)

            entries = self._render_entries(page.entities)
            trace.advance(RequestState.RENDERED)

            logger.info(f"Search {self.resource_type}: {len(entries)} of {page.total} match(es)")
            return PaginatedResult(entries=entries, total=page.total, offset=offset, count=count)

    def create(self, resource: R, agent: str) -> R:
        """Create a resource.

        The declared id, if any, becomes the store identifier.

        Raises:
            DuplicateIdentifierError: If any stored entity, of any type, already
                carries the declared id
            ValidationError: If the resource cannot be represented in the store
        """
        with self._request("create", resource.id) as trace:
            if resource.id and self.store.identifier_in_use(resource.id).unwrap():
                raise DuplicateIdentifierError(
                    f"Resource with ID {resource.id} already exists",
                    details={"resource_id": resource.id, "resource_type": self.resource_type}
                )
            entity = self.translator.to_internal(resource)
            trace.advance(RequestState.VALIDATED)

            saved = self.store.save(entity, agent).unwrap()
            trace.advance(RequestState.EXECUTED)

            created = self._reread(self.translator.entity_id(saved))
            trace.advance(RequestState.RENDERED)

            logger.info(f"Created {self.resource_type}/{created.id} by {agent}")
            return created

    def update(self, resource_id: str, resource: R, agent: str) -> R:
        """Update a resource; only elements present in the body are changed.

        Raises:
            MissingIdentifierError: If the body carries no id
            IdentifierMismatchError: If the body's id differs from ``resource_id``
            NotFoundError: If no live entity has this identifier
        """
        with self._request("update", resource_id) as trace:
            if not resource.id:
                raise MissingIdentifierError("Resource body must contain an ID element for update")
            if resource.id != resource_id:
                raise IdentifierMismatchError(
                    "Resource body ID element must match the request URL",
                    details={"url_id": resource_id, "body_id": resource.id}
                )

            existing = self.store.get(resource_id).unwrap()
            if existing is None:
                raise NotFoundError(self.resource_type, resource_id)
            entity = self.translator.to_internal(resource, existing)
            trace.advance(RequestState.VALIDATED)

            self.store.save(entity, agent).unwrap()
            trace.advance(RequestState.EXECUTED)

            updated = self._reread(resource_id)
            trace.advance(RequestState.RENDERED)

            logger.info(f"Updated {self.resource_type}/{resource_id} by {agent}")
            return updated

    def delete(self, resource_id: str, agent: str) -> R:
        """Soft-delete a resource.

        Returns:
            The resource as it was before deletion

        Raises:
            NotFoundError: If no live entity has this identifier
        """
        with self._request("delete", resource_id) as trace:
            trace.advance(RequestState.VALIDATED)
            deleted = self.store.delete(resource_id, agent).unwrap()
            if deleted is None:
                raise NotFoundError(self.resource_type, resource_id)
            trace.advance(RequestState.EXECUTED)

            resource = self.translator.to_external(deleted)
            trace.advance(RequestState.RENDERED)

            logger.info(f"Deleted {self.resource_type}/{resource_id} by {agent}")
            return resource

    def history(self, resource_id: str) -> list[Provenance]:
        """Get the full change history of a resource, oldest first.

        Deleted resources keep their history.

        Raises:
            NotFoundError: If the store never held this identifier
        """
        with self._request("history", resource_id) as trace:
            trace.advance(RequestState.VALIDATED)
            if self.store.get(resource_id, include_deleted=True).unwrap() is None:
                raise NotFoundError(self.resource_type, resource_id)

            revisions = self.history_reconstructor.history_for(resource_id, self.store.entity_type)
            trace.advance(RequestState.EXECUTED)

            target = Reference(reference=f"{self.resource_type}/{resource_id}", type=self.resource_type)
            provenance = self.history_reconstructor.render(revisions, target)
            trace.advance(RequestState.RENDERED)
            return provenance

    def _render_entries(self, entities: list) -> list[R]:
        entries = []
        for entity in entities:
            try:
                entries.append(self.translator.to_external(entity))
            except ValidationError as e:
                logger.warning(
                    f"Skipping {self.resource_type} {self.translator.entity_id(entity)} in search results: {e.message}"
                )
        return entries

    def _reread(self, resource_id: str) -> R:
        entity = self.store.get(resource_id).unwrap()
        if entity is None:
            raise NotFoundError(self.resource_type, resource_id)
        return self.translator.to_external(entity)
