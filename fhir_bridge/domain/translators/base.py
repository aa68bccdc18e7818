"""Resource Translator contract."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Generic, Optional, TypeVar

from fhir_bridge.domain.resources import Meta, Resource
from fhir_bridge.domain.services.search_compiler import SearchField
from fhir_bridge.domain.utils import to_instant

E = TypeVar('E')
R = TypeVar('R', bound=Resource)


def last_updated_meta(timestamp: Optional[datetime]) -> Optional[Meta]:
    """Resource meta carrying the store's last change time, None when unknown."""
    if timestamp is None:
        return None
    return Meta(last_updated=to_instant(timestamp))


class ResourceTranslator(ABC, Generic[E, R]):
    """Bidirectional mapping between a store entity and an external resource.

    Implementations must be idempotent: translating an entity out, in and out
    again yields the first external form.
    """

    resource_type: str
    resource_class: type

    @abstractmethod
    def to_external(self, entity: E) -> R:
        """Translate a store entity to its external resource."""
        pass

    @abstractmethod
    def to_internal(self, resource: R, existing: Optional[E] = None) -> E:
        """Translate an external resource to a store entity.

        Parameters:
            resource: Incoming resource
            existing: Stored entity on update; only elements present in the
                resource overwrite it. None on create.

        Raises:
            ValidationError: If the resource cannot be represented in the store
        """
        pass

    @abstractmethod
    def entity_id(self, entity: E) -> str:
        """Store identifier of an entity (the external resource id)."""
        pass

    @abstractmethod
    def search_fields(self) -> list[SearchField]:
        """Search parameter table of the resource."""
        pass

    def parse(self, payload: dict) -> R:
        """Build the resource model from a JSON payload."""
        return self.resource_class.model_validate(payload)
