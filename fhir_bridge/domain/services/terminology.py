"""Terminology Resolver.

Resolves external terminology references of the form ``<vocabulary>:<code>``
(e.g. ``"CIEL:1421"``) to concepts of the store's concept dictionary.
"""

import logging

from fhir_bridge.domain.ports import AmbiguousOrMissingMappingError, TerminologyPort
from fhir_bridge.domain.records import Concept

logger = logging.getLogger(__name__)


class TerminologyResolver:
    """Resolve terminology references against the concept dictionary.

    Lookups are memoized for the lifetime of the resolver. Create one
    resolver per logical request so a codec pass resolving the same
    reference repeatedly hits the dictionary once, while concept mapping
    changes are visible to the next request.
    """

    def __init__(self, terminology: TerminologyPort):
        """Initialize resolver.

        Parameters:
            terminology: Concept dictionary port
        """
        self.terminology = terminology
        self._cache: dict[str, Concept] = {}

    def resolve(self, reference: str) -> Concept:
        """Resolve a terminology reference to exactly one concept.

        Parameters:
            reference: ``<vocabulary>:<code>``; split on the first ``:``

        Returns:
            The uniquely mapped concept

        Raises:
            AmbiguousOrMissingMappingError: If the reference is malformed or
                zero or several concepts are mapped to it
            StorageError: If the dictionary lookup fails
        """
        cached = self._cache.get(reference)
        if cached is not None:
            return cached

        vocabulary, sep, code = reference.partition(":")
        if not sep or not vocabulary or not code:
            raise AmbiguousOrMissingMappingError(
                f"Invalid terminology reference '{reference}'; expected '<vocabulary>:<code>'",
                key=reference
            )

        concepts = self.terminology.concepts_for_mapping(vocabulary, code).unwrap()
        if len(concepts) != 1:
            raise AmbiguousOrMissingMappingError(
                f"A concept mapped to '{reference}' is required, however either multiple concepts "
                f"are mapped to that term or no concepts are mapped to that term",
                key=reference,
                details={"reference": reference, "matches": len(concepts)}
            )

        concept = concepts[0]
        self._cache[reference] = concept
        logger.debug(f"Resolved {reference} to concept {concept.uuid}")
        return concept
