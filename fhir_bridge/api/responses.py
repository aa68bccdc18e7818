"""FHIR response helpers: media type, bundles and OperationOutcome bodies."""

from typing import Optional
from urllib.parse import urlencode

from fastapi.responses import JSONResponse

from fhir_bridge.domain.ports import (
    ConflictError,
    FhirBridgeError,
    NotFoundError,
    ValidationError,
)
from fhir_bridge.domain.resources import (
    Bundle,
    BundleEntry,
    BundleLink,
    OperationOutcome,
    OperationOutcomeIssue,
    Provenance,
    Resource,
)
from fhir_bridge.domain.services.resource_service import PaginatedResult

FHIR_MEDIA_TYPE = "application/fhir+json"


class FhirJSONResponse(JSONResponse):
    media_type = FHIR_MEDIA_TYPE


def issue_code(error: FhirBridgeError) -> str:
    """FHIR issue type of a bridge error."""
    if isinstance(error, NotFoundError):
        return "not-found"
    if isinstance(error, ConflictError):
        return "conflict"
    if isinstance(error, ValidationError):
        return "invalid"
    return "exception"


def operation_outcome_response(status_code: int, code: str, diagnostics: str) -> FhirJSONResponse:
    outcome = OperationOutcome(issue=[OperationOutcomeIssue(
        severity="error" if status_code < 500 else "fatal",
        code=code,
        diagnostics=diagnostics,
    )])
    return FhirJSONResponse(status_code=status_code, content=outcome.to_fhir())


def searchset_bundle(
    result: PaginatedResult,
    base_url: str,
    resource_type: str,
    query_items: list[tuple[str, str]]
) -> Bundle:
    """Build a searchset bundle with ``self`` and, when more matches exist, ``next`` links."""
    search_url = f"{base_url}/{resource_type}"
    paging = [(k, v) for k, v in query_items if k not in ("_count", "_offset")]

    def page_url(offset: int) -> str:
        return f"{search_url}?{urlencode(paging + [('_count', str(result.count)), ('_offset', str(offset))])}"

    links = [BundleLink(relation="self", url=page_url(result.offset))]
    if result.has_next:
        links.append(BundleLink(relation="next", url=page_url(result.offset + len(result.entries))))
    if result.offset > 0 and result.count > 0:
        links.append(BundleLink(relation="previous", url=page_url(max(result.offset - result.count, 0))))

    return Bundle(
        type="searchset",
        total=result.total,
        link=links,
        entry=[_entry(base_url, r) for r in result.entries] or None,
    )


def history_bundle(provenance: list[Provenance], base_url: str, self_url: Optional[str] = None) -> Bundle:
    """Build a history bundle of Provenance resources, oldest first."""
    return Bundle(
        type="history",
        total=len(provenance),
        link=[BundleLink(relation="self", url=self_url)] if self_url else None,
        entry=[_entry(base_url, p) for p in provenance] or None,
    )


def _entry(base_url: str, resource: Resource) -> BundleEntry:
    return BundleEntry(
        full_url=f"{base_url}/{resource.resource_type}/{resource.id}",
        resource=resource.to_fhir(),
    )
