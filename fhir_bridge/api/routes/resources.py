"""FHIR REST endpoints.

One router per resource type, all built by ``build_resource_router``:

    GET    /{type}/{id}            read
    GET    /{type}?...             search (searchset bundle)
    POST   /{type}                 create
    PUT    /{type}/{id}            update
    DELETE /{type}/{id}            delete
    GET    /{type}/{id}/_history   history (bundle of Provenance)

Service calls block on the store, so handlers run them in a worker thread.
"""

import asyncio
import json
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Request

from fhir_bridge.api.dependencies import AgentDep, get_immunization_service, get_practitioner_service
from fhir_bridge.api.params import parse_search_query
from fhir_bridge.api.responses import FhirJSONResponse, history_bundle, searchset_bundle
from fhir_bridge.domain.ports import ValidationError
from fhir_bridge.domain.services.resource_service import ResourceService
from fhir_bridge.infrastructure.settings import settings

logger = logging.getLogger(__name__)


def base_url(request: Request) -> str:
    return settings.base_url or str(request.base_url).rstrip("/")


async def read_body(request: Request) -> dict:
    """Read a JSON resource body regardless of the JSON media type used."""
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except json.JSONDecodeError as e:
        raise ValidationError(f"Request body is not valid JSON: {e.msg}")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON resource object")
    return payload


def build_resource_router(resource_type: str, service_dependency: Callable[..., ResourceService]) -> APIRouter:
    """Build the REST router of one resource type.

    Parameters:
        resource_type: Resource type served ("Practitioner")
        service_dependency: FastAPI dependency returning the resource's ResourceService
    """
    router = APIRouter(prefix=f"/{resource_type}", tags=[resource_type])
    ServiceDep = Depends(service_dependency)

    @router.get("/{resource_id}/_history")
    async def history(resource_id: str, request: Request, service: ResourceService = ServiceDep):
        """Get the change history of a resource as Provenance entries."""
        provenance = await asyncio.to_thread(service.history, resource_id)
        bundle = history_bundle(provenance, base_url(request), self_url=str(request.url))
        return FhirJSONResponse(content=bundle.to_fhir())

    @router.get("/{resource_id}")
    async def read(resource_id: str, service: ResourceService = ServiceDep):
        """Read one resource."""
        resource = await asyncio.to_thread(service.get, resource_id)
        return FhirJSONResponse(content=resource.to_fhir())

    @router.get("")
    async def search(request: Request, service: ResourceService = ServiceDep):
        """Search resources; see the resource's search parameter table."""
        items = list(request.query_params.multi_items())
        filter_set, offset, count = parse_search_query(items, service.compiler.fields)
        result = await asyncio.to_thread(service.search, filter_set, offset=offset, count=count)
        bundle = searchset_bundle(result, base_url(request), resource_type, items)
        return FhirJSONResponse(content=bundle.to_fhir())

    @router.post("")
    async def create(request: Request, agent: AgentDep, service: ResourceService = ServiceDep):
        """Create a resource."""
        resource = service.translator.parse(await read_body(request))
        created = await asyncio.to_thread(service.create, resource, agent)
        return FhirJSONResponse(
            status_code=201,
            content=created.to_fhir(),
            headers={"Location": f"{base_url(request)}/{resource_type}/{created.id}"},
        )

    @router.put("/{resource_id}")
    async def update(resource_id: str, request: Request, agent: AgentDep, service: ResourceService = ServiceDep):
        """Update a resource."""
        resource = service.translator.parse(await read_body(request))
        updated = await asyncio.to_thread(service.update, resource_id, resource, agent)
        return FhirJSONResponse(content=updated.to_fhir())

    @router.delete("/{resource_id}")
    async def delete(resource_id: str, agent: AgentDep, service: ResourceService = ServiceDep):
        """Delete a resource; returns it as it was before deletion."""
        deleted = await asyncio.to_thread(service.delete, resource_id, agent)
        return FhirJSONResponse(content=deleted.to_fhir())

    return router


practitioner_router = build_resource_router("Practitioner", get_practitioner_service)
immunization_router = build_resource_router("Immunization", get_immunization_service)
