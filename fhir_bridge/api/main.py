"""Main FastAPI application for FHIR-Bridge.

This module sets up the FastAPI application with the resource routers,
middleware, exception handlers and logging configuration.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError

from fhir_bridge.api.dependencies import get_storage_adapter
from fhir_bridge.api.logging_config import setup_logging
from fhir_bridge.api.middleware import setup_middleware
from fhir_bridge.api.responses import FhirJSONResponse, issue_code, operation_outcome_response
from fhir_bridge.api.routes.resources import immunization_router, practitioner_router
from fhir_bridge.domain.ports import FhirBridgeError
from fhir_bridge.infrastructure.settings import APP_VERSION, FHIR_VERSION, settings

setup_logging(use_json=settings.log_json, log_level=settings.log_level)

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ["Practitioner", "Immunization"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"{settings.app_name} {APP_VERSION} starting up (FHIR {FHIR_VERSION})")
    logger.info(f"Logging level: {settings.log_level}, JSON logs: {settings.log_json}")
    yield
    if get_storage_adapter.cache_info().currsize:
        get_storage_adapter().close()
    logger.info(f"{settings.app_name} shutting down...")


app = FastAPI(
    title="FHIR-Bridge",
    description="FHIR R4 API over a generic clinical observation store",
    version=APP_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

setup_middleware(app)

app.include_router(practitioner_router)
app.include_router(immunization_router)


@app.exception_handler(FhirBridgeError)
async def fhir_bridge_error_handler(request: Request, exc: FhirBridgeError):
    """Render bridge errors as OperationOutcome with the error's status code."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return operation_outcome_response(exc.http_status, issue_code(exc), exc.message)


@app.exception_handler(PydanticValidationError)
async def resource_validation_error_handler(request: Request, exc: PydanticValidationError):
    """Reject resource bodies that do not match the resource model."""
    problems = "; ".join(
        f"{'.'.join(str(p) for p in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    logger.warning(f"{request.method} {request.url.path} invalid resource: {problems}")
    return operation_outcome_response(400, "structure", f"Invalid resource: {problems}")


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return operation_outcome_response(400, "invalid", str(exc))


@app.get("/metadata")
async def metadata():
    """Capability statement listing the supported resources and interactions."""
    return FhirJSONResponse(content={
        "resourceType": "CapabilityStatement",
        "status": "active",
        "kind": "instance",
        "fhirVersion": FHIR_VERSION,
        "format": ["json"],
        "software": {"name": settings.app_name, "version": APP_VERSION},
        "rest": [{
            "mode": "server",
            "resource": [
                {
                    "type": resource_type,
                    "interaction": [
                        {"code": code}
                        for code in ("read", "search-type", "create", "update", "delete", "history-instance")
                    ],
                }
                for resource_type in RESOURCE_TYPES
            ],
        }],
    })


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fhir_bridge.api.main:app",
        host=settings.host,
        port=settings.port,
        log_level="info"
    )
