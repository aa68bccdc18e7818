"""Middleware configuration for the FHIR API."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from fhir_bridge.api.responses import operation_outcome_response

logger = logging.getLogger(__name__)


def resource_context(path: str) -> dict:
    """Resource type and id addressed by a request path.

    ``/Immunization/imm-1/_history`` gives both; ``/Practitioner`` only the
    type; paths such as ``/metadata`` give neither.
    """
    segments = [s for s in path.split("/") if s]
    if not segments or not segments[0][:1].isupper():
        return {}
    context = {"resource_type": segments[0]}
    if len(segments) > 1 and not segments[1].startswith("_"):
        context["resource_id"] = segments[1]
    return context


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details.

        Parameters:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            Response: HTTP response with X-Process-Time and X-Request-ID headers
        """
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = {
            "request_id": request_id,
            "client_ip": request.client.host if request.client else "unknown",
            "endpoint": request.url.path,
            **resource_context(request.url.path),
        }
        agent = request.headers.get("X-Agent")
        if agent:
            context["agent"] = agent

        logger.info(f"{request.method} {request.url.path}", extra=context)

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"{request.method} {request.url.path} - "
                f"Error: {str(e)} - "
                f"Time: {process_time:.3f}s",
                exc_info=True,
                extra=context
            )
            response = operation_outcome_response(500, "exception", "An unexpected error occurred")

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        response.headers["X-Request-ID"] = request_id

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.3f}s",
            extra=context
        )
        return response


def setup_middleware(app) -> None:
    """Setup application middleware.

    Parameters:
        app: FastAPI application instance
    """
    app.add_middleware(LoggingMiddleware)
