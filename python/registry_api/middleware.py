"""
HTTP plumbing for the GN Registry API: CORS, per-request logging and
security context, and the ``{"error": {...}}`` envelope every failure is
returned in.
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, Type

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from log_utils import sanitize_for_logging
from registry.errors import (
    AccessDenied,
    DuplicateEntityError,
    EntityNotFoundError,
    InvalidHierarchyError,
    QueryExecutionError,
    RegistryError,
)
from security_logger import get_security_logger

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

GENERIC_FAILURE = "The request could not be completed. Please try again later."

# (exception, code, status, public message); None means the exception's own text
ERROR_MAP: List[Tuple[Type[Exception], str, int, Optional[str]]] = [
    (AccessDenied, "ACCESS_DENIED", 403, None),
    (EntityNotFoundError, "NOT_FOUND", 404, None),
    (DuplicateEntityError, "DUPLICATE", 409, None),
    (InvalidHierarchyError, "INVALID_HIERARCHY", 422, None),
    (ValueError, "INVALID_REQUEST", 400, None),
    (ConfigurationError, "CONFIGURATION_ERROR", 503,
     "Service configuration is invalid. Please contact administrator."),
    (QueryExecutionError, "QUERY_FAILED", 500, GENERIC_FAILURE),
]


def setup_cors(app: FastAPI, origins: Optional[List[str]] = None) -> None:
    """CORS_ORIGINS (comma-separated) overrides ``origins``."""
    from_env = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=from_env or origins or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds the security context for the request and stamps the response
    with X-Request-ID and X-Processing-Time-MS."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = sanitize_for_logging(request.headers.get("X-Request-ID", ""))[:64]
        request_id = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        request.state.request_id = request_id

        security = get_security_logger()
        security.set_request_context(
            request_id=request_id,
            user_id=request.headers.get("X-User-ID", ""),
            source_ip=request.client.host if request.client else "",
        )
        path = sanitize_for_logging(request.url.path)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "%s %s failed after %dms: %s [%s]",
                request.method, path, _elapsed_ms(started),
                sanitize_for_logging(str(exc)), request_id,
            )
            raise
        finally:
            security.clear_request_context()

        elapsed = _elapsed_ms(started)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed)
        logger.info("%s %s -> %d in %dms [%s]", request.method, path, response.status_code, elapsed, request_id)
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def create_error_response(code: str, message: str, status_code: int = 500, field: Optional[str] = None) -> JSONResponse:
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        error["field"] = field
    return JSONResponse(status_code=status_code, content={"error": error})


async def registry_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Translate core exceptions through ERROR_MAP.

    Storage and configuration failures get a fixed public message; their
    detail (and the chained cause) is only logged.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    for exc_type, code, status_code, public_message in ERROR_MAP:
        if not isinstance(exc, exc_type):
            continue
        if status_code >= 500:
            logger.error(
                "%s: %s cause=%s [%s]",
                code,
                sanitize_for_logging(str(exc)),
                sanitize_for_logging(str(exc.__cause__)) if exc.__cause__ else "-",
                request_id,
            )
        elif status_code == 403:
            logger.warning("Access denied: %s [%s]", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(code, public_message or sanitize_for_logging(str(exc)), status_code)

    return await global_exception_handler(request, exc)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled %s: %s [%s]",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        getattr(request.state, "request_id", "unknown"),
    )
    return create_error_response("INTERNAL_ERROR", GENERIC_FAILURE, 500)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning(
        "HTTP %d: %s [%s]",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        getattr(request.state, "request_id", "unknown"),
    )
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    response = create_error_response(f"HTTP_{exc.status_code}", message, exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def setup_exception_handlers(app: FastAPI) -> None:
    for exc_type in (RegistryError, ConfigurationError, ValueError):
        app.add_exception_handler(exc_type, registry_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
