"""
FastAPI GN Registry API Server

Provides REST endpoints over the registry services: scoped list views,
jurisdiction statistics, the audit dashboard, and audited administration.

Usage:
    uvicorn registry_api.server:app --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import Optional

import psutil
from fastapi import APIRouter, FastAPI, Depends, Request
from fastapi.responses import RedirectResponse

from registry_api.dependencies import (
    get_admin_service,
    get_config_instance,
    get_provider,
    get_query_service,
    get_request_context,
    verify_api_key,
)
from registry_api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from registry_api.models import (
    AuditSummaryResponse,
    BreakdownResponse,
    DeletedAuditLogResponse,
    DemographicsResponse,
    ErrorResponse,
    HealthResponse,
    JurisdictionResponse,
    JurisdictionStatisticsResponse,
    JurisdictionUpdate,
    ListResponse,
    PurgeRequest,
    PurgeResponse,
    StatisticsResponse,
    StatusResponse,
)
from config_manager import ConfigManager, ConfigurationError, get_config, setup_logging
from registry.connection import DatabaseSessionProvider, DatabaseSettings, init_db, close_db
from registry.monitoring import configure_monitoring, get_slow_query_report
from registry.pagination import Page, navigation_links
from registry.services import AdministrationService, RegistryQueryService, RequestContext
from security_logger import get_security_logger

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

_startup_time: Optional[datetime] = None

COMMON_ERRORS = {
    401: {"model": ErrorResponse, "description": "Unknown or missing account"},
    403: {"model": ErrorResponse, "description": "Outside the caller's scope"},
    500: {"model": ErrorResponse, "description": "Query failed"},
}


app = FastAPI(
    title="GN Registry API",
    description="Jurisdiction-scoped citizen and family registry",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Registry endpoints; /api/v1/health stays open for probes
router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
def startup():
    """Load configuration and open the database pool."""
    global _startup_time

    logger.info("Starting GN Registry API...")
    try:
        config = get_config(CONFIG_PATH)
        setup_logging(config.logging)
        configure_monitoring(
            slow_query_threshold_ms=config.monitoring.slow_query_threshold_ms,
            warning_threshold_ms=config.monitoring.warning_threshold_ms,
            enable_prometheus=config.monitoring.enable_prometheus,
        )
        get_security_logger(log_dir=config.api.log_directory)
        init_db(DatabaseSettings.from_config(config.database), echo=config.database.echo)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise

    _startup_time = datetime.now(timezone.utc)
    logger.info("API ready")


@app.on_event("shutdown")
def shutdown():
    logger.info("Shutting down GN Registry API...")
    close_db()


def _list_response(page: Page, request: Request) -> ListResponse:
    body = page.to_dict()
    body['page_window'] = page.page_window()
    body['links'] = navigation_links(page, request.query_params, request.url.path)
    return ListResponse(**body)


# ============================================
# LIST VIEWS
# ============================================

@router.get("/families", response_model=ListResponse, responses=COMMON_ERRORS,
            summary="List families in scope")
def list_families(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return _list_response(service.list_families(ctx, request.query_params), request)


@router.get("/citizens", response_model=ListResponse, responses=COMMON_ERRORS,
            summary="List citizens in scope")
def list_citizens(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return _list_response(service.list_citizens(ctx, request.query_params), request)


@router.get("/users", response_model=ListResponse, responses=COMMON_ERRORS,
            summary="List accounts in scope")
def list_users(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return _list_response(service.list_users(ctx, request.query_params), request)


@router.get("/audit-logs", response_model=ListResponse, responses=COMMON_ERRORS,
            summary="Browse the audit trail (national accounts only)")
def list_audit_logs(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return _list_response(service.list_audit_logs(ctx, request.query_params), request)


@router.get("/audit-logs/summary", response_model=AuditSummaryResponse, responses=COMMON_ERRORS,
            summary="Audit dashboard counts")
def audit_summary(
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return AuditSummaryResponse(**service.audit_summary(ctx))


# ============================================
# STATISTICS
# ============================================

@router.get("/jurisdictions/{node_id}/statistics", response_model=JurisdictionStatisticsResponse,
            responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def jurisdiction_statistics(
    node_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    """Rollup statistics for one node. Figures are marked unavailable when they cannot be computed."""
    record = service.statistics_for(ctx, node_id)
    return JurisdictionStatisticsResponse(
        statistics=StatisticsResponse(**record.to_dict()),
        breadcrumbs=service.breadcrumbs(node_id),
    )


@router.get("/jurisdictions/{node_id}/breakdown", response_model=BreakdownResponse,
            responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def jurisdiction_breakdown(
    node_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    records = service.breakdown_for(ctx, node_id)
    return BreakdownResponse(
        jurisdiction_id=node_id,
        children=[StatisticsResponse(**r.to_dict()) for r in records],
    )


@router.get("/jurisdictions/{node_id}/demographics", response_model=DemographicsResponse,
            responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def jurisdiction_demographics(
    node_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: RegistryQueryService = Depends(get_query_service),
):
    return DemographicsResponse(**service.demographics_for(ctx, node_id).to_dict())


# ============================================
# ADMINISTRATION
# ============================================

@router.post("/users/{user_id}/status", response_model=StatusResponse,
             responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def toggle_user_status(
    user_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    return StatusResponse(id=user_id, is_active=service.toggle_user_status(ctx, user_id))


@router.post("/jurisdictions/{node_id}/status", response_model=StatusResponse,
             responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def toggle_jurisdiction_status(
    node_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    return StatusResponse(id=node_id, is_active=service.toggle_jurisdiction_status(ctx, node_id))


@router.patch("/jurisdictions/{node_id}", response_model=JurisdictionResponse,
              responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def update_jurisdiction(
    node_id: int,
    body: JurisdictionUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    return JurisdictionResponse(**service.update_jurisdiction_office(ctx, node_id, body.office_name))


@router.delete("/audit-logs/{log_id}", response_model=DeletedAuditLogResponse,
               responses={**COMMON_ERRORS, 404: {"model": ErrorResponse}})
def delete_audit_log(
    log_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    return DeletedAuditLogResponse(deleted=service.delete_audit_log(ctx, log_id))


@router.post("/audit-logs/purge", response_model=PurgeResponse, responses=COMMON_ERRORS)
def purge_audit_logs(
    body: PurgeRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    return PurgeResponse(deleted=service.purge_audit_logs(ctx, older_than_days=body.older_than_days))


@router.post("/jurisdictions/{node_id}/member-counts/refresh", responses=COMMON_ERRORS)
def refresh_member_counts(
    node_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: AdministrationService = Depends(get_admin_service),
):
    """Reconcile cached family member counts under a node."""
    return {"updated": service.refresh_member_counts(ctx, node_id)}


app.include_router(router)


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check database connectivity and query health",
)
def health_check(
    provider: DatabaseSessionProvider = Depends(get_provider),
    config: ConfigManager = Depends(get_config_instance),
):
    """Return health status. Always returns HTTP 200."""
    try:
        database_ok = provider.health_check()

        memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)

        uptime_seconds = None
        if _startup_time:
            uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            database=database_ok,
            memory_usage_mb=memory_usage_mb,
            uptime_seconds=uptime_seconds,
            slow_queries=get_slow_query_report(),
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(status="error", database=False, error_message=str(e))


@app.get("/", include_in_schema=False)
def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
