"""
FastAPI dependencies for the GN Registry API

Authentication happens upstream: the gateway forwards the authenticated
account id in the X-User-ID header. Everything a request needs is built
here and handed to the services explicitly.
"""

import os
import logging
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from config_manager import ConfigManager, get_config
from log_utils import sanitize_for_logging
from registry.audit import AuditRecorder
from registry.connection import DatabaseSessionProvider, get_db_provider
from registry.errors import EntityNotFoundError
from registry.repositories import UserRepository
from registry.scope import Principal
from registry.services import AdministrationService, RegistryQueryService, RequestContext
from security_logger import get_security_logger

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    return get_config(CONFIG_PATH)


def get_provider() -> DatabaseSessionProvider:
    return get_db_provider()


def get_session(
    provider: DatabaseSessionProvider = Depends(get_provider),
) -> Generator[Session, None, None]:
    """Request-scoped read session."""
    yield from provider.get_session()


def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
    config: ConfigManager = Depends(get_config_instance),
) -> str:
    """Verify API key for protected endpoints.

    If no key is configured, authentication is disabled.
    """
    expected = config.api.api_key
    if not expected:
        return "dev-mode"

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API key. Provide X-API-Key header.")

    if api_key != expected:
        get_security_logger().log_invalid_credentials(
            header="X-API-Key", input_value=api_key, source="verify_api_key"
        )
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_principal(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    session: Session = Depends(get_session),
) -> Principal:
    """Load the acting account named by the X-User-ID header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")

    try:
        user_id = int(x_user_id.strip())
        user = UserRepository(session).get(user_id)
    except (ValueError, EntityNotFoundError):
        get_security_logger().log_invalid_credentials(
            header="X-User-ID", input_value=x_user_id, source="get_principal"
        )
        logger.warning("Rejected X-User-ID: %s", sanitize_for_logging(x_user_id))
        raise HTTPException(status_code=401, detail="Unknown account")

    return Principal.from_user(user)


def get_request_context(
    request: Request,
    principal: Principal = Depends(get_principal),
) -> RequestContext:
    return RequestContext(
        principal=principal,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", ""),
    )


def get_query_service(
    session: Session = Depends(get_session),
    config: ConfigManager = Depends(get_config_instance),
) -> RegistryQueryService:
    return RegistryQueryService(
        session,
        pagination=config.pagination,
        statistics=config.statistics,
        audit=config.audit,
    )


def get_admin_service(
    provider: DatabaseSessionProvider = Depends(get_provider),
    config: ConfigManager = Depends(get_config_instance),
) -> AdministrationService:
    recorder = AuditRecorder(provider.session_factory, enabled=config.audit.enabled)
    return AdministrationService(provider, recorder, audit=config.audit)
