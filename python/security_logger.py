"""
Security Event Logging

Access-control decisions are written as one JSON object per line to the
``security`` logger (and ``security.log`` when file output is enabled):

- ACCESS_DENIED: a principal's scope could not be resolved, or a request
  named a jurisdiction outside it (reason in ``error_code``)
- UNAUTHORIZED_ACTION: an administrative action the role may not perform
- INVALID_CREDENTIALS: a rejected X-User-ID or X-API-Key header

Request id, acting user and client address are held in context variables
set by the HTTP middleware, so concurrent requests never share them.

SECURITY: every client-supplied value is sanitized before it is logged.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from log_utils import sanitize_for_logging, truncate

INPUT_PREVIEW_LENGTH = 50
CONTEXT_VALUE_LENGTH = 200

_request_id: ContextVar[str] = ContextVar("security_request_id", default="")
_user_id: ContextVar[str] = ContextVar("security_user_id", default="")
_source_ip: ContextVar[str] = ContextVar("security_source_ip", default="")


def _clean(value: Any, max_length: int) -> str:
    if value is None or value == "":
        return ""
    return truncate(sanitize_for_logging(value), max_length)


@dataclass
class SecurityEvent:
    """One access-control decision."""
    event_type: str
    severity: str
    error_code: str = ""
    field_name: str = ""
    sanitized_input: str = ""
    source: str = ""
    user_id: str = ""
    request_id: str = dataclass_field(default_factory=_request_id.get)
    source_ip: str = dataclass_field(default_factory=_source_ip.get)
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'error_code': self.error_code,
            'field': self.field_name,
            'sanitized_input': self.sanitized_input,
            'source': self.source,
            'user_id': self.user_id,
            'request_id': self.request_id,
            'source_ip': self.source_ip,
            'context': self.context,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class SecurityLogger:
    """Writes SecurityEvents to the ``security`` logger."""

    LEVELS = {
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.WARNING,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """
        Args:
            log_dir: Directory for security.log
            log_level: Minimum level recorded
            enable_console: Also write to stderr
            enable_file: Write security.log
        """
        self.log_dir = Path(log_dir)
        self.logger = logging.getLogger('security')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - SECURITY - %(levelname)s - %(message)s')
        handlers = []
        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_dir / "security.log", encoding='utf-8'))
        if enable_console:
            handlers.append(logging.StreamHandler())
        for handler in handlers:
            handler.setLevel(log_level)
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    # ----------------------------------------
    # Request context
    # ----------------------------------------

    def set_request_context(
        self,
        request_id: Optional[str] = None,
        user_id: str = "",
        source_ip: str = ""
    ) -> str:
        """Bind request details to the current context. Returns the request id."""
        request_id = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        _request_id.set(_clean(request_id, 64))
        _user_id.set(_clean(user_id, 32))
        _source_ip.set(_clean(source_ip, 64))
        return request_id

    def clear_request_context(self) -> None:
        _request_id.set("")
        _user_id.set("")
        _source_ip.set("")

    # ----------------------------------------
    # Events
    # ----------------------------------------

    def log_security_event(
        self,
        event_type: str,
        severity: str = "ERROR",
        field: str = "",
        error_code: str = "",
        input_value: Any = "",
        source: str = "",
        blocked: bool = True,
        user_id: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record one event.

        ``user_id`` defaults to the account named on the current request.
        Context values that are not plain scalars are stringified and
        sanitized.
        """
        context: Dict[str, Any] = {}
        for key, value in (additional_context or {}).items():
            if value is None or isinstance(value, (bool, int, float)):
                context[_clean(key, 100)] = value
            else:
                context[_clean(key, 100)] = _clean(value, CONTEXT_VALUE_LENGTH)
        context['blocked'] = blocked

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            error_code=error_code,
            field_name=field,
            sanitized_input=_clean(input_value, INPUT_PREVIEW_LENGTH),
            source=source,
            user_id=user_id if user_id is not None else _user_id.get(),
            context=context,
        )
        self.logger.log(self.LEVELS.get(severity, logging.WARNING), event.to_json())

    def log_access_denied(
        self,
        reason: str,
        user_id: Optional[int] = None,
        requested: str = "",
        source: str = "",
        additional_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Args:
            reason: SCOPE_UNRESOLVED, ROLE_MISMATCH, ACCOUNT_DISABLED or OUT_OF_SCOPE
            user_id: Principal the decision was made for
            requested: Requested jurisdiction, if any
            source: Component that made the decision
        """
        self.log_security_event(
            event_type="ACCESS_DENIED",
            severity="WARNING",
            field="jurisdiction_id" if requested else "",
            error_code=reason,
            input_value=requested,
            source=source,
            user_id=str(user_id) if user_id is not None else None,
            additional_context=additional_context
        )

    def log_unauthorized_action(
        self,
        action: str,
        user_id: Optional[int] = None,
        target: str = "",
        source: str = ""
    ) -> None:
        self.log_security_event(
            event_type="UNAUTHORIZED_ACTION",
            severity="ERROR",
            error_code=action.upper().replace(" ", "_"),
            input_value=target,
            source=source,
            user_id=str(user_id) if user_id is not None else None
        )

    def log_invalid_credentials(self, header: str, input_value: str = "", source: str = "") -> None:
        self.log_security_event(
            event_type="INVALID_CREDENTIALS",
            severity="WARNING",
            field=header,
            error_code="AUTH_REJECTED",
            input_value=input_value,
            source=source
        )


_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> SecurityLogger:
    """Process-wide SecurityLogger; arguments apply on first call only."""
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _security_logger


def reset_security_logger() -> None:
    """Forget the process-wide logger (tests)."""
    global _security_logger
    _security_logger = None
