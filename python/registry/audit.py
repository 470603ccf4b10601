"""
Audit Recorder

Appends one immutable audit_logs row per state-changing action.

The recorder writes through its own session, after the business
transaction has committed, as a single INSERT. A failed write is logged to
the ``registry.audit.ops`` channel and swallowed: audit logging never rolls
back or fails the mutation it describes.
"""

import json
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from log_utils import sanitize_for_logging
from registry.errors import AuditWriteError
from registry.models import AuditLog
from registry.monitoring import record_audit_failure

logger = logging.getLogger(__name__)

# Operational channel for audit write failures
ops_logger = logging.getLogger("registry.audit.ops")

MAX_USER_AGENT_LENGTH = 500


def serialize_values(values: Any) -> Optional[str]:
    """Serialize a snapshot for old_values/new_values."""
    if values is None:
        return None
    if isinstance(values, str):
        return values
    return json.dumps(values, default=str, sort_keys=True, ensure_ascii=False)


@dataclass(frozen=True)
class AuditEntry:
    """One action to be recorded."""
    action_type: str
    table_name: Optional[str] = None
    record_id: Optional[str] = None
    old_values: Any = None
    new_values: Any = None
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_model(self) -> AuditLog:
        user_agent = self.user_agent
        if user_agent and len(user_agent) > MAX_USER_AGENT_LENGTH:
            user_agent = user_agent[:MAX_USER_AGENT_LENGTH]
        return AuditLog(
            user_id=self.user_id,
            action_type=self.action_type,
            table_name=self.table_name,
            record_id=None if self.record_id is None else str(self.record_id),
            old_values=serialize_values(self.old_values),
            new_values=serialize_values(self.new_values),
            ip_address=self.ip_address,
            user_agent=user_agent,
        )


class AuditRecorder:
    """
    Best-effort, insert-only audit writer.

    Usage:
        recorder = AuditRecorder(provider.session_factory)
        recorder.record(AuditEntry("status_change", "users", "42", old, new, user_id=1))
    """

    def __init__(self, session_factory: Callable[[], Session], enabled: bool = True):
        self._session_factory = session_factory
        self.enabled = enabled

    def record(self, entry: AuditEntry) -> Optional[int]:
        """
        Insert one audit record.

        Returns:
            New log_id, or None if recording is disabled or the write failed
        """
        if not self.enabled:
            return None

        session: Optional[Session] = None
        try:
            session = self._session_factory()
            log = entry.to_model()
            session.add(log)
            session.commit()
            return log.log_id
        except Exception as e:
            # the mutation being described has already committed
            if session is not None:
                try:
                    session.rollback()
                except SQLAlchemyError as rollback_error:
                    ops_logger.warning(f"Audit rollback failed: {rollback_error}")
            self._report(AuditWriteError(f"{type(e).__name__}: {e}"), entry)
            return None
        finally:
            if session is not None:
                session.close()

    def _report(self, error: AuditWriteError, entry: AuditEntry) -> None:
        record_audit_failure(entry.action_type)
        ops_logger.error(
            f"Audit write failed: action={sanitize_for_logging(entry.action_type)} "
            f"table={entry.table_name} record={sanitize_for_logging(entry.record_id)} "
            f"user={entry.user_id}: {error}"
        )


# ============================================
# DECORATOR
# ============================================

@dataclass
class MutationResult:
    """
    What an audited mutation reports back to the decorator.

    ``value`` is returned to the caller; ``changed=False`` skips the audit
    record for no-op calls.
    """
    record_id: Any
    old_values: Any = None
    new_values: Any = None
    value: Any = None
    changed: bool = True


def audited(action_type: str, table_name: Optional[str] = None):
    """
    Record an audit entry after a successful mutation.

    The wrapped method must commit its own transaction and return a
    MutationResult. It is called as ``method(self, ctx, ...)`` where ``self``
    has an ``audit_recorder`` and ``ctx`` carries ``user_id``,
    ``ip_address`` and ``user_agent``. If the method raises, nothing is
    recorded.

    Usage:
        @audited("status_change", "users")
        def toggle_user_status(self, ctx, user_id):
            ...
            return MutationResult(user_id, {"is_active": True}, {"is_active": False})
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, ctx, *args, **kwargs):
            result: MutationResult = func(self, ctx, *args, **kwargs)

            if result.changed:
                log_id = self.audit_recorder.record(AuditEntry(
                    action_type=action_type,
                    table_name=table_name,
                    record_id=result.record_id,
                    old_values=result.old_values,
                    new_values=result.new_values,
                    user_id=ctx.user_id,
                    ip_address=ctx.ip_address,
                    user_agent=ctx.user_agent,
                ))
                if log_id is not None:
                    logger.debug(f"Audit logged for {action_type} on {table_name}: {log_id}")

            return result.value
        return wrapper
    return decorator
