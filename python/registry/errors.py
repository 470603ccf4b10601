"""
Exception taxonomy for the jurisdiction registry core.

Callers only ever see AccessDenied, EntityNotFoundError and
QueryExecutionError. InvalidFilterValue and AuditWriteError are handled
inside the core (dropped and logged respectively).
"""

from typing import Optional


class RegistryError(Exception):
    """Base exception for registry errors."""
    pass


class AccessDenied(RegistryError):
    """Raised when a principal's scope cannot be resolved or a request
    targets jurisdictions entirely outside it."""

    def __init__(self, message: str, user_id: Optional[int] = None):
        super().__init__(message)
        self.user_id = user_id


class InvalidFilterValue(RegistryError):
    """Raised by filter coercion; the compiler treats it as an absent value."""
    pass


class QueryExecutionError(RegistryError):
    """Storage failure during a list query.

    The message is generic; the original exception is chained for logs.
    """

    def __init__(self, operation: str, message: str = "Query execution failed"):
        super().__init__(message)
        self.operation = operation


class AuditWriteError(RegistryError):
    """Audit insert failed. Logged to the operational channel, never raised
    out of the recorder."""
    pass


class EntityNotFoundError(RegistryError):
    """Raised when an entity is not found."""
    pass


class InvalidHierarchyError(RegistryError):
    """Raised when a jurisdiction node would break the tree invariants."""
    pass


class AuditImmutableError(RegistryError):
    """Raised when an audit record is modified in place."""
    pass


class DuplicateEntityError(RegistryError):
    """Raised when attempting to create a duplicate entity."""
    pass
