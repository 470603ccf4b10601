"""
Registry Package for the GN Citizen/Family Registry

This package provides:
- SQLAlchemy ORM models for the jurisdiction tree, accounts, families,
  citizens and the audit trail
- Access scope resolution over the jurisdiction hierarchy
- Parameterized filter compilation and paginated list queries
- Jurisdiction statistics rollups
- Best-effort audit recording for administrative mutations
"""

from registry.models import (
    Base,
    JurisdictionLevel,
    Role,
    AuditActionType,
    JurisdictionNode,
    User,
    Family,
    Citizen,
    AuditLog,
)
from registry.errors import (
    RegistryError,
    AccessDenied,
    InvalidFilterValue,
    QueryExecutionError,
    AuditWriteError,
    EntityNotFoundError,
    InvalidHierarchyError,
    AuditImmutableError,
    DuplicateEntityError,
)
from registry.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    get_db,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from registry.scope import JurisdictionTree, Principal, Scope, ScopeResolver
from registry.filters import FilterCompiler, PredicateBuilder, CompiledFilter
from registry.aggregation import AggregationEngine, StatisticsRecord, Demographics
from registry.pagination import (
    Page,
    PageRequest,
    PaginatedQueryExecutor,
    QueryShape,
    page_link,
    remove_filter_link,
)
from registry.audit import AuditRecorder, AuditEntry, MutationResult, audited
from registry.services import (
    RequestContext,
    RegistryQueryService,
    AdministrationService,
)

__all__ = [
    # Models
    'Base',
    'JurisdictionLevel',
    'Role',
    'AuditActionType',
    'JurisdictionNode',
    'User',
    'Family',
    'Citizen',
    'AuditLog',
    # Errors
    'RegistryError',
    'AccessDenied',
    'InvalidFilterValue',
    'QueryExecutionError',
    'AuditWriteError',
    'EntityNotFoundError',
    'InvalidHierarchyError',
    'AuditImmutableError',
    'DuplicateEntityError',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'get_db',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Core
    'JurisdictionTree',
    'Principal',
    'Scope',
    'ScopeResolver',
    'FilterCompiler',
    'PredicateBuilder',
    'CompiledFilter',
    'AggregationEngine',
    'StatisticsRecord',
    'Demographics',
    'Page',
    'PageRequest',
    'PaginatedQueryExecutor',
    'QueryShape',
    'page_link',
    'remove_filter_link',
    'AuditRecorder',
    'AuditEntry',
    'MutationResult',
    'audited',
    # Services
    'RequestContext',
    'RegistryQueryService',
    'AdministrationService',
]
