"""
Registry Services

Request-scoped entry points composing the core components:

- RegistryQueryService: list views, statistics, and the audit dashboard.
  Resolves the principal's scope once per request from one tree snapshot.
- AdministrationService: state-changing operations. Each mutation commits
  in its own unit of work and is then recorded by the Audit Recorder via
  the ``audited`` decorator.

Nothing here reads ambient request state; everything a call needs arrives
in the RequestContext.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from config_manager import AuditConfig, PaginationConfig, StatisticsConfig
from registry.aggregation import AggregationEngine, Demographics, StatisticsRecord
from registry.audit import AuditRecorder, MutationResult, audited
from registry.connection import DatabaseSessionProvider
from registry.errors import AccessDenied
from registry.models import AuditActionType, Role
from registry.pagination import Page, PageRequest, PaginatedQueryExecutor, QueryShape
from registry.repositories import (
    AUDIT_LOG_SHAPE,
    CITIZEN_SHAPE,
    FAMILY_SHAPE,
    USER_SHAPE,
    AuditRepository,
    FamilyRepository,
    JurisdictionRepository,
    UserRepository,
)
from registry.scope import JurisdictionTree, Principal, Scope, ScopeResolver, TreeNode
from security_logger import get_security_logger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, and from where."""
    principal: Principal
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: str = ""

    @property
    def user_id(self) -> int:
        return self.principal.user_id


def require_moha(ctx: RequestContext, action: str) -> None:
    """Only national (MOHA) accounts may read or delete the audit trail."""
    if ctx.principal.role != Role.MOHA:
        get_security_logger().log_unauthorized_action(
            action=action,
            user_id=ctx.user_id,
            target="audit_logs",
            source="require_moha"
        )
        raise AccessDenied(f"Only national accounts may {action}", user_id=ctx.user_id)


# ============================================
# READ SIDE
# ============================================

class RegistryQueryService:
    """
    Read operations for one request.

    Usage:
        service = RegistryQueryService(session)
        page = service.list_families(ctx, request.query_params)
    """

    def __init__(
        self,
        session: Session,
        pagination: Optional[PaginationConfig] = None,
        statistics: Optional[StatisticsConfig] = None,
        audit: Optional[AuditConfig] = None
    ):
        self.session = session
        self.pagination = pagination or PaginationConfig()
        self.statistics = statistics or StatisticsConfig()
        self.audit = audit or AuditConfig()
        self._tree: Optional[JurisdictionTree] = None
        self._resolver: Optional[ScopeResolver] = None

    @property
    def tree(self) -> JurisdictionTree:
        if self._tree is None:
            self._tree = JurisdictionTree.load(self.session)
        return self._tree

    @property
    def resolver(self) -> ScopeResolver:
        if self._resolver is None:
            self._resolver = ScopeResolver(self.tree)
        return self._resolver

    def resolve_scope(self, ctx: RequestContext) -> Scope:
        return self.resolver.resolve(ctx.principal)

    def page_request(self, params: Mapping[str, Any]) -> PageRequest:
        return PageRequest.from_params(
            params,
            allowed_sizes=self.pagination.allowed_page_sizes,
            default_size=self.pagination.default_page_size
        )

    def _list(self, ctx: RequestContext, shape: QueryShape, params: Mapping[str, Any]) -> Page:
        scope = self.resolve_scope(ctx)
        executor = PaginatedQueryExecutor(self.session, shape, self.resolver)
        return executor.execute(scope, params, self.page_request(params))

    def list_families(self, ctx: RequestContext, params: Mapping[str, Any]) -> Page:
        return self._list(ctx, FAMILY_SHAPE, params)

    def list_citizens(self, ctx: RequestContext, params: Mapping[str, Any]) -> Page:
        return self._list(ctx, CITIZEN_SHAPE, params)

    def list_users(self, ctx: RequestContext, params: Mapping[str, Any]) -> Page:
        return self._list(ctx, USER_SHAPE, params)

    def list_audit_logs(self, ctx: RequestContext, params: Mapping[str, Any]) -> Page:
        require_moha(ctx, "view audit logs")
        return self._list(ctx, AUDIT_LOG_SHAPE, params)

    def _visible_node(self, ctx: RequestContext, node_id: int) -> TreeNode:
        scope = self.resolve_scope(ctx)
        node = self.tree.node(node_id)
        if not scope.contains(node_id):
            get_security_logger().log_access_denied(
                reason="OUT_OF_SCOPE",
                user_id=ctx.user_id,
                requested=str(node_id),
                source="RegistryQueryService"
            )
            raise AccessDenied(f"Jurisdiction {node_id} is outside your scope", user_id=ctx.user_id)
        return node

    def statistics_for(self, ctx: RequestContext, node_id: int) -> StatisticsRecord:
        self._visible_node(ctx, node_id)
        return AggregationEngine(self.session, self.tree).stats(node_id)

    def breakdown_for(self, ctx: RequestContext, node_id: int) -> List[StatisticsRecord]:
        self._visible_node(ctx, node_id)
        return AggregationEngine(self.session, self.tree).breakdown(node_id)

    def demographics_for(self, ctx: RequestContext, node_id: int) -> Demographics:
        self._visible_node(ctx, node_id)
        return AggregationEngine(self.session, self.tree).demographics(node_id)

    def breadcrumbs(self, node_id: int) -> List[Dict[str, Any]]:
        return [
            {'id': n.id, 'level': n.level.value, 'office_name': n.office_name}
            for n in self.tree.ancestors(node_id)
        ]

    def audit_summary(self, ctx: RequestContext, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Audit dashboard: activity counts, action types, recent actors."""
        require_moha(ctx, "view audit logs")
        repo = AuditRepository(self.session)
        return {
            'activity': repo.activity_summary(
                now=now,
                recent_days=self.statistics.recent_activity_days,
                window_days=self.audit.recent_window_days
            ),
            'action_types': repo.action_types(),
            'recent_actors': repo.recent_actors(),
        }


# ============================================
# WRITE SIDE
# ============================================

class AdministrationService:
    """
    Audited administrative mutations.

    Usage:
        service = AdministrationService(provider, AuditRecorder(provider.session_factory))
        service.toggle_user_status(ctx, user_id=42)
    """

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        audit_recorder: AuditRecorder,
        audit: Optional[AuditConfig] = None
    ):
        self.provider = provider
        self.audit_recorder = audit_recorder
        self.audit = audit or AuditConfig()

    def _authorize(self, session: Session, ctx: RequestContext, node_id: Optional[int], action: str) -> None:
        resolver = ScopeResolver(JurisdictionTree.load(session))
        scope = resolver.resolve(ctx.principal)
        resolver.require_manage(scope, node_id, action)

    @audited(AuditActionType.STATUS_CHANGE.value, "users")
    def toggle_user_status(self, ctx: RequestContext, user_id: int) -> MutationResult:
        """
        Flip a user's is_active flag.

        The target account must sit below the actor inside the actor's scope.

        Returns:
            The new is_active value
        """
        with self.provider.get_unit_of_work() as uow:
            repo = UserRepository(uow.session)
            user = repo.get(user_id)
            self._authorize(uow.session, ctx, user.jurisdiction_id, "change status of user")

            old_status = user.is_active
            repo.set_active(user_id, not old_status)
            uow.commit()

        logger.info(f"User {user_id} is_active {old_status} -> {not old_status} by {ctx.user_id}")
        return MutationResult(
            record_id=user_id,
            old_values={'is_active': old_status},
            new_values={'is_active': not old_status},
            value=not old_status,
        )

    @audited(AuditActionType.STATUS_CHANGE.value, "jurisdictions")
    def toggle_jurisdiction_status(self, ctx: RequestContext, node_id: int) -> MutationResult:
        """Flip a jurisdiction's is_active flag. Returns the new value."""
        with self.provider.get_unit_of_work() as uow:
            self._authorize(uow.session, ctx, node_id, "change status of")
            repo = JurisdictionRepository(uow.session)
            node = repo.get(node_id)
            old_status = node.is_active
            repo.set_active(node_id, not old_status)
            uow.commit()

        return MutationResult(
            record_id=node_id,
            old_values={'is_active': old_status},
            new_values={'is_active': not old_status},
            value=not old_status,
        )

    @audited(AuditActionType.UPDATE.value, "jurisdictions")
    def update_jurisdiction_office(self, ctx: RequestContext, node_id: int, office_name: str) -> MutationResult:
        """Rename a jurisdiction's office. Returns the updated node as a dict."""
        office_name = (office_name or "").strip()
        if not office_name:
            raise ValueError("office_name must not be empty")

        with self.provider.get_unit_of_work() as uow:
            self._authorize(uow.session, ctx, node_id, "edit")
            repo = JurisdictionRepository(uow.session)
            old_name = repo.get(node_id).office_name
            node = repo.update_office(node_id, office_name)
            snapshot = node.to_dict()
            uow.commit()

        return MutationResult(
            record_id=node_id,
            old_values={'office_name': old_name},
            new_values={'office_name': office_name},
            value=snapshot,
            changed=old_name != office_name,
        )

    @audited(AuditActionType.AUDIT_DELETE.value, "audit_logs")
    def delete_audit_log(self, ctx: RequestContext, log_id: int) -> MutationResult:
        """Delete one audit record. Returns the deleted record's snapshot."""
        require_moha(ctx, "delete audit logs")
        with self.provider.get_unit_of_work() as uow:
            snapshot = AuditRepository(uow.session).delete(log_id)
            uow.commit()

        logger.warning(f"Audit log {log_id} deleted by user {ctx.user_id}")
        return MutationResult(record_id=log_id, old_values=snapshot, value=snapshot)

    @audited(AuditActionType.AUDIT_PURGE.value, "audit_logs")
    def purge_audit_logs(
        self,
        ctx: RequestContext,
        older_than_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> MutationResult:
        """
        Delete audit records older than the retention window.

        Returns:
            Number of records deleted
        """
        require_moha(ctx, "purge audit logs")
        days = older_than_days or self.audit.retention_days
        if days <= 0:
            raise ValueError("older_than_days must be positive")

        with self.provider.get_unit_of_work() as uow:
            deleted = AuditRepository(uow.session).purge_older_than(days, now=now)
            uow.commit()

        return MutationResult(
            record_id=None,
            new_values={'older_than_days': days, 'deleted': deleted},
            value=deleted,
            changed=deleted > 0,
        )

    def refresh_member_counts(self, ctx: RequestContext, node_id: Optional[int] = None) -> int:
        """Reconcile cached family member counts inside the caller's scope."""
        with self.provider.get_unit_of_work() as uow:
            resolver = ScopeResolver(JurisdictionTree.load(uow.session))
            scope = resolver.resolve(ctx.principal)
            gn_ids = resolver.restrict(scope, node_id)
            updated = FamilyRepository(uow.session).refresh_member_count(gn_ids=gn_ids)
            uow.commit()
        return updated
