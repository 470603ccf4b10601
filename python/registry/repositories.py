"""
Repository Pattern for GN Registry Database Operations

Entity repositories for the registry tables plus the declared list views
(query shapes) the Paginated Query Executor runs.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Iterable

from sqlalchemy import select, func, case, delete, update, and_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from registry.errors import DuplicateEntityError, EntityNotFoundError
from registry.filters import (
    BindType, ChoiceField, FilterCompiler, FilterField, Operator, SearchField
)
from registry.models import (
    AuditLog,
    Citizen,
    Family,
    JurisdictionLevel,
    JurisdictionNode,
    Role,
    User,
)
from registry.monitoring import query_timer, timed_query
from registry.pagination import Join, QueryShape
from registry.scope import JurisdictionTree, ScopeKind

logger = logging.getLogger(__name__)


# ============================================
# LIST VIEWS
# ============================================

AUDIT_LOG_SHAPE = QueryShape(
    name="audit_logs",
    select=(
        "al.log_id, al.user_id, al.action_type, al.table_name, al.record_id, "
        "al.old_values, al.new_values, al.ip_address, al.user_agent, al.created_at, "
        "u.username, u.role AS user_role, j.office_name"
    ),
    base_from="audit_logs al",
    joins=(
        Join("u", "LEFT JOIN users u ON u.user_id = al.user_id"),
        Join("j", "LEFT JOIN jurisdictions j ON j.id = u.jurisdiction_id", depends=("u",)),
    ),
    select_joins=("u", "j"),
    filters=FilterCompiler([
        FilterField("start_date", "al.created_at", Operator.DATE_FROM, BindType.DATETIME),
        FilterField("end_date", "al.created_at", Operator.DATE_TO, BindType.DATETIME),
        FilterField("user_id", "al.user_id", Operator.EQ, BindType.INTEGER),
        FilterField("action_type", "al.action_type"),
        FilterField("table_name", "al.table_name"),
        FilterField("ip_address", "al.ip_address", Operator.CONTAINS),
        SearchField(
            "search",
            ("al.action_type", "al.table_name", "al.record_id", "u.username", "j.office_name"),
            requires=("u", "j"),
        ),
    ]),
    sort_columns={
        "created_at": "al.created_at",
        "action_type": "al.action_type",
        "table_name": "al.table_name",
        "username": "u.username",
        "log_id": "al.log_id",
    },
    default_sort="created_at",
    key_column="al.log_id",
    jurisdiction_param=None,
)

FAMILY_SHAPE = QueryShape(
    name="families",
    select=(
        "f.family_id, f.gn_id, f.address, f.member_count, f.is_transferred, "
        "f.has_pending_transfer, f.created_at, g.office_code AS gn_code, g.office_name AS gn_name"
    ),
    base_from="families f",
    joins=(
        Join("g", "JOIN jurisdictions g ON g.id = f.gn_id"),
    ),
    select_joins=("g",),
    filters=FilterCompiler([
        SearchField("search", ("f.family_id", "f.address")),
        ChoiceField("status", {
            "transferred": (("f.is_transferred", True, BindType.BOOLEAN),),
            "pending": (("f.has_pending_transfer", True, BindType.BOOLEAN),),
            "active": (
                ("f.is_transferred", False, BindType.BOOLEAN),
                ("f.has_pending_transfer", False, BindType.BOOLEAN),
            ),
        }),
        FilterField("created_from", "f.created_at", Operator.DATE_FROM, BindType.DATETIME),
        FilterField("created_to", "f.created_at", Operator.DATE_TO, BindType.DATETIME),
    ]),
    sort_columns={
        "created_at": "f.created_at",
        "family_id": "f.family_id",
        "member_count": "f.member_count",
        "gn_name": "g.office_name",
    },
    default_sort="created_at",
    key_column="f.family_id",
    scope_column="f.gn_id",
    scope_kind=ScopeKind.GN,
)

CITIZEN_SHAPE = QueryShape(
    name="citizens",
    select=(
        "c.citizen_id, c.family_id, c.full_name, c.name_with_initials, "
        "c.identification_number, c.gender, c.date_of_birth, c.relation_to_head, "
        "c.is_alive, f.gn_id, g.office_name AS gn_name"
    ),
    base_from="citizens c",
    joins=(
        Join("f", "JOIN families f ON f.family_id = c.family_id"),
        Join("g", "JOIN jurisdictions g ON g.id = f.gn_id", depends=("f",)),
    ),
    select_joins=("f", "g"),
    filters=FilterCompiler([
        SearchField("search", ("c.full_name", "c.name_with_initials", "c.identification_number")),
        FilterField("family_id", "c.family_id"),
        FilterField("gender", "c.gender", choices=("male", "female", "other")),
        FilterField("is_alive", "c.is_alive", bind_type=BindType.BOOLEAN),
    ]),
    sort_columns={
        "full_name": "c.full_name",
        "citizen_id": "c.citizen_id",
        "date_of_birth": "c.date_of_birth",
        "family_id": "c.family_id",
    },
    default_sort="full_name",
    default_direction="asc",
    key_column="c.citizen_id",
    scope_column="f.gn_id",
    scope_kind=ScopeKind.GN,
    scope_requires=("f",),
)

USER_SHAPE = QueryShape(
    name="users",
    select=(
        "u.user_id, u.username, u.role, u.jurisdiction_id, u.email, u.phone, "
        "u.is_active, u.last_login, u.created_at, "
        "j.office_code, j.office_name, j.level AS jurisdiction_level"
    ),
    base_from="users u",
    joins=(
        Join("j", "LEFT JOIN jurisdictions j ON j.id = u.jurisdiction_id"),
    ),
    select_joins=("j",),
    filters=FilterCompiler([
        SearchField("search", ("u.username", "u.email", "j.office_name"), requires=("j",)),
        FilterField("role", "u.role", choices=tuple(r.value for r in Role)),
        FilterField("is_active", "u.is_active", bind_type=BindType.BOOLEAN),
    ]),
    sort_columns={
        "username": "u.username",
        "role": "u.role",
        "created_at": "u.created_at",
        "last_login": "u.last_login",
    },
    default_sort="username",
    default_direction="asc",
    key_column="u.user_id",
    scope_column="u.jurisdiction_id",
    scope_kind=ScopeKind.NODE,
)


# ============================================
# JURISDICTION REPOSITORY
# ============================================

class JurisdictionRepository:
    """Repository for jurisdiction tree nodes."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, node_id: int) -> JurisdictionNode:
        node = self.session.get(JurisdictionNode, node_id)
        if node is None:
            raise EntityNotFoundError(f"Jurisdiction {node_id} not found")
        return node

    def load_tree(self) -> JurisdictionTree:
        return JurisdictionTree.load(self.session)

    def create(
        self,
        level: JurisdictionLevel,
        office_code: str,
        office_name: str,
        parent_id: Optional[int] = None,
        tree: Optional[JurisdictionTree] = None
    ) -> JurisdictionNode:
        """
        Create a node after checking it keeps the tree valid.

        Raises:
            InvalidHierarchyError: parent missing or at the wrong level
            DuplicateEntityError: office code already used at this level
        """
        if tree is None:
            tree = JurisdictionTree.load(self.session)
        tree.check_placement(level, parent_id)

        node = JurisdictionNode(
            level=level,
            parent_id=parent_id,
            office_code=office_code,
            office_name=office_name,
        )
        try:
            self.session.add(node)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(
                f"{level.value} office code {office_code!r} already exists"
            ) from e

        logger.debug(f"Created jurisdiction: {node.id} ({level.value} {office_code})")
        return node

    def set_active(self, node_id: int, is_active: bool) -> JurisdictionNode:
        node = self.get(node_id)
        node.is_active = is_active
        self.session.flush()
        return node

    def update_office(self, node_id: int, office_name: str) -> JurisdictionNode:
        node = self.get(node_id)
        node.office_name = office_name
        self.session.flush()
        return node


# ============================================
# USER REPOSITORY
# ============================================

class UserRepository:
    """Repository for officer accounts."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise EntityNotFoundError(f"User {user_id} not found")
        return user

    def get_by_username(self, username: str) -> Optional[User]:
        return self.session.execute(
            select(User).where(User.username == username)
        ).scalar_one_or_none()

    def create(
        self,
        username: str,
        role: Role,
        jurisdiction_id: Optional[int] = None,
        email: Optional[str] = None
    ) -> User:
        user = User(username=username, role=role, jurisdiction_id=jurisdiction_id, email=email)
        try:
            self.session.add(user)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Username {username!r} already exists") from e
        return user

    def set_active(self, user_id: int, is_active: bool) -> User:
        user = self.get(user_id)
        user.is_active = is_active
        self.session.flush()
        return user


# ============================================
# FAMILY / CITIZEN REPOSITORIES
# ============================================

def _live_member_count():
    return (
        select(func.count(Citizen.citizen_id))
        .where(and_(Citizen.family_id == Family.family_id, Citizen.is_alive.is_(True)))
        .scalar_subquery()
    )


class FamilyRepository:
    """Repository for families."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, family_id: str) -> Family:
        family = self.session.get(Family, family_id)
        if family is None:
            raise EntityNotFoundError(f"Family {family_id} not found")
        return family

    def live_member_count(self, family_id: str) -> int:
        return self.session.execute(
            select(func.count(Citizen.citizen_id)).where(
                Citizen.family_id == family_id,
                Citizen.is_alive.is_(True)
            )
        ).scalar() or 0

    def refresh_member_count(
        self,
        family_id: Optional[str] = None,
        gn_ids: Optional[Iterable[int]] = None
    ) -> int:
        """
        Rewrite the cached member_count from the live citizen count.

        Args:
            family_id: Refresh one family
            gn_ids: Refresh every family in these GN divisions

        Returns:
            Number of families whose cached count was wrong
        """
        stale = Family.member_count != _live_member_count()
        stmt = update(Family).values(member_count=_live_member_count()).where(stale)
        if family_id is not None:
            stmt = stmt.where(Family.family_id == family_id)
        if gn_ids is not None:
            stmt = stmt.where(Family.gn_id.in_(sorted(set(gn_ids))))

        with query_timer("families.refresh_member_count"):
            result = self.session.execute(stmt.execution_options(synchronize_session=False))

        if result.rowcount:
            logger.info(f"Corrected member_count on {result.rowcount} families")
        return result.rowcount


class CitizenRepository:
    """Repository for citizens."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, citizen_id: int) -> Citizen:
        citizen = self.session.get(Citizen, citizen_id)
        if citizen is None:
            raise EntityNotFoundError(f"Citizen {citizen_id} not found")
        return citizen

    def list_for_family(self, family_id: str, include_deceased: bool = False) -> List[Citizen]:
        query = select(Citizen).where(Citizen.family_id == family_id)
        if not include_deceased:
            query = query.where(Citizen.is_alive.is_(True))
        return list(self.session.execute(query.order_by(Citizen.citizen_id)).scalars())


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """
    Read and privileged-delete access to audit_logs.

    Inserts go through registry.audit.AuditRecorder only.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, log_id: int) -> AuditLog:
        log = self.session.get(AuditLog, log_id)
        if log is None:
            raise EntityNotFoundError(f"Audit log {log_id} not found")
        return log

    def snapshot(self, log: AuditLog) -> Dict[str, Any]:
        return {
            'log_id': log.log_id,
            'user_id': log.user_id,
            'action_type': log.action_type,
            'table_name': log.table_name,
            'record_id': log.record_id,
            'ip_address': log.ip_address,
            'created_at': log.created_at.isoformat() if log.created_at else None,
        }

    def activity_summary(
        self,
        now: Optional[datetime] = None,
        recent_days: int = 7,
        window_days: int = 30,
        top_n: int = 10
    ) -> Dict[str, Any]:
        """
        Counts for the audit dashboard.

        Args:
            now: Reference time (defaults to current time)
            recent_days: Size of the recent activity window
            window_days: Window for the per-action-type breakdown
            top_n: Number of action types to return

        Returns:
            Dictionary with today, yesterday, week, month, recent and
            by_action_type
        """
        now = now or datetime.now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday_start = today_start - timedelta(days=1)
        week_start = now - timedelta(days=7)
        month_start = now - timedelta(days=30)
        recent_start = now - timedelta(days=recent_days)
        window_start = now - timedelta(days=window_days)

        created = AuditLog.created_at

        def in_range(start, end=None):
            condition = created >= start if end is None else and_(created >= start, created < end)
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        totals_stmt = select(
            in_range(today_start).label("today"),
            in_range(yesterday_start, today_start).label("yesterday"),
            in_range(week_start).label("week"),
            in_range(month_start).label("month"),
            in_range(recent_start).label("recent"),
        )
        by_type_stmt = (
            select(AuditLog.action_type, func.count().label("count"))
            .where(created >= window_start)
            .group_by(AuditLog.action_type)
            .order_by(func.count().desc(), AuditLog.action_type)
            .limit(top_n)
        )

        with query_timer("audit_logs.summary"):
            totals = self.session.execute(totals_stmt).one()
            by_type = self.session.execute(by_type_stmt).all()

        return {
            'today': int(totals.today),
            'yesterday': int(totals.yesterday),
            'week': int(totals.week),
            'month': int(totals.month),
            'recent': int(totals.recent),
            'recent_days': recent_days,
            'by_action_type': [
                {'action_type': row.action_type, 'count': row.count} for row in by_type
            ],
        }

    @timed_query("audit_logs.action_types")
    def action_types(self) -> List[str]:
        """Distinct action types, for filter dropdowns."""
        return list(self.session.execute(
            select(AuditLog.action_type).distinct().order_by(AuditLog.action_type)
        ).scalars())

    def recent_actors(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Users with the most recent audit activity."""
        last_seen = func.max(AuditLog.created_at).label("last_seen")
        stmt = (
            select(User.user_id, User.username, User.role, last_seen)
            .join(AuditLog, AuditLog.user_id == User.user_id)
            .group_by(User.user_id, User.username, User.role)
            .order_by(last_seen.desc())
            .limit(limit)
        )
        return [
            {
                'user_id': row.user_id,
                'username': row.username,
                'role': Role(row.role).value,
                'last_seen': row.last_seen,
            }
            for row in self.session.execute(stmt)
        ]

    def delete(self, log_id: int) -> Dict[str, Any]:
        """
        Delete one audit record.

        Returns:
            Snapshot of the deleted record

        Raises:
            EntityNotFoundError: no such record
        """
        log = self.get(log_id)
        snapshot = self.snapshot(log)
        self.session.expunge(log)
        self.session.execute(delete(AuditLog).where(AuditLog.log_id == log_id))
        return snapshot

    def purge_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """
        Delete audit records older than ``days`` days.

        Returns:
            Number of records deleted
        """
        cutoff = (now or datetime.now()) - timedelta(days=days)
        with query_timer("audit_logs.purge"):
            result = self.session.execute(
                delete(AuditLog)
                .where(AuditLog.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Purged {result.rowcount} audit records older than {days} days")
        return result.rowcount
