"""
Access Scope Resolver

Derives the set of jurisdictions a principal may query from a snapshot of
the jurisdiction tree:

    moha      -> entire tree
    district  -> home district + descendant divisions and GNs
    division  -> home division + descendant GNs
    gn        -> home GN only

A jurisdiction requested by the client is always intersected with the
resolved scope, never substituted for it.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from registry.errors import AccessDenied, EntityNotFoundError, InvalidHierarchyError
from registry.models import JurisdictionLevel, JurisdictionNode, Role, User
from registry.monitoring import query_timer
from security_logger import get_security_logger

logger = logging.getLogger(__name__)


# ============================================
# PRINCIPAL
# ============================================

@dataclass(frozen=True)
class Principal:
    """Authenticated actor a request runs on behalf of."""
    user_id: int
    role: Role
    home_jurisdiction_id: Optional[int] = None
    username: str = ""
    is_active: bool = True

    @classmethod
    def from_user(cls, user: User) -> 'Principal':
        return cls(
            user_id=user.user_id,
            role=user.role,
            home_jurisdiction_id=user.jurisdiction_id,
            username=user.username,
            is_active=user.is_active,
        )

    @property
    def level(self) -> JurisdictionLevel:
        return self.role.level


# ============================================
# TREE SNAPSHOT
# ============================================

@dataclass(frozen=True)
class TreeNode:
    id: int
    level: JurisdictionLevel
    parent_id: Optional[int]
    office_code: str = ""
    office_name: str = ""
    is_active: bool = True


class JurisdictionTree:
    """
    Immutable in-memory snapshot of the jurisdiction hierarchy.

    Built once per request; every scope and rollup computation in that
    request reads the same snapshot.
    """

    def __init__(self, nodes: Iterable[TreeNode]):
        self._nodes: Dict[int, TreeNode] = {}
        self._children: Dict[Optional[int], List[int]] = defaultdict(list)

        for node in nodes:
            self._nodes[node.id] = node
            self._children[node.parent_id].append(node.id)

        for child_ids in self._children.values():
            child_ids.sort()

        for problem in self.validate():
            logger.warning(f"Jurisdiction tree inconsistency: {problem}")

    @classmethod
    def load(cls, session: Session) -> 'JurisdictionTree':
        """Load the full tree from storage."""
        stmt = select(
            JurisdictionNode.id,
            JurisdictionNode.level,
            JurisdictionNode.parent_id,
            JurisdictionNode.office_code,
            JurisdictionNode.office_name,
            JurisdictionNode.is_active,
        )
        with query_timer("jurisdictions.tree"):
            rows = session.execute(stmt).all()
        return cls(
            TreeNode(
                id=row.id,
                level=JurisdictionLevel(row.level),
                parent_id=row.parent_id,
                office_code=row.office_code,
                office_name=row.office_name,
                is_active=row.is_active,
            )
            for row in rows
        )

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, node_id: int) -> TreeNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise EntityNotFoundError(f"Jurisdiction {node_id} not found")

    def get(self, node_id: Optional[int]) -> Optional[TreeNode]:
        return self._nodes.get(node_id)

    @property
    def all_ids(self) -> FrozenSet[int]:
        return frozenset(self._nodes)

    @property
    def root(self) -> Optional[TreeNode]:
        roots = self.nodes_at_level(JurisdictionLevel.NATIONAL)
        return roots[0] if roots else None

    def nodes_at_level(self, level: JurisdictionLevel) -> List[TreeNode]:
        return sorted(
            (n for n in self._nodes.values() if n.level == level),
            key=lambda n: n.id
        )

    def children(self, node_id: int) -> List[TreeNode]:
        return [self._nodes[c] for c in self._children.get(node_id, [])]

    def descendants(self, node_id: int, include_self: bool = True) -> FrozenSet[int]:
        """All node ids in the subtree rooted at node_id."""
        if node_id not in self._nodes:
            return frozenset()

        found = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._children.get(current, []))

        if not include_self:
            found.discard(node_id)
        return frozenset(found)

    def gn_descendants(self, node_id: int) -> FrozenSet[int]:
        """GN-level node ids at or below node_id."""
        return frozenset(
            n for n in self.descendants(node_id)
            if self._nodes[n].level == JurisdictionLevel.GN
        )

    def ancestors(self, node_id: int) -> List[TreeNode]:
        """Path from the root down to node_id, inclusive (breadcrumb order)."""
        path = []
        seen = set()
        current = self._nodes.get(node_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            path.append(current)
            current = self._nodes.get(current.parent_id)
        path.reverse()
        return path

    def validate(self) -> List[str]:
        """
        Check the no-skipped-level invariant.

        Returns:
            Human readable description of each violation (empty if valid)
        """
        problems = []
        for node in self._nodes.values():
            if node.level == JurisdictionLevel.NATIONAL:
                if node.parent_id is not None:
                    problems.append(f"national node {node.id} has a parent")
                continue

            parent = self._nodes.get(node.parent_id)
            if parent is None:
                problems.append(f"{node.level.value} node {node.id} has no parent in tree")
            elif parent.level != node.level.parent_level:
                problems.append(
                    f"{node.level.value} node {node.id} sits under "
                    f"{parent.level.value} node {parent.id}"
                )
        return problems

    def check_placement(self, level: JurisdictionLevel, parent_id: Optional[int]) -> None:
        """
        Raise InvalidHierarchyError unless a node of ``level`` may be created
        under ``parent_id``.
        """
        if level == JurisdictionLevel.NATIONAL:
            if parent_id is not None:
                raise InvalidHierarchyError("National node cannot have a parent")
            return

        parent = self._nodes.get(parent_id)
        if parent is None:
            raise InvalidHierarchyError(f"Parent jurisdiction {parent_id} does not exist")
        if parent.level != level.parent_level:
            raise InvalidHierarchyError(
                f"A {level.value} node must sit under a {level.parent_level.value} node, "
                f"not {parent.level.value}"
            )


# ============================================
# SCOPE
# ============================================

class ScopeKind:
    """Which id set a query shape's scope column is compared against."""
    GN = "gn"
    NODE = "node"


@dataclass(frozen=True)
class Scope:
    """Closed set of jurisdictions a principal may query."""
    principal: Principal
    home_id: Optional[int]
    jurisdiction_ids: FrozenSet[int] = field(default_factory=frozenset)
    gn_ids: FrozenSet[int] = field(default_factory=frozenset)
    unrestricted: bool = False

    def contains(self, node_id: Optional[int]) -> bool:
        return node_id in self.jurisdiction_ids

    def ids_for(self, kind: str) -> FrozenSet[int]:
        return self.gn_ids if kind == ScopeKind.GN else self.jurisdiction_ids


class ScopeResolver:
    """
    Resolves principals to scopes against one tree snapshot.

    Usage:
        resolver = ScopeResolver(JurisdictionTree.load(session))
        scope = resolver.resolve(principal)
        gn_ids = resolver.restrict(scope, requested_jurisdiction_id)
    """

    def __init__(self, tree: JurisdictionTree):
        self.tree = tree

    def _deny(self, message: str, principal: Principal, reason: str, requested: str = "") -> AccessDenied:
        get_security_logger().log_access_denied(
            reason=reason,
            user_id=principal.user_id,
            requested=requested,
            source="ScopeResolver",
            additional_context={"role": principal.role.value}
        )
        return AccessDenied(message, user_id=principal.user_id)

    def resolve(self, principal: Principal) -> Scope:
        """
        Resolve the principal's scope.

        Raises:
            AccessDenied: inactive account, home jurisdiction missing from the
                tree, or home jurisdiction at the wrong level for the role
        """
        if not principal.is_active:
            raise self._deny("Account is disabled", principal, "ACCOUNT_DISABLED")

        if principal.role == Role.MOHA:
            root = self.tree.root
            return Scope(
                principal=principal,
                home_id=root.id if root else None,
                jurisdiction_ids=self.tree.all_ids,
                gn_ids=frozenset(n.id for n in self.tree.nodes_at_level(JurisdictionLevel.GN)),
                unrestricted=True,
            )

        home = self.tree.get(principal.home_jurisdiction_id)
        if home is None:
            logger.warning(
                f"User {principal.user_id} home jurisdiction "
                f"{principal.home_jurisdiction_id} not found"
            )
            raise self._deny("Home jurisdiction could not be resolved", principal, "SCOPE_UNRESOLVED")

        if home.level != principal.level:
            raise self._deny(
                f"Role {principal.role.value} cannot be bound to a {home.level.value} jurisdiction",
                principal,
                "ROLE_MISMATCH"
            )

        return Scope(
            principal=principal,
            home_id=home.id,
            jurisdiction_ids=self.tree.descendants(home.id),
            gn_ids=self.tree.gn_descendants(home.id),
        )

    def restrict(
        self,
        scope: Scope,
        requested_id: Optional[int] = None,
        kind: str = ScopeKind.GN
    ) -> FrozenSet[int]:
        """
        Intersect a client-requested jurisdiction with the scope.

        Args:
            scope: Resolved scope
            requested_id: Jurisdiction requested by the client, or None
            kind: ScopeKind.GN for GN ids, ScopeKind.NODE for all node ids

        Returns:
            Ids visible for the request; may be empty

        Raises:
            AccessDenied: requested jurisdiction lies outside the scope
        """
        allowed = scope.ids_for(kind)
        if requested_id is None:
            return allowed

        if not scope.contains(requested_id):
            raise self._deny(
                f"Jurisdiction {requested_id} is outside your scope",
                scope.principal,
                "OUT_OF_SCOPE",
                requested=str(requested_id)
            )

        if kind == ScopeKind.GN:
            requested = self.tree.gn_descendants(requested_id)
        else:
            requested = self.tree.descendants(requested_id)
        return requested & allowed

    def can_manage(self, scope: Scope, node_id: Optional[int]) -> bool:
        """
        True if the principal may administer the node: it must lie inside the
        scope at a level strictly below the principal's own.
        """
        node = self.tree.get(node_id)
        if node is None or not scope.contains(node_id):
            return False
        return node.level.depth > scope.principal.level.depth

    def require_manage(self, scope: Scope, node_id: Optional[int], action: str) -> None:
        """Raise AccessDenied unless can_manage() allows the action."""
        if not self.can_manage(scope, node_id):
            get_security_logger().log_unauthorized_action(
                action=action,
                user_id=scope.principal.user_id,
                target=str(node_id),
                source="ScopeResolver"
            )
            raise AccessDenied(
                f"Not permitted to {action} jurisdiction {node_id}",
                user_id=scope.principal.user_id
            )
