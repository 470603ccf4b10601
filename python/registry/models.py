"""
SQLAlchemy ORM Models for the GN Registry

Tables:
1. jurisdictions - National / District / Divisional Secretariat / GN tree
2. users - Officer accounts; each account is a principal bound to one node
3. families - Households registered under a GN division
4. citizens - Family members
5. audit_logs - Append-only trail of state-changing actions

Column types are kept portable so the same models run on PostgreSQL in
production and SQLite in tests.
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Date, Text,
    ForeignKey, Index, UniqueConstraint, Enum, event
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from registry.errors import AuditImmutableError

# Base class for all models
Base = declarative_base()


# ============================================
# ENUMS
# ============================================

class JurisdictionLevel(str, PyEnum):
    """Tier of a jurisdiction node, root first."""
    NATIONAL = "national"
    DISTRICT = "district"
    DIVISION = "division"
    GN = "gn"

    @property
    def depth(self) -> int:
        return LEVEL_ORDER.index(self)

    @property
    def child_level(self) -> Optional['JurisdictionLevel']:
        if self is JurisdictionLevel.GN:
            return None
        return LEVEL_ORDER[self.depth + 1]

    @property
    def parent_level(self) -> Optional['JurisdictionLevel']:
        if self is JurisdictionLevel.NATIONAL:
            return None
        return LEVEL_ORDER[self.depth - 1]


LEVEL_ORDER = [
    JurisdictionLevel.NATIONAL,
    JurisdictionLevel.DISTRICT,
    JurisdictionLevel.DIVISION,
    JurisdictionLevel.GN,
]


class Role(str, PyEnum):
    """Officer role; each role sits at exactly one jurisdiction level."""
    MOHA = "moha"
    DISTRICT = "district"
    DIVISION = "division"
    GN = "gn"

    @property
    def level(self) -> JurisdictionLevel:
        return ROLE_LEVELS[self]


ROLE_LEVELS = {
    Role.MOHA: JurisdictionLevel.NATIONAL,
    Role.DISTRICT: JurisdictionLevel.DISTRICT,
    Role.DIVISION: JurisdictionLevel.DIVISION,
    Role.GN: JurisdictionLevel.GN,
}


class AuditActionType(str, PyEnum):
    """Action types written by the core. Other writers may use free text."""
    LOGIN = "login"
    LOGOUT = "logout"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    PASSWORD_RESET = "password_reset"
    AUDIT_DELETE = "audit_delete"
    AUDIT_PURGE = "audit_purge"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# JURISDICTION TREE
# ============================================

class JurisdictionNode(Base, TimestampMixin):
    """
    One office in the four-tier hierarchy.

    Every non-national node has exactly one parent exactly one level above
    it. Office codes are unique within a level only.
    """
    __tablename__ = "jurisdictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    level: Mapped[JurisdictionLevel] = mapped_column(
        Enum(JurisdictionLevel, values_callable=lambda e: [m.value for m in e],
             name="jurisdiction_level"),
        nullable=False,
        index=True
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("jurisdictions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    office_code: Mapped[str] = mapped_column(String(50), nullable=False)
    office_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    parent: Mapped[Optional["JurisdictionNode"]] = relationship(
        "JurisdictionNode",
        remote_side="JurisdictionNode.id",
        back_populates="children"
    )
    children: Mapped[List["JurisdictionNode"]] = relationship(
        "JurisdictionNode",
        back_populates="parent"
    )
    families: Mapped[List["Family"]] = relationship(
        "Family",
        back_populates="gn"
    )

    __table_args__ = (
        UniqueConstraint('level', 'office_code', name='uq_jurisdiction_level_code'),
        Index('ix_jurisdiction_parent_level', 'parent_id', 'level'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'level': self.level.value,
            'parent_id': self.parent_id,
            'office_code': self.office_code,
            'office_name': self.office_name,
            'is_active': self.is_active,
        }

    def __repr__(self) -> str:
        return f"<JurisdictionNode(id={self.id}, level={self.level.value}, code='{self.office_code}')>"


# ============================================
# PRINCIPALS
# ============================================

class User(Base, TimestampMixin):
    """
    Officer account.

    The role fixes the level of the home jurisdiction. MOHA accounts have
    no home jurisdiction and implicitly sit at the national root.
    """
    __tablename__ = "users"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, values_callable=lambda e: [m.value for m in e], name="user_role"),
        nullable=False,
        index=True
    )
    jurisdiction_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("jurisdictions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    jurisdiction: Mapped[Optional["JurisdictionNode"]] = relationship("JurisdictionNode")

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'username': self.username,
            'role': self.role.value,
            'jurisdiction_id': self.jurisdiction_id,
            'email': self.email,
            'phone': self.phone,
            'is_active': self.is_active,
        }

    def __repr__(self) -> str:
        return f"<User(id={self.user_id}, username='{self.username}', role={self.role.value})>"


# ============================================
# FAMILIES AND CITIZENS
# ============================================

class Family(Base, TimestampMixin):
    """
    Household registered under a GN division.

    member_count is a cache of the live citizen count. Statistics never
    read it; see FamilyRepository.refresh_member_count.
    """
    __tablename__ = "families"

    family_id: Mapped[str] = mapped_column(String(30), primary_key=True)
    gn_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("jurisdictions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_transferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_pending_transfer: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )

    gn: Mapped["JurisdictionNode"] = relationship("JurisdictionNode", back_populates="families")
    citizens: Mapped[List["Citizen"]] = relationship(
        "Citizen",
        back_populates="family",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index('ix_family_gn_created', 'gn_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            'family_id': self.family_id,
            'gn_id': self.gn_id,
            'address': self.address,
            'member_count': self.member_count,
            'is_transferred': self.is_transferred,
            'has_pending_transfer': self.has_pending_transfer,
        }

    def __repr__(self) -> str:
        return f"<Family(id='{self.family_id}', gn_id={self.gn_id})>"


class Citizen(Base, TimestampMixin):
    """Member of exactly one family."""
    __tablename__ = "citizens"

    citizen_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    family_id: Mapped[str] = mapped_column(
        String(30),
        ForeignKey("families.family_id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    name_with_initials: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    identification_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    gender: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    relation_to_head: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    mobile_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    is_alive: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    family: Mapped["Family"] = relationship("Family", back_populates="citizens")

    __table_args__ = (
        Index('ix_citizen_family_alive', 'family_id', 'is_alive'),
    )

    def __repr__(self) -> str:
        return f"<Citizen(id={self.citizen_id}, family_id='{self.family_id}')>"


# ============================================
# AUDIT TRAIL
# ============================================

class AuditLog(Base):
    """
    Append-only audit trail.

    Rows are inserted once and never updated. Deletion happens only through
    AuditRepository.delete / purge_older_than, which are themselves audited.
    """
    __tablename__ = "audit_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # System actions carry no user
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    table_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    record_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Serialized snapshots, opaque to the recorder
    old_values: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_values: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )

    __table_args__ = (
        Index('ix_audit_created_action', 'created_at', 'action_type'),
        Index('ix_audit_table_record', 'table_name', 'record_id'),
        Index('ix_audit_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.log_id}, action='{self.action_type}', table='{self.table_name}')>"


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"Audit record {target.log_id} is immutable")
