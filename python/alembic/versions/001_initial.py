"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

This is the baseline migration that creates all tables for the GN registry:
the jurisdiction tree, accounts, families, citizens and the audit trail.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEVELS = ('national', 'district', 'division', 'gn')
ROLES = ('moha', 'district', 'division', 'gn')


def upgrade() -> None:
    """Create initial database schema."""

    jurisdiction_level = postgresql.ENUM(*LEVELS, name='jurisdiction_level', create_type=True)
    jurisdiction_level.create(op.get_bind(), checkfirst=True)

    user_role = postgresql.ENUM(*ROLES, name='user_role', create_type=True)
    user_role.create(op.get_bind(), checkfirst=True)

    # Jurisdiction tree
    op.create_table(
        'jurisdictions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('level', postgresql.ENUM(*LEVELS, name='jurisdiction_level', create_type=False),
                  nullable=False),
        sa.Column('parent_id', sa.Integer,
                  sa.ForeignKey('jurisdictions.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('office_code', sa.String(50), nullable=False),
        sa.Column('office_name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.UniqueConstraint('level', 'office_code', name='uq_jurisdiction_level_code'),
    )

    # Accounts
    op.create_table(
        'users',
        sa.Column('user_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(100), nullable=False, unique=True),
        sa.Column('role', postgresql.ENUM(*ROLES, name='user_role', create_type=False),
                  nullable=False),
        sa.Column('jurisdiction_id', sa.Integer,
                  sa.ForeignKey('jurisdictions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('email', sa.String(200)),
        sa.Column('phone', sa.String(30)),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        sa.Column('last_login', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )

    # Families belong to exactly one GN division
    op.create_table(
        'families',
        sa.Column('family_id', sa.String(30), primary_key=True),
        sa.Column('gn_id', sa.Integer,
                  sa.ForeignKey('jurisdictions.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('address', sa.Text),
        sa.Column('member_count', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('is_transferred', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('has_pending_transfer', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )

    op.create_table(
        'citizens',
        sa.Column('citizen_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('family_id', sa.String(30),
                  sa.ForeignKey('families.family_id', ondelete='CASCADE'), nullable=False),
        sa.Column('full_name', sa.String(300), nullable=False),
        sa.Column('name_with_initials', sa.String(200)),
        sa.Column('identification_number', sa.String(20)),
        sa.Column('gender', sa.String(10)),
        sa.Column('date_of_birth', sa.Date),
        sa.Column('relation_to_head', sa.String(30)),
        sa.Column('mobile_phone', sa.String(30)),
        sa.Column('is_alive', sa.Boolean, nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )

    # Insert-only audit trail
    op.create_table(
        'audit_logs',
        sa.Column('log_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer,
                  sa.ForeignKey('users.user_id', ondelete='SET NULL'), nullable=True),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('table_name', sa.String(100)),
        sa.Column('record_id', sa.String(100)),
        sa.Column('old_values', sa.Text),
        sa.Column('new_values', sa.Text),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.String(500)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    )

    # Indexes
    op.create_index('ix_jurisdictions_level', 'jurisdictions', ['level'])
    op.create_index('ix_jurisdictions_parent_id', 'jurisdictions', ['parent_id'])
    op.create_index('ix_jurisdiction_parent_level', 'jurisdictions', ['parent_id', 'level'])

    op.create_index('ix_users_jurisdiction_id', 'users', ['jurisdiction_id'])

    op.create_index('ix_families_gn_id', 'families', ['gn_id'])
    op.create_index('ix_families_has_pending_transfer', 'families', ['has_pending_transfer'])
    op.create_index('ix_family_gn_created', 'families', ['gn_id', 'created_at'])

    op.create_index('ix_citizens_family_id', 'citizens', ['family_id'])
    op.create_index('ix_citizens_identification_number', 'citizens', ['identification_number'])
    op.create_index('ix_citizen_family_alive', 'citizens', ['family_id', 'is_alive'])

    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action_type', 'audit_logs', ['action_type'])
    op.create_index('ix_audit_created_action', 'audit_logs', ['created_at', 'action_type'])
    op.create_index('ix_audit_table_record', 'audit_logs', ['table_name', 'record_id'])
    op.create_index('ix_audit_user_created', 'audit_logs', ['user_id', 'created_at'])

    # Audit rows are never edited in place
    op.execute("""
        CREATE OR REPLACE FUNCTION audit_logs_reject_update()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs rows are immutable';
        END;
        $$ language 'plpgsql';
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_no_update
            BEFORE UPDATE ON audit_logs
            FOR EACH ROW
            EXECUTE FUNCTION audit_logs_reject_update();
    """)


def downgrade() -> None:
    """Drop all tables and types."""
    op.execute('DROP TRIGGER IF EXISTS audit_logs_no_update ON audit_logs')
    op.execute('DROP FUNCTION IF EXISTS audit_logs_reject_update()')

    op.drop_table('audit_logs')
    op.drop_table('citizens')
    op.drop_table('families')
    op.drop_table('users')
    op.drop_table('jurisdictions')

    op.execute('DROP TYPE IF EXISTS user_role')
    op.execute('DROP TYPE IF EXISTS jurisdiction_level')
