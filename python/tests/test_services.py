"""
Unit tests for the request-scoped registry services.
"""

import json
import logging
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from registry.audit import AuditRecorder
from registry.errors import AccessDenied, EntityNotFoundError
from registry.models import AuditLog, Family, JurisdictionNode, User
from registry.services import AdministrationService, RegistryQueryService


@pytest.fixture
def admin(provider):
    return AdministrationService(provider, AuditRecorder(provider.session_factory))


@pytest.fixture
def queries(session):
    return RegistryQueryService(session)


def _audit_rows(session, action_type=None):
    stmt = select(AuditLog).order_by(AuditLog.log_id)
    if action_type:
        stmt = stmt.where(AuditLog.action_type == action_type)
    session.expire_all()
    return list(session.execute(stmt).scalars())


# ============================================
# QUERY SERVICE
# ============================================

class TestRegistryQueryService:
    """Tests for read operations."""

    def test_list_families_scoped(self, queries, ctx_for, seeded):
        page = queries.list_families(ctx_for(seeded.gn4), {})
        assert page.total_count == 2

    def test_list_uses_configured_page_size(self, queries, ctx_for, seeded):
        page = queries.list_citizens(ctx_for(seeded.moha), {"limit": "10"})
        assert page.page_size == 10
        assert page.total_count == 14

    def test_audit_logs_are_national_only(self, queries, ctx_for, seeded, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            with pytest.raises(AccessDenied):
                queries.list_audit_logs(ctx_for(seeded.district), {})
        assert "UNAUTHORIZED_ACTION" in caplog.text

    def test_statistics_for_visible_node(self, queries, ctx_for, seeded):
        record = queries.statistics_for(ctx_for(seeded.division), seeded.g2)
        assert record.family_count == 5

    def test_statistics_outside_scope(self, queries, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            queries.statistics_for(ctx_for(seeded.division), seeded.d2)

    def test_statistics_for_unknown_node(self, queries, ctx_for, seeded):
        with pytest.raises(EntityNotFoundError):
            queries.statistics_for(ctx_for(seeded.moha), 999999)

    def test_breakdown_for(self, queries, ctx_for, seeded):
        rows = queries.breakdown_for(ctx_for(seeded.moha), seeded.n)
        assert sum(r.family_count for r in rows) == 11

    def test_demographics_for_disabled_account(self, queries, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            queries.demographics_for(ctx_for(seeded.disabled), seeded.ds1)

    def test_breadcrumbs(self, queries, seeded):
        crumbs = queries.breadcrumbs(seeded.g3)
        assert [c["id"] for c in crumbs] == [seeded.n, seeded.ds1, seeded.d2, seeded.g3]
        assert crumbs[-1] == {"id": seeded.g3, "level": "gn", "office_name": "G3 Office"}

    def test_audit_summary(self, queries, ctx_for, seeded, provider):
        with provider.session_scope() as s:
            s.add(AuditLog(action_type="login", user_id=seeded.gn, created_at=datetime(2024, 3, 1, 8, 0)))

        summary = queries.audit_summary(ctx_for(seeded.moha), now=datetime(2024, 3, 1, 12, 0))
        assert summary["activity"]["today"] == 1
        assert summary["action_types"] == ["login"]
        assert summary["recent_actors"][0]["username"] == "gn.one"


# ============================================
# ADMINISTRATION SERVICE
# ============================================

class TestToggleUserStatus:
    """Tests for the audited status change."""

    def test_status_persisted_and_audited(self, admin, session, ctx_for, seeded):
        new_status = admin.toggle_user_status(ctx_for(seeded.district), seeded.division)

        assert new_status is False
        session.expire_all()
        assert session.get(User, seeded.division).is_active is False

        rows = _audit_rows(session, "status_change")
        assert len(rows) == 1
        log = rows[0]
        assert log.user_id == seeded.district
        assert log.table_name == "users"
        assert log.record_id == str(seeded.division)
        assert json.loads(log.old_values) == {"is_active": True}
        assert json.loads(log.new_values) == {"is_active": False}
        assert log.ip_address == "10.0.0.5"
        assert log.user_agent == "pytest-agent"

    def test_toggle_twice_restores(self, admin, session, ctx_for, seeded):
        ctx = ctx_for(seeded.district)
        admin.toggle_user_status(ctx, seeded.gn)
        assert admin.toggle_user_status(ctx, seeded.gn) is True
        assert len(_audit_rows(session, "status_change")) == 2

    def test_audit_failure_keeps_mutation(self, provider, session, ctx_for, seeded, caplog):
        def failing_factory():
            broken = MagicMock()
            broken.commit.side_effect = OperationalError("INSERT", {}, Exception("audit table locked"))
            return broken

        service = AdministrationService(provider, AuditRecorder(failing_factory))
        with caplog.at_level(logging.ERROR, logger="registry.audit.ops"):
            assert service.toggle_user_status(ctx_for(seeded.district), seeded.division) is False

        session.expire_all()
        assert session.get(User, seeded.division).is_active is False
        assert _audit_rows(session) == []
        assert "Audit write failed" in caplog.text

    def test_audit_session_unavailable_keeps_mutation(self, provider, session, ctx_for, seeded, caplog):
        def unavailable_factory():
            raise OperationalError("connect", {}, Exception("db down"))

        service = AdministrationService(provider, AuditRecorder(unavailable_factory))
        with caplog.at_level(logging.ERROR, logger="registry.audit.ops"):
            assert service.toggle_user_status(ctx_for(seeded.moha), seeded.district) is False

        session.expire_all()
        assert session.get(User, seeded.district).is_active is False
        assert "db down" in caplog.text

    def test_gn_account_cannot_manage(self, admin, session, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.toggle_user_status(ctx_for(seeded.gn), seeded.gn)
        assert _audit_rows(session) == []

    def test_peer_level_cannot_be_managed(self, admin, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.toggle_user_status(ctx_for(seeded.district), seeded.disabled)

    def test_outside_scope_cannot_be_managed(self, admin, session, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.toggle_user_status(ctx_for(seeded.district2), seeded.division)
        session.expire_all()
        assert session.get(User, seeded.division).is_active is True

    def test_unknown_user(self, admin, ctx_for, seeded):
        with pytest.raises(EntityNotFoundError):
            admin.toggle_user_status(ctx_for(seeded.moha), 999999)


class TestJurisdictionAdministration:
    """Tests for jurisdiction status and office changes."""

    def test_toggle_jurisdiction_status(self, admin, session, ctx_for, seeded):
        assert admin.toggle_jurisdiction_status(ctx_for(seeded.division), seeded.g2) is False
        session.expire_all()
        assert session.get(JurisdictionNode, seeded.g2).is_active is False
        assert _audit_rows(session)[0].table_name == "jurisdictions"

    def test_rename_office(self, admin, session, ctx_for, seeded):
        result = admin.update_jurisdiction_office(ctx_for(seeded.moha), seeded.d1, "  Colombo North  ")

        assert result["office_name"] == "Colombo North"
        log = _audit_rows(session, "update")[0]
        assert json.loads(log.old_values) == {"office_name": "D1 Office"}
        assert json.loads(log.new_values) == {"office_name": "Colombo North"}

    def test_unchanged_name_is_not_audited(self, admin, session, ctx_for, seeded):
        admin.update_jurisdiction_office(ctx_for(seeded.moha), seeded.d1, "D1 Office")
        assert _audit_rows(session) == []

    def test_blank_name_rejected(self, admin, ctx_for, seeded):
        with pytest.raises(ValueError):
            admin.update_jurisdiction_office(ctx_for(seeded.moha), seeded.d1, "   ")

    def test_cannot_rename_own_node(self, admin, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.update_jurisdiction_office(ctx_for(seeded.district), seeded.ds1, "Mine")


class TestAuditAdministration:
    """Tests for deleting and purging the audit trail."""

    @pytest.fixture
    def old_logs(self, provider, seeded):
        with provider.session_scope() as s:
            for day in (1, 2, 3, 20):
                s.add(AuditLog(action_type="login", user_id=seeded.gn, created_at=datetime(2024, 1, day)))
            s.flush()
            return [log_id for (log_id,) in s.execute(select(AuditLog.log_id).order_by(AuditLog.log_id))]

    def test_delete_is_audited(self, admin, session, ctx_for, seeded, old_logs):
        snapshot = admin.delete_audit_log(ctx_for(seeded.moha), old_logs[0])

        assert snapshot["log_id"] == old_logs[0]
        rows = _audit_rows(session)
        assert old_logs[0] not in [r.log_id for r in rows]
        record = _audit_rows(session, "audit_delete")[0]
        assert record.record_id == str(old_logs[0])
        assert json.loads(record.old_values)["action_type"] == "login"

    def test_delete_requires_moha(self, admin, ctx_for, seeded, old_logs):
        with pytest.raises(AccessDenied):
            admin.delete_audit_log(ctx_for(seeded.district), old_logs[0])

    def test_delete_unknown_log(self, admin, ctx_for, seeded):
        with pytest.raises(EntityNotFoundError):
            admin.delete_audit_log(ctx_for(seeded.moha), 424242)

    def test_purge_is_audited(self, admin, session, ctx_for, seeded, old_logs):
        deleted = admin.purge_audit_logs(ctx_for(seeded.moha), older_than_days=10,
                                         now=datetime(2024, 1, 25))

        assert deleted == 3
        purge = _audit_rows(session, "audit_purge")
        assert len(purge) == 1
        assert json.loads(purge[0].new_values) == {"deleted": 3, "older_than_days": 10}
        assert len(_audit_rows(session, "login")) == 1

    def test_purge_nothing_is_not_audited(self, admin, session, ctx_for, seeded, old_logs):
        assert admin.purge_audit_logs(ctx_for(seeded.moha), older_than_days=1,
                                      now=datetime(2023, 1, 1)) == 0
        assert _audit_rows(session, "audit_purge") == []

    def test_purge_requires_moha(self, admin, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.purge_audit_logs(ctx_for(seeded.division))


class TestMemberCounts:
    """Tests for reconciling cached member counts."""

    def test_refresh_corrects_stale_counts(self, admin, provider, session, ctx_for, seeded):
        with provider.session_scope() as s:
            s.execute(update(Family).where(Family.gn_id == seeded.g1).values(member_count=99))

        assert admin.refresh_member_counts(ctx_for(seeded.gn), seeded.g1) == 3
        session.expire_all()
        assert session.get(Family, "G1-F1").member_count == 2

    def test_refresh_is_scoped(self, admin, provider, ctx_for, seeded):
        with provider.session_scope() as s:
            s.execute(update(Family).values(member_count=42))

        assert admin.refresh_member_counts(ctx_for(seeded.gn4)) == 2

    def test_refresh_outside_scope_denied(self, admin, ctx_for, seeded):
        with pytest.raises(AccessDenied):
            admin.refresh_member_counts(ctx_for(seeded.gn4), seeded.g1)
