"""
Unit tests for the Audit Recorder, the audited decorator, and audit log
queries.
"""

import json
import logging
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from registry.audit import AuditEntry, AuditRecorder, MutationResult, audited, serialize_values
from registry.errors import AuditImmutableError
from registry.models import AuditLog
from registry.pagination import PageRequest, PaginatedQueryExecutor
from registry.repositories import AUDIT_LOG_SHAPE, AuditRepository
from registry.scope import ScopeResolver


def _log(session, action_type, created_at, user_id=None, table_name="users", record_id="1"):
    log = AuditLog(
        action_type=action_type,
        table_name=table_name,
        record_id=record_id,
        user_id=user_id,
        created_at=created_at,
    )
    session.add(log)
    return log


@pytest.fixture
def failing_session_factory():
    """Session factory whose sessions fail on commit."""
    def factory():
        session = MagicMock()
        session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
        return session
    return factory


# ============================================
# RECORDER
# ============================================

class TestAuditRecorder:
    """Tests for the best-effort recorder."""

    def test_record_inserts_row(self, provider, session, seeded):
        recorder = AuditRecorder(provider.session_factory)
        log_id = recorder.record(AuditEntry(
            action_type="status_change",
            table_name="users",
            record_id=42,
            old_values={"is_active": True},
            new_values={"is_active": False},
            user_id=seeded.moha,
            ip_address="10.1.1.1",
        ))

        log = session.get(AuditLog, log_id)
        assert log.record_id == "42"
        assert json.loads(log.new_values) == {"is_active": False}
        assert log.user_id == seeded.moha
        assert log.created_at is not None

    def test_disabled_recorder_writes_nothing(self, provider, session, seeded):
        recorder = AuditRecorder(provider.session_factory, enabled=False)
        assert recorder.record(AuditEntry(action_type="login")) is None
        assert session.execute(select(AuditLog)).first() is None

    def test_failure_is_logged_not_raised(self, failing_session_factory, caplog):
        recorder = AuditRecorder(failing_session_factory)
        with caplog.at_level(logging.ERROR, logger="registry.audit.ops"):
            result = recorder.record(AuditEntry(action_type="status_change", table_name="users",
                                                record_id="7", user_id=3))

        assert result is None
        assert "Audit write failed" in caplog.text
        assert "status_change" in caplog.text
        assert any(r.name == "registry.audit.ops" for r in caplog.records)

    def test_unexpected_error_is_logged_not_raised(self, caplog):
        def factory():
            broken = MagicMock()
            broken.commit.side_effect = RuntimeError("connection reset")
            broken.rollback.side_effect = OperationalError("ROLLBACK", {}, Exception("gone"))
            return broken

        with caplog.at_level(logging.WARNING, logger="registry.audit.ops"):
            assert AuditRecorder(factory).record(AuditEntry(action_type="login")) is None
        assert "RuntimeError: connection reset" in caplog.text

    def test_long_user_agent_is_truncated(self):
        model = AuditEntry(action_type="login", user_agent="x" * 800).to_model()
        assert len(model.user_agent) == 500

    def test_serialize_values(self):
        assert serialize_values(None) is None
        assert serialize_values("raw") == "raw"
        assert serialize_values({"b": 1, "a": datetime(2024, 1, 1)}) == '{"a": "2024-01-01 00:00:00", "b": 1}'


class TestAuditImmutability:
    """Audit rows may be inserted or deleted but never updated."""

    def test_update_is_rejected(self, session, seeded):
        log = _log(session, "login", datetime(2024, 1, 1, 9, 0))
        session.commit()

        log.action_type = "logout"
        with pytest.raises(AuditImmutableError):
            session.flush()
        session.rollback()


# ============================================
# DECORATOR
# ============================================

class _Service:
    def __init__(self, recorder):
        self.audit_recorder = recorder

    @audited("update", "jurisdictions")
    def rename(self, ctx, node_id, changed=True):
        return MutationResult(node_id, {"office_name": "Old"}, {"office_name": "New"},
                              value="renamed", changed=changed)

    @audited("delete", "families")
    def explode(self, ctx):
        raise ValueError("boom")


class TestAuditedDecorator:
    """Tests for recording after a successful mutation."""

    @pytest.fixture
    def ctx(self):
        ctx = MagicMock()
        ctx.user_id = 5
        ctx.ip_address = "192.168.0.9"
        ctx.user_agent = "browser"
        return ctx

    def test_records_after_success(self, ctx):
        recorder = MagicMock()
        assert _Service(recorder).rename(ctx, 11) == "renamed"

        entry = recorder.record.call_args[0][0]
        assert entry.action_type == "update"
        assert entry.table_name == "jurisdictions"
        assert entry.record_id == 11
        assert entry.user_id == 5
        assert entry.ip_address == "192.168.0.9"

    def test_no_op_is_not_recorded(self, ctx):
        recorder = MagicMock()
        _Service(recorder).rename(ctx, 11, changed=False)
        recorder.record.assert_not_called()

    def test_failed_mutation_is_not_recorded(self, ctx):
        recorder = MagicMock()
        with pytest.raises(ValueError):
            _Service(recorder).explode(ctx)
        recorder.record.assert_not_called()

    def test_recorder_failure_keeps_result(self, ctx, failing_session_factory):
        service = _Service(AuditRecorder(failing_session_factory))
        assert service.rename(ctx, 11) == "renamed"


# ============================================
# AUDIT QUERIES
# ============================================

class TestAuditLogQueries:
    """Tests for the audit list view and dashboard counts."""

    @pytest.fixture
    def audit_rows(self, provider, seeded):
        with provider.session_scope() as s:
            # Matching: login inside 2024-01-10..2024-01-20 inclusive
            _log(s, "login", datetime(2024, 1, 10, 0, 0), user_id=seeded.district)
            _log(s, "login", datetime(2024, 1, 20, 23, 30), user_id=seeded.gn)
            # Non-matching
            for day in (5, 6, 7, 9, 21):
                _log(s, "login", datetime(2024, 1, day, 12, 0), user_id=seeded.district)
            for day in (10, 12, 14, 16, 18):
                _log(s, "status_change", datetime(2024, 1, day, 12, 0), user_id=seeded.moha)

    def _execute(self, session, tree, principal, params):
        resolver = ScopeResolver(tree)
        executor = PaginatedQueryExecutor(session, AUDIT_LOG_SHAPE, resolver)
        return executor.execute(resolver.resolve(principal), params, PageRequest(page_size=10))

    def test_date_range_and_action_filter(self, session, tree, seeded, principal_for, audit_rows):
        page = self._execute(session, tree, principal_for(seeded.moha), {
            "start_date": "2024-01-10",
            "end_date": "2024-01-20",
            "action_type": "login",
        })
        assert page.total_count == 2
        assert len(page.rows) == 2
        assert {r["username"] for r in page.rows} == {"district.one", "gn.one"}

    def test_unfiltered_total(self, session, tree, seeded, principal_for, audit_rows):
        page = self._execute(session, tree, principal_for(seeded.moha), {})
        assert page.total_count == 12
        assert len(page.rows) == 10
        assert page.total_pages == 2

    def test_search_by_username(self, session, tree, seeded, principal_for, audit_rows):
        page = self._execute(session, tree, principal_for(seeded.moha), {"search": "GN.ONE"})
        assert page.total_count == 1

    def test_user_filter(self, session, tree, seeded, principal_for, audit_rows):
        page = self._execute(session, tree, principal_for(seeded.moha), {"user_id": str(seeded.moha)})
        assert page.total_count == 5

    def test_activity_summary(self, session, seeded, audit_rows):
        summary = AuditRepository(session).activity_summary(now=datetime(2024, 1, 21, 18, 0))
        assert summary["today"] == 1
        assert summary["yesterday"] == 1
        assert summary["week"] == 4
        assert summary["month"] == 12
        assert summary["by_action_type"][0] == {"action_type": "login", "count": 7}

    def test_action_types(self, session, audit_rows):
        assert AuditRepository(session).action_types() == ["login", "status_change"]

    def test_recent_actors(self, session, seeded, audit_rows):
        actors = AuditRepository(session).recent_actors()
        assert actors[0]["username"] == "district.one"
        assert {a["username"] for a in actors} == {"district.one", "gn.one", "moha.admin"}

    def test_purge_older_than(self, session, audit_rows):
        repo = AuditRepository(session)
        deleted = repo.purge_older_than(5, now=datetime(2024, 1, 15, 0, 0))
        session.commit()
        assert deleted == 4
        assert len(session.execute(select(AuditLog)).all()) == 8

    def test_delete_returns_snapshot(self, session, audit_rows):
        log_id = session.execute(select(AuditLog.log_id).limit(1)).scalar()
        snapshot = AuditRepository(session).delete(log_id)
        session.commit()
        assert snapshot["log_id"] == log_id
        assert session.get(AuditLog, log_id) is None
