"""
Hash-chained audit log: linkage, verification and tamper detection.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select, text

from loan_kernel.db.triggers import uninstall_audit_triggers
from loan_kernel.exceptions import AuditChainBrokenError
from loan_kernel.models.audit_event import AuditAction, AuditEvent
from loan_kernel.services.auditor_service import AuditorService


class TestChain:
    def test_empty_chain_is_valid(self, session, clock):
        assert AuditorService(session, clock).validate_chain()

    def test_events_are_linked(self, submit, session, clock):
        submit()
        submit(email="grace@example.com")
        events = session.execute(select(AuditEvent).order_by(AuditEvent.seq)).scalars().all()

        assert events[0].prev_hash is None
        for previous, current in zip(events, events[1:]):
            assert current.prev_hash == previous.hash
            assert current.seq > previous.seq
        assert AuditorService(session, clock).validate_chain()

    def test_record_row_change_payload(self, session, clock):
        record_id = uuid4()
        event = AuditorService(session, clock).record_row_change(
            "clients", record_id, AuditAction.INSERT, "tester", new_values={"email": "a@b.c"},
        )
        assert event.old_values is None
        assert event.new_values == {"email": "a@b.c"}
        assert event.occurred_at == clock.now()
        assert len(event.hash) == 64

    def test_trace_for_one_row(self, submit, session, clock):
        result = submit()
        trace = AuditorService(session, clock).get_trace("loan_applications", result.application_id)
        assert not trace.is_empty
        assert trace.first_action == "INSERT"
        assert trace.entries[0].new_values["status"] == "Submitted"

    def test_recent_events_newest_first(self, submit, session, clock):
        submit()
        events = AuditorService(session, clock).get_recent_events(limit=10)
        assert [e.table_name for e in events] == ["loan_applications", "clients"]


class TestTamperDetection:
    """Raw SQL edits bypass the ORM listeners once the triggers are removed."""

    @pytest.fixture
    def tamperable(self, engine, submit):
        submit()
        submit(email="grace@example.com")
        uninstall_audit_triggers(engine)
        return engine

    def _tamper(self, engine, sql: str):
        with engine.begin() as conn:
            conn.execute(text(sql))

    def test_edited_values_detected(self, tamperable, session, clock):
        self._tamper(
            tamperable,
            "UPDATE audit_events SET new_values = '{\"credit_score\": 850}' "
            "WHERE seq = (SELECT MIN(seq) FROM audit_events)",
        )
        with pytest.raises(AuditChainBrokenError):
            AuditorService(session, clock).validate_chain()

    def test_edited_hash_detected(self, tamperable, session, clock):
        self._tamper(
            tamperable,
            "UPDATE audit_events SET hash = 'forged' "
            "WHERE seq = (SELECT MAX(seq) FROM audit_events)",
        )
        with pytest.raises(AuditChainBrokenError):
            AuditorService(session, clock).validate_chain()

    def test_deleted_event_detected(self, tamperable, session, clock):
        self._tamper(
            tamperable,
            "DELETE FROM audit_events WHERE seq = (SELECT MIN(seq) FROM audit_events)",
        )
        with pytest.raises(AuditChainBrokenError):
            AuditorService(session, clock).validate_chain()

    def test_broken_chain_is_logged(self, tamperable, session, clock, captured_logs):
        self._tamper(tamperable, "UPDATE audit_events SET prev_hash = 'x' WHERE prev_hash IS NOT NULL")
        with pytest.raises(AuditChainBrokenError):
            AuditorService(session, clock).validate_chain()
        assert any(r["message"] == "audit_chain_broken" for r in captured_logs())
