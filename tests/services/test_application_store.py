"""
ApplicationStore: client upsert, application creation, guarded status moves.
"""

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from loan_kernel.domain.clock import DeterministicClock
from loan_kernel.domain.dtos import ClientFields, LoanTerms
from loan_kernel.exceptions import (
    ApplicationNotFoundError,
    ClientNotFoundError,
    InvalidStatusTransitionError,
)
from loan_kernel.models.application import ApplicationStatus, LoanApplication
from loan_kernel.models.application_log import ApplicationLog
from loan_kernel.models.audit_event import AuditEvent
from loan_kernel.models.queue import QueueConversation, QueueMessage
from loan_kernel.models.status_history import StatusTransition
from loan_kernel.services.application_store import ApplicationStore

FIELDS = ClientFields("Ada", "Lovelace", "ada@example.com", 720, "555-0100")
TERMS = LoanTerms(Decimal("5000.00"), 36, "Car")


@pytest.fixture
def store(session, clock) -> ApplicationStore:
    return ApplicationStore(session, clock)


class TestClients:
    def test_upsert_inserts_then_updates(self, store):
        client, created = store.upsert_client(FIELDS, "tester")
        assert created
        again, created = store.upsert_client(
            ClientFields("Ada", "King", "ada@example.com", 650), "tester",
        )
        assert not created
        assert again.id == client.id
        assert again.last_name == "King"
        assert again.phone is None

    def test_create_or_update_client_returns_id(self, store):
        client_id = store.create_or_update_client(FIELDS)
        assert store.get_client(client_id).email == "ada@example.com"

    def test_get_unknown_client(self, store):
        with pytest.raises(ClientNotFoundError):
            store.get_client(uuid4())


class TestApplications:
    def test_create_application(self, store, clock):
        client_id = store.create_or_update_client(FIELDS)
        application_id = store.create_application(client_id, TERMS, "tester")
        application = store.get_application(application_id)
        assert application.status_enum == ApplicationStatus.SUBMITTED
        assert application.amount == Decimal("5000.00")
        assert application.term_units == 36
        assert application.application_date == clock.now()

    def test_create_for_unknown_client(self, store):
        with pytest.raises(ClientNotFoundError):
            store.create_application(uuid4(), TERMS)

    def test_get_unknown_application(self, store):
        assert store.find_application(uuid4()) is None
        with pytest.raises(ApplicationNotFoundError):
            store.get_application(uuid4())


class TestStatusUpdates:
    @pytest.fixture
    def application_id(self, store):
        client_id = store.create_or_update_client(FIELDS)
        return store.create_application(client_id, TERMS)

    def test_legal_path(self, store, application_id):
        assert store.update_status(application_id, ApplicationStatus.PROCESSING) == ApplicationStatus.SUBMITTED
        assert store.update_status(application_id, "Approved") == ApplicationStatus.PROCESSING
        assert store.get_application(application_id).status_enum == ApplicationStatus.APPROVED

    def test_skipping_processing_is_illegal(self, store, application_id):
        with pytest.raises(InvalidStatusTransitionError):
            store.update_status(application_id, ApplicationStatus.APPROVED)
        assert store.get_application(application_id).status_enum == ApplicationStatus.SUBMITTED

    def test_terminal_status_is_final(self, store, application_id):
        store.update_status(application_id, ApplicationStatus.PROCESSING)
        store.update_status(application_id, ApplicationStatus.REJECTED)
        for target in ApplicationStatus:
            with pytest.raises(InvalidStatusTransitionError):
                store.update_status(application_id, target)

    def test_unknown_application(self, store):
        with pytest.raises(ApplicationNotFoundError):
            store.update_status(uuid4(), ApplicationStatus.PROCESSING)

    def test_status_change_is_audited(self, store, session, application_id):
        store.update_status(application_id, ApplicationStatus.PROCESSING, "worker-x")
        event = session.execute(
            select(AuditEvent).where(AuditEvent.action == "UPDATE")
        ).scalar_one()
        assert event.record_id == application_id
        assert event.actor == "worker-x"
        assert event.old_values["status"] == "Submitted"
        assert event.new_values["status"] == "Processing"


class TestTimestamps:
    """Every timestamp column loads back timezone-aware, in UTC."""

    def test_round_trip_in_fresh_session(self, submit, session_factory, clock):
        result = submit()

        with session_factory() as session:
            loaded = [
                session.get(LoanApplication, result.application_id).application_date,
                *session.execute(select(StatusTransition.changed_at)).scalars(),
                *session.execute(select(ApplicationLog.logged_at)).scalars(),
                *session.execute(select(AuditEvent.occurred_at)).scalars(),
                *session.execute(select(QueueConversation.created_at)).scalars(),
                *session.execute(select(QueueMessage.enqueued_at)).scalars(),
            ]

        assert loaded
        assert all(value.tzinfo is not None for value in loaded)
        assert all(value == clock.now() for value in loaded)
        assert all(value.utcoffset() == timedelta(0) for value in loaded)

    def test_other_offsets_are_stored_as_utc(self, session_factory):
        paris = timezone(timedelta(hours=1))
        with session_factory() as session:
            client_id = ApplicationStore(session).create_or_update_client(FIELDS)
            application_id = ApplicationStore(
                session, DeterministicClock(datetime(2026, 1, 15, 10, 0, tzinfo=paris))
            ).create_application(client_id, TERMS)
            session.commit()

        with session_factory() as session:
            loaded = session.get(LoanApplication, application_id).application_date

        assert loaded == datetime(2026, 1, 15, 9, 0, tzinfo=UTC)
        assert loaded.tzinfo == UTC
