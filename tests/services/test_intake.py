"""
IntakeProducer: validation first, then one atomic intake transaction.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from loan_kernel.exceptions import SubmissionFailedError, ValidationError
from loan_kernel.models.application import ApplicationStatus, LoanApplication
from loan_kernel.models.application_log import ApplicationLog, EventKind
from loan_kernel.models.audit_event import AuditEvent
from loan_kernel.models.client import Client
from loan_kernel.models.queue import ConversationState, QueueConversation, QueueMessage
from loan_kernel.models.status_history import StatusTransition
from loan_kernel.services.queue_service import LOAN_APPLICATION_MESSAGE, DurableQueue

from tests.conftest import TEST_ACTOR, client_payload, loan_payload


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


class TestSuccessfulSubmission:
    def test_application_is_submitted_and_queued(self, submit, session):
        result = submit()

        application = session.get(LoanApplication, result.application_id)
        assert application.status == ApplicationStatus.SUBMITTED.value
        assert application.submitted_by == TEST_ACTOR
        assert application.client_id == result.client_id

        messages = session.execute(select(QueueMessage)).scalars().all()
        assert len(messages) == 1
        assert messages[0].message_type == LOAN_APPLICATION_MESSAGE
        assert messages[0].body == {"application_id": str(result.application_id)}
        assert messages[0].conversation_id == result.conversation_id

        conversation = session.get(QueueConversation, result.conversation_id)
        assert conversation.state_enum == ConversationState.OPEN

    def test_creation_transition_recorded(self, submit, session):
        result = submit()
        history = session.execute(select(StatusTransition)).scalars().all()
        assert [(h.old_status, h.new_status, h.reason) for h in history] == [
            (None, "Submitted", "Application submitted"),
        ]
        assert history[0].application_id == result.application_id
        assert history[0].changed_by == TEST_ACTOR

    def test_operational_events_recorded(self, submit, session):
        result = submit()
        kinds = [
            row.kind
            for row in session.execute(
                select(ApplicationLog).order_by(ApplicationLog.logged_at, ApplicationLog.id)
            ).scalars()
        ]
        assert set(kinds) == {EventKind.CLIENT.value, EventKind.APPLICATION.value, EventKind.QUEUE.value}
        queue_event = session.execute(
            select(ApplicationLog).where(ApplicationLog.kind == EventKind.QUEUE.value)
        ).scalar_one()
        assert queue_event.application_id == result.application_id
        assert queue_event.details == {"conversation_id": str(result.conversation_id)}

    def test_row_changes_are_audited(self, submit, session):
        result = submit()
        events = session.execute(select(AuditEvent).order_by(AuditEvent.seq)).scalars().all()
        assert [(e.table_name, e.action) for e in events] == [
            ("clients", "INSERT"),
            ("loan_applications", "INSERT"),
        ]
        assert events[1].record_id == result.application_id

    def test_submit_returns_producer_response(self, producer):
        response = producer.submit(
            first_name="Ada", last_name="Lovelace", email="ada@example.com", phone=None,
            credit_score=720, amount="5000", term_units=36, purpose="Car",
        )
        assert response["status"] == "Submitted"
        assert len(response["application_id"]) == 36

    def test_loan_details_as_json_string(self, producer, session):
        result = producer.submit_application(
            client_payload(), '{"loanAmount": 2500.5, "loanTerm": 12, "purpose": "Laptop"}',
        )
        application = session.get(LoanApplication, result.application_id)
        assert str(application.amount) == "2500.50"
        assert application.term_units == 12

    def test_submission_is_logged_with_correlation_id(self, submit, captured_logs):
        result = submit()
        records = [r for r in captured_logs() if r["message"] == "application_submitted"]
        assert len(records) == 1
        assert records[0]["application_id"] == str(result.application_id)
        assert records[0]["correlation_id"]
        assert records[0]["actor"] == TEST_ACTOR


class TestClientUpsert:
    def test_same_email_reuses_client_and_refreshes_fields(self, submit, session):
        first = submit(credit_score=550)
        second = submit(credit_score=720, phone="555-0199")

        assert first.client_created is True
        assert second.client_created is False
        assert first.client_id == second.client_id
        assert _count(session, Client) == 1

        client = session.get(Client, first.client_id)
        assert client.credit_score == 720
        assert client.phone == "555-0199"

        client_updates = session.execute(
            select(AuditEvent).where(
                AuditEvent.table_name == "clients", AuditEvent.action == "UPDATE",
            )
        ).scalars().all()
        assert len(client_updates) == 1
        assert client_updates[0].old_values["credit_score"] == 550
        assert client_updates[0].new_values["credit_score"] == 720

    def test_unchanged_client_writes_no_update_audit(self, submit, session):
        submit()
        submit()
        assert _count(session, AuditEvent) == 3  # client insert + two application inserts

    def test_each_submission_gets_its_own_conversation(self, submit):
        assert submit().conversation_id != submit().conversation_id


class TestValidationFailure:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"credit_score": 900},
            {"email": ""},
            {"amount": 0},
            {"term_units": -1},
            {"purpose": "  "},
        ],
    )
    def test_nothing_written(self, submit, session, overrides):
        with pytest.raises(ValidationError):
            submit(**overrides)

        for model in (Client, LoanApplication, QueueMessage, QueueConversation, StatusTransition, AuditEvent):
            assert _count(session, model) == 0

    def test_failure_is_recorded_as_validation_event(self, submit, session, captured_logs):
        with pytest.raises(ValidationError):
            submit(credit_score=200)

        event = session.execute(select(ApplicationLog)).scalar_one()
        assert event.kind == EventKind.VALIDATION.value
        assert event.application_id is None
        assert event.details["field"] == "credit_score"
        assert any(r["message"] == "submission_validation_failed" for r in captured_logs())


class TestAtomicity:
    def test_enqueue_failure_rolls_back_everything(self, submit, session):
        with patch.object(DurableQueue, "enqueue", side_effect=RuntimeError("queue down")):
            with pytest.raises(SubmissionFailedError) as exc_info:
                submit()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.code == "SUBMISSION_FAILED"
        for model in (Client, LoanApplication, QueueMessage, StatusTransition, AuditEvent):
            assert _count(session, model) == 0

        event = session.execute(select(ApplicationLog)).scalar_one()
        assert event.kind == EventKind.ERROR.value
        assert event.details["error"] == "queue down"

    def test_failure_after_enqueue_leaves_no_orphan_message(self, producer, session):
        with patch(
            "loan_kernel.services.intake_service.SubmissionResult",
            side_effect=RuntimeError("late failure"),
        ):
            with pytest.raises(SubmissionFailedError):
                producer.submit_application(client_payload(), loan_payload())

        assert _count(session, QueueMessage) == 0
        assert _count(session, LoanApplication) == 0
