"""
ApplicationStore -- transactional CRUD for clients and loan applications.

Responsibility:
    Upserts clients by email, creates applications, reads them back fresh,
    and moves application status under a row lock.  Every row change is
    mirrored to the hash-chained audit log through AuditorService in the
    same transaction.

Architecture position:
    Kernel > Services -- called by IntakeProducer and DecisionWorker.

Invariants enforced:
    - Client email is unique; concurrent first submissions for one email
      converge on a single row (savepoint insert, re-read on conflict).
    - Status changes follow the state machine; terminal statuses are final.
    - Loan terms are never written after creation.

Failure modes:
    - ApplicationNotFoundError / ClientNotFoundError on unknown ids.
    - InvalidStatusTransitionError on an illegal status change.
    - SQLAlchemy errors propagate; the caller owns rollback.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.domain.dtos import ClientFields, LoanTerms
from loan_kernel.domain.state_machine import as_status, validate_transition
from loan_kernel.exceptions import ApplicationNotFoundError, ClientNotFoundError
from loan_kernel.logging_config import get_logger
from loan_kernel.models.application import ApplicationStatus, LoanApplication
from loan_kernel.models.application_log import ApplicationLog
from loan_kernel.models.audit_event import AuditAction
from loan_kernel.models.client import Client
from loan_kernel.models.status_history import StatusTransition
from loan_kernel.services.auditor_service import AuditorService

logger = get_logger("services.application_store")

_CLIENT_FIELDS = ("first_name", "last_name", "phone", "credit_score")


class ApplicationStore:
    """Session-scoped store for Client and LoanApplication rows."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def _find_client_by_email(self, email: str, for_update: bool = False) -> Client | None:
        stmt = select(Client).where(Client.email == email)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _update_client(self, client: Client, fields: ClientFields, actor: str | None) -> None:
        old_values = client.to_audit_dict()
        for name in _CLIENT_FIELDS:
            setattr(client, name, getattr(fields, name))
        self._session.flush()
        new_values = client.to_audit_dict()
        if new_values != old_values:
            self._auditor.record_row_change(
                Client.__tablename__, client.id, AuditAction.UPDATE, actor,
                old_values=old_values, new_values=new_values,
            )

    def upsert_client(
        self,
        fields: ClientFields,
        actor: str | None = None,
    ) -> tuple[Client, bool]:
        """
        Insert or update the client matching ``fields.email``.

        Returns:
            (client, created) where created is True for a new row.
        """
        client = self._find_client_by_email(fields.email, for_update=True)
        if client is not None:
            self._update_client(client, fields, actor)
            return client, False

        savepoint = self._session.begin_nested()
        try:
            client = Client(
                first_name=fields.first_name,
                last_name=fields.last_name,
                email=fields.email,
                phone=fields.phone,
                credit_score=fields.credit_score,
            )
            self._session.add(client)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # A concurrent submission inserted the same email first
            savepoint.rollback()
            logger.debug("client_upsert_race_retry", extra={"email": fields.email})
            client = self._find_client_by_email(fields.email, for_update=True)
            if client is None:
                raise
            self._update_client(client, fields, actor)
            return client, False

        self._auditor.record_row_change(
            Client.__tablename__, client.id, AuditAction.INSERT, actor,
            new_values=client.to_audit_dict(),
        )
        return client, True

    def create_or_update_client(self, fields: ClientFields, actor: str | None = None) -> UUID:
        """Upsert a client by email and return its id."""
        client, _ = self.upsert_client(fields, actor)
        return client.id

    def get_client(self, client_id: UUID) -> Client:
        """
        Load a client, bypassing any cached state.

        Raises:
            ClientNotFoundError: If no such client exists.
        """
        client = self._session.execute(
            select(Client)
            .where(Client.id == client_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if client is None:
            raise ClientNotFoundError(str(client_id))
        return client

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(
        self,
        client_id: UUID,
        terms: LoanTerms,
        actor: str | None = None,
    ) -> UUID:
        """
        Insert a new application in status Submitted.

        Raises:
            ClientNotFoundError: If the owning client does not exist.
        """
        self.get_client(client_id)

        application = LoanApplication(
            client_id=client_id,
            application_date=self._clock.now(),
            status=ApplicationStatus.SUBMITTED.value,
            amount=terms.amount,
            term_units=terms.term_units,
            purpose=terms.purpose,
            submitted_by=actor,
        )
        self._session.add(application)
        self._session.flush()

        self._auditor.record_row_change(
            LoanApplication.__tablename__, application.id, AuditAction.INSERT, actor,
            new_values=application.to_audit_dict(),
        )
        logger.debug(
            "application_created",
            extra={"application_id": str(application.id), "client_id": str(client_id)},
        )
        return application.id

    def find_application(
        self,
        application_id: UUID,
        for_update: bool = False,
    ) -> LoanApplication | None:
        stmt = select(LoanApplication).where(LoanApplication.id == application_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_application(self, application_id: UUID, for_update: bool = False) -> LoanApplication:
        """
        Load an application, bypassing any cached state.

        Raises:
            ApplicationNotFoundError: If no such application exists.
        """
        application = self.find_application(application_id, for_update=for_update)
        if application is None:
            raise ApplicationNotFoundError(str(application_id))
        return application

    def update_status(
        self,
        application_id: UUID,
        new_status: ApplicationStatus | str,
        actor: str | None = None,
    ) -> ApplicationStatus:
        """
        Move an application to ``new_status`` under a row lock.

        Returns:
            The status the application had before the change.

        Raises:
            ApplicationNotFoundError: If no such application exists.
            InvalidStatusTransitionError: If the move is not permitted.
        """
        new_status = as_status(new_status)
        application = self.get_application(application_id, for_update=True)
        old_status = application.status_enum

        validate_transition(application_id, old_status, new_status)

        old_values = application.to_audit_dict()
        application.status = new_status.value
        self._session.flush()

        self._auditor.record_row_change(
            LoanApplication.__tablename__, application.id, AuditAction.UPDATE, actor,
            old_values=old_values, new_values=application.to_audit_dict(),
        )
        logger.debug(
            "application_status_updated",
            extra={
                "application_id": str(application_id),
                "old_status": old_status.value,
                "new_status": new_status.value,
            },
        )
        return old_status

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    def get_status_history(self, application_id: UUID) -> list[StatusTransition]:
        """Status transitions for one application, in recorded order."""
        return list(
            self._session.execute(
                select(StatusTransition)
                .where(StatusTransition.application_id == application_id)
                .order_by(StatusTransition.seq)
            ).scalars().all()
        )

    def get_events(self, application_id: UUID) -> list[ApplicationLog]:
        """Operational events for one application, oldest first."""
        return list(
            self._session.execute(
                select(ApplicationLog)
                .where(ApplicationLog.application_id == application_id)
                .order_by(ApplicationLog.logged_at, ApplicationLog.id)
            ).scalars().all()
        )
