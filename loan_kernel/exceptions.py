"""
Typed Exception Hierarchy for the Loan Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The intake producer, the decision workers and the operator CLI all need to
tell "the caller sent bad data" apart from "the database went away" and from
"this one application blew up while being decided".  Parsing messages is
fragile, so every error here:

  1. Has its own class (catch by type, not by message text)
  2. Carries a CODE class attribute (machine-readable, API-safe)
  3. Stores its context as attributes (the JSON log formatter copies them
     into ``exc_*`` fields)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LoanKernelError (base)
    |
    +-- IntakeError
    |   +-- ValidationError
    |   +-- SubmissionFailedError
    |
    +-- ProcessingError
    |
    +-- ApplicationError
    |   +-- ApplicationNotFoundError
    |   +-- ClientNotFoundError
    |   +-- InvalidStatusTransitionError
    |
    +-- QueueError
    |   +-- ConversationNotFoundError
    |   +-- ConversationClosedError
    |   +-- UnrecognizedMessageError
    |   +-- MalformedMessageError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|---------------------------------------
Intake       | VALIDATION_ERROR            | Bad input shape or range at submission
             | SUBMISSION_FAILED           | Store/queue failure, intake rolled back
-------------|-----------------------------|---------------------------------------
Processing   | PROCESSING_ERROR            | Failure while deciding one application
             |                             | (contained by the worker, never raised
             |                             | past it)
-------------|-----------------------------|---------------------------------------
Application  | APPLICATION_NOT_FOUND       | Application ID doesn't exist
             | CLIENT_NOT_FOUND            | Client ID doesn't exist
             | INVALID_STATUS_TRANSITION   | Transition not in the state machine
-------------|-----------------------------|---------------------------------------
Queue        | CONVERSATION_NOT_FOUND      | Unknown conversation handle
             | CONVERSATION_CLOSED         | Send on a conversation that has ended
             | UNRECOGNIZED_MESSAGE        | Message type not handled (dropped)
             | MALFORMED_MESSAGE           | Body lacks a usable application id
-------------|-----------------------------|---------------------------------------
Audit        | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
Immutability | IMMUTABILITY_VIOLATION      | Modifying an append-only record
Config       | CONFIGURATION_ERROR         | Invalid or missing configuration

===============================================================================
HANDLING PATTERNS
===============================================================================

Producer side -- both intake errors surface to the caller:

    try:
        result = producer.submit_application(client, loan, actor="web")
    except ValidationError as e:
        return {"error": e.code, "field": e.field, "value": e.value}
    except SubmissionFailedError as e:
        return {"error": e.code}

Worker side -- ProcessingError is built by the worker to describe why an
application was force-rejected; it is logged and recorded, never re-raised.
"""


class LoanKernelError(Exception):
    """
    Base exception for all loan kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LOAN_KERNEL_ERROR"


# Intake-related exceptions


class IntakeError(LoanKernelError):
    """Base exception for errors surfaced to the submitting caller."""

    code: str = "INTAKE_ERROR"


class ValidationError(IntakeError):
    """Submitted data failed shape or range validation. Nothing was written."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} ({value!r}): {reason}")


class SubmissionFailedError(IntakeError):
    """
    The intake transaction failed and was rolled back.

    No client, application or queue message from this submission exists.
    The underlying error is chained as ``__cause__``.
    """

    code: str = "SUBMISSION_FAILED"

    def __init__(self, email: str, reason: str):
        self.email = email
        self.reason = reason
        super().__init__(f"Error submitting application for {email}: {reason}")


# Processing exceptions


class ProcessingError(LoanKernelError):
    """An application could not be decided; it is rejected by the worker."""

    code: str = "PROCESSING_ERROR"

    def __init__(self, application_id: str | None, reason: str):
        self.application_id = application_id
        self.reason = reason
        super().__init__(f"Error during processing: {reason}")


# Application-related exceptions


class ApplicationError(LoanKernelError):
    """Base exception for application store errors."""

    code: str = "APPLICATION_ERROR"


class ApplicationNotFoundError(ApplicationError):
    """Application with given ID was not found."""

    code: str = "APPLICATION_NOT_FOUND"

    def __init__(self, application_id: str):
        self.application_id = application_id
        super().__init__(f"Application not found: {application_id}")


class ClientNotFoundError(ApplicationError):
    """Client with given ID was not found."""

    code: str = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")


class InvalidStatusTransitionError(ApplicationError):
    """Requested status change is not permitted by the state machine."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, application_id: str, from_status: str, to_status: str):
        self.application_id = application_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for application {application_id}: "
            f"{from_status} -> {to_status}"
        )


# Queue-related exceptions


class QueueError(LoanKernelError):
    """Base exception for durable queue errors."""

    code: str = "QUEUE_ERROR"


class ConversationNotFoundError(QueueError):
    """Conversation handle does not exist."""

    code: str = "CONVERSATION_NOT_FOUND"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationClosedError(QueueError):
    """A message was sent on a conversation that has already ended."""

    code: str = "CONVERSATION_CLOSED"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation is closed: {conversation_id}")


class UnrecognizedMessageError(QueueError):
    """Message type is not handled by the consumer. The message is dropped."""

    code: str = "UNRECOGNIZED_MESSAGE"

    def __init__(self, conversation_id: str, message_type: str):
        self.conversation_id = conversation_id
        self.message_type = message_type
        super().__init__(
            f"Unknown message type {message_type!r} on conversation {conversation_id}"
        )


class MalformedMessageError(QueueError):
    """Application message body does not carry a usable application id."""

    code: str = "MALFORMED_MESSAGE"

    def __init__(self, conversation_id: str, body: object):
        self.conversation_id = conversation_id
        self.body = body
        super().__init__(
            f"Malformed application message on conversation {conversation_id}: {body!r}"
        )


# Audit-related exceptions


class AuditError(LoanKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Immutability-related exceptions


class ImmutabilityError(LoanKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Audit events, status history and operational log rows are append-only.
    Loan terms are frozen once an application is created.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration exceptions


class ConfigurationError(LoanKernelError):
    """Configuration file or value is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration {key}: {reason}")
