"""Typed domain exceptions for API error mapping.

These exceptions give routes and socket handlers a typed contract instead
of string matching. Each one knows its registry code so transports can
render it without an unstructured traceback crossing the wire.

Usage:
    # In service layer
    raise SessionNotFoundError(session_id)

    # HTTP routes let it propagate; the app's DomainError handler maps
    # NotFoundError to 404 and ConflictError to 409. The websocket
    # handler catches it and sends an error frame instead.
"""

from enum import Enum

from agentdesk.errors.formatter import AgentDeskError


class DomainError(Exception):
    """Base exception for all domain errors."""

    error_code = "E-4003"

    def __init__(self, message: str) -> None:
        super().__init__(message)

    def to_error(self) -> AgentDeskError:
        """Convert to a registry-backed AgentDeskError."""
        error = AgentDeskError.from_code(self.error_code, details={})
        error.message = str(self)
        return error


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict. Maps to HTTP 409."""


class LinkRejection(str, Enum):
    """Reason an access link was refused, in check order."""

    not_found = "not_found"
    invalid_status = "invalid_status"
    expired = "expired"
    single_use_exhausted = "single_use_exhausted"
    usage_limit_reached = "usage_limit_reached"
    minutes_limit_reached = "minutes_limit_reached"


REJECTION_ERROR_CODES: dict[LinkRejection, str] = {
    LinkRejection.not_found: "E-1001",
    LinkRejection.invalid_status: "E-1002",
    LinkRejection.expired: "E-1003",
    LinkRejection.single_use_exhausted: "E-1004",
    LinkRejection.usage_limit_reached: "E-1005",
    LinkRejection.minutes_limit_reached: "E-1006",
}


class LinkRejectedError(DomainError):
    """Access link failed validation. Maps to HTTP 403.

    Attributes:
        reason: Which policy check refused the link.
        status: Link status at rejection time, when the link exists.
    """

    def __init__(self, reason: LinkRejection, status: str | None = None) -> None:
        self.reason = reason
        self.status = status
        self.error_code = REJECTION_ERROR_CODES[reason]
        error = AgentDeskError.from_code(self.error_code, status=status or "")
        super().__init__(error.message)


class SessionNotFoundError(NotFoundError):
    """No live session is registered under the id. Maps to HTTP 404."""

    error_code = "E-2001"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session", session_id)
        self.session_id = session_id


class AlreadyProcessingError(ConflictError):
    """A turn is already being generated for the session. Maps to HTTP 409."""

    error_code = "E-2002"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' is already processing a message")
        self.session_id = session_id


class PersistenceFailure(DomainError):
    """Best-effort write to the conversation store failed.

    Raised inside the persistence boundary and logged by the session
    manager with the operation name; never surfaced to the client.
    """

    error_code = "E-4001"

    def __init__(self, operation: str, cause: Exception) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
