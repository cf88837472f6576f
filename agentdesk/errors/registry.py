"""Error code registry with E-XXXX format codes.

This module defines the error code system for AgentDesk, organizing errors
into categories:
- E-1xxx: Access link policy errors
- E-2xxx: Session errors
- E-3xxx: Response generator errors
- E-4xxx: System/internal errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    LINK = "link"  # E-1xxx: Access link policy errors
    SESSION = "session"  # E-2xxx: Session errors
    GENERATOR = "generator"  # E-3xxx: Response generator errors
    SYSTEM = "system"  # E-4xxx: System/internal errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Link policy errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.LINK,
        title="Invalid Link",
        message_template="This link is not valid.",
        remediation="Ask the business for a new link.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.LINK,
        title="Link Not Active",
        message_template="This link is {status}.",
        remediation="Ask the business for a new link.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.LINK,
        title="Link Expired",
        message_template="This link has expired.",
        remediation="Ask the business for a new link.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.LINK,
        title="Single-Use Link Already Used",
        message_template="This single-use link has already been used.",
        remediation="Single-use links open one conversation. Ask for a new link.",
    ),
    "E-1005": ErrorCode(
        code="E-1005",
        category=ErrorCategory.LINK,
        title="Usage Limit Reached",
        message_template="This link has reached its usage limit.",
        remediation="Ask the business to raise the limit or issue a new link.",
    ),
    "E-1006": ErrorCode(
        code="E-1006",
        category=ErrorCategory.LINK,
        title="Minutes Limit Reached",
        message_template="This link has used all of its conversation minutes.",
        remediation="Ask the business to raise the minutes limit or issue a new link.",
    ),
    # Session errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.SESSION,
        title="Session Not Found",
        message_template="Session '{session_id}' not found.",
        remediation="Start a new session with your access link.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.SESSION,
        title="Already Processing",
        message_template="The previous message is still being processed.",
        remediation="Wait for the current response to finish or interrupt it.",
        is_retryable=True,
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.SESSION,
        title="Session Not Started",
        message_template="No session has been started on this connection.",
        remediation="Send session:start with your access link first.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.SESSION,
        title="Invalid Message",
        message_template="Message payload is invalid: {details}",
        remediation="Send a non-empty text message.",
    ),
    # Generator errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.GENERATOR,
        title="Model Unavailable",
        message_template="The assistant could not reach the language model: {details}",
        remediation="Wait a moment and send your message again.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.GENERATOR,
        title="Tool Failed",
        message_template="Tool '{tool_name}' failed: {details}",
        remediation="The assistant will continue without the tool result.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.GENERATOR,
        title="Step Limit Reached",
        message_template="The assistant stopped after {max_steps} tool steps.",
        remediation="Rephrase the request into a smaller question.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {details}",
        remediation="This is a system error. Retry the operation. Contact support if issue persists.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="History Unavailable",
        message_template="Could not load the conversation history.",
        remediation="Retry the message. Start a new session if the issue persists.",
        is_retryable=True,
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="An unexpected error occurred: {details}",
        remediation="Retry the operation. Contact support if issue persists.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
