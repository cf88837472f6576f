"""Error handling framework for AgentDesk.

This package provides:
- Error code registry with E-XXXX format codes
- AgentDeskError and formatting utilities
- Typed domain exceptions mapped to transport responses

Error categories:
- E-1xxx: Access link policy errors
- E-2xxx: Session errors
- E-3xxx: Response generator errors
- E-4xxx: System/internal errors
"""

from agentdesk.errors.domain import (
    AlreadyProcessingError,
    ConflictError,
    DomainError,
    LinkRejectedError,
    LinkRejection,
    NotFoundError,
    PersistenceFailure,
    SessionNotFoundError,
)
from agentdesk.errors.formatter import (
    AgentDeskError,
    format_error,
)
from agentdesk.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Formatter
    "AgentDeskError",
    "format_error",
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "LinkRejection",
    "LinkRejectedError",
    "SessionNotFoundError",
    "AlreadyProcessingError",
    "PersistenceFailure",
]
