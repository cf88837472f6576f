"""Error formatting utilities.

This module provides:
- AgentDeskError exception class for application errors
- Error formatting for user display and for transport payloads
"""

from dataclasses import dataclass, field
from typing import Any

from agentdesk.errors.registry import get_error


@dataclass
class AgentDeskError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    is_retryable: bool = False
    details: dict = field(default_factory=dict)  # Additional context

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "AgentDeskError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                The special key 'details' is stored on the error when it
                is a dict rather than used for substitution only.

        Returns:
            AgentDeskError instance with formatted message.
        """
        error_def = get_error(code)
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                details=details,
            )

        message = error_def.message_template
        try:
            message = message.format(**kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            pass

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            details=details,
        )

    def to_payload(self) -> dict[str, Any]:
        """Render the error as the JSON body sent to clients."""
        payload: dict[str, Any] = {
            "error_code": self.code,
            "message": self.message,
            "remediation": self.remediation,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def format_error(error: AgentDeskError, include_remediation: bool = True) -> str:
    """Format error for display to user.

    Args:
        error: The AgentDeskError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for user display.
    """
    lines = [f"{error.code}: {error.message}"]
    if include_remediation:
        lines.append(f"  Action: {error.remediation}")
    return "\n".join(lines)
