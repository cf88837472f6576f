"""Tests for the error registry, formatter and domain exceptions."""

import pytest

from agentdesk.errors import (
    ERROR_REGISTRY,
    AgentDeskError,
    AlreadyProcessingError,
    ErrorCategory,
    LinkRejectedError,
    LinkRejection,
    PersistenceFailure,
    SessionNotFoundError,
    format_error,
    get_error,
    get_errors_by_category,
)
from agentdesk.errors.domain import REJECTION_ERROR_CODES


class TestRegistry:
    def test_codes_match_keys(self):
        for key, error in ERROR_REGISTRY.items():
            assert error.code == key

    def test_category_prefixes(self):
        prefixes = {
            ErrorCategory.LINK: "E-1",
            ErrorCategory.SESSION: "E-2",
            ErrorCategory.GENERATOR: "E-3",
            ErrorCategory.SYSTEM: "E-4",
        }
        for category, prefix in prefixes.items():
            errors = get_errors_by_category(category)
            assert errors
            assert all(e.code.startswith(prefix) for e in errors)

    def test_unknown_code(self):
        assert get_error("E-9999") is None


class TestAgentDeskError:
    def test_from_code_formats_template(self):
        error = AgentDeskError.from_code("E-2001", session_id="abc")
        assert error.code == "E-2001"
        assert error.message == "Session 'abc' not found."

    def test_missing_placeholder_keeps_template(self):
        error = AgentDeskError.from_code("E-3002", tool_name="lookup")
        assert "{details}" in error.message

    def test_payload_shape(self):
        payload = AgentDeskError.from_code("E-4001", details="disk full").to_payload()
        assert payload["error_code"] == "E-4001"
        assert "disk full" in payload["message"]
        assert "remediation" in payload

    def test_format_error_includes_code(self):
        text = format_error(AgentDeskError.from_code("E-1003"))
        assert text.startswith("E-1003: ")


class TestDomainErrors:
    @pytest.mark.parametrize("reason", list(LinkRejection))
    def test_every_rejection_has_a_code(self, reason):
        error = LinkRejectedError(reason, status="cancelled")
        assert error.reason is reason
        assert error.error_code == REJECTION_ERROR_CODES[reason]
        assert str(error)

    def test_invalid_status_names_status(self):
        error = LinkRejectedError(LinkRejection.invalid_status, status="cancelled")
        assert "cancelled" in str(error)

    def test_session_errors_carry_codes(self):
        assert SessionNotFoundError("s1").error_code == "E-2001"
        assert AlreadyProcessingError("s1").error_code == "E-2002"
        assert AlreadyProcessingError("s1").to_error().code == "E-2002"

    def test_persistence_failure_names_operation(self):
        failure = PersistenceFailure("save_user_message", RuntimeError("locked"))
        assert failure.operation == "save_user_message"
        assert "locked" in str(failure)
        assert failure.error_code == "E-4001"
