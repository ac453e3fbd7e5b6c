"""Unit tests for the error taxonomy."""

import pytest

from src.clarity.errors import (
    GENERIC_ERROR_CODE,
    ClarityError,
    ErrorCategory,
    build_error_comment_body,
    get_error_details,
    get_error_message,
)


class TestClarityError:
    def test_message_and_code(self):
        error = ClarityError(ErrorCategory.GIT, "push branch", "rejected", suggestion="Pull first")
        assert str(error) == "Failed to push branch: rejected"
        assert error.code == "GIT_ERROR"

    @pytest.mark.parametrize("category", list(ErrorCategory))
    def test_only_config_is_not_retryable(self, category):
        error = ClarityError(category, "do work", "failed")
        assert error.is_retryable is (category is not ErrorCategory.CONFIG)


class TestErrorDetails:
    def test_classified_error(self):
        try:
            raise ClarityError(ErrorCategory.GITHUB, "open pull request", "422", suggestion="Check branch")
        except ClarityError as exc:
            details = get_error_details(exc)

        assert details.code == "GITHUB_ERROR"
        assert details.category is ErrorCategory.GITHUB
        assert details.suggestion == "Check branch"
        assert "ClarityError" in details.stack

    def test_unclassified_error_gets_generic_code(self):
        details = get_error_details(ValueError("bad input"))
        assert details.code == GENERIC_ERROR_CODE
        assert details.category is None
        assert details.message == "bad input"

    def test_empty_message_falls_back_to_type_name(self):
        assert get_error_message(TimeoutError()) == "TimeoutError"


class TestErrorComment:
    def test_long_message_truncated(self):
        body = build_error_comment_body("x" * 600, attempts=3)
        assert "x" * 500 + "..." in body
        assert "x" * 501 not in body
        assert "after 3 attempt(s)" in body
        assert "Try again or contact support" in body

    def test_suggestion_included(self):
        body = build_error_comment_body("boom", attempts=1, suggestion="Check the API key")
        assert "**Suggestion:** Check the API key" in body
