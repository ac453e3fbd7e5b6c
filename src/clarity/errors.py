"""Error taxonomy for the request pipeline.

Every failure that reaches the coordinator is classified into an
ErrorCategory so it can be persisted with a stable code and shown to the
requester with a remediation hint.
"""

import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Optional

MAX_COMMENT_MESSAGE_LENGTH = 500
DEFAULT_SUGGESTION = "Try again or contact support"
GENERIC_ERROR_CODE = "PROCESSING_ERROR"


class ErrorCategory(str, Enum):
    """Where a failure originated.

    Attributes:
        CONTAINER: Compute unit crashed or timed out.
        GITHUB: Source-control host API failure.
        CONFIG: Missing credentials or settings.
        QUEUE: Transport failure while sending or receiving.
        SLACK: Chat API failure.
        AGENT: The agent capability reported a failed turn.
        GIT: A git subprocess failed.
        TIMEOUT: A bounded operation exceeded its ceiling.
    """

    CONTAINER = "CONTAINER"
    GITHUB = "GITHUB"
    CONFIG = "CONFIG"
    QUEUE = "QUEUE"
    SLACK = "SLACK"
    AGENT = "AGENT"
    GIT = "GIT"
    TIMEOUT = "TIMEOUT"


class ClarityError(Exception):
    """Classified pipeline failure.

    Attributes:
        category: Error category.
        operation: What was being attempted, phrased as a verb phrase.
        message: Human-readable description of what went wrong.
        suggestion: Remediation hint shown to the requester.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        category: ErrorCategory,
        operation: str,
        message: str,
        suggestion: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.category = category
        self.operation = operation
        self.message = message
        self.suggestion = suggestion
        self.cause = cause
        super().__init__(f"Failed to {operation}: {message}")

    @property
    def code(self) -> str:
        return f"{self.category.value}_ERROR"

    @property
    def is_retryable(self) -> bool:
        """CONFIG errors cannot succeed on redelivery."""
        return self.category != ErrorCategory.CONFIG


@dataclass
class ErrorDetails:
    """Flattened view of an exception for persistence and notifications."""

    message: str
    code: str
    category: Optional[ErrorCategory] = None
    suggestion: Optional[str] = None
    stack: Optional[str] = None


def get_error_message(exc: BaseException) -> str:
    """Return a non-empty message for any exception."""
    message = str(exc)
    return message if message else type(exc).__name__


def get_error_details(exc: BaseException) -> ErrorDetails:
    """Extract persisted error fields from an exception.

    Args:
        exc: Any exception raised while processing a request.

    Returns:
        ErrorDetails with a stable code. Unclassified exceptions get
        the generic PROCESSING_ERROR code.
    """
    stack = "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__)
    )
    if isinstance(exc, ClarityError):
        return ErrorDetails(
            message=get_error_message(exc),
            code=exc.code,
            category=exc.category,
            suggestion=exc.suggestion,
            stack=stack,
        )
    return ErrorDetails(
        message=get_error_message(exc),
        code=GENERIC_ERROR_CODE,
        stack=stack,
    )


def build_error_comment_body(
    message: str,
    attempts: int,
    suggestion: Optional[str] = None,
) -> str:
    """Render the comment posted when a request fails for good.

    Args:
        message: Error message; truncated to 500 characters.
        attempts: Number of delivery attempts made.
        suggestion: Optional remediation hint.

    Returns:
        Markdown comment body.
    """
    truncated = message[:MAX_COMMENT_MESSAGE_LENGTH]
    if len(message) > MAX_COMMENT_MESSAGE_LENGTH:
        truncated += "..."

    return (
        "❌ **Clarity AI could not complete this request**\n\n"
        f"The request failed after {attempts} attempt(s).\n\n"
        f"**Error:**\n```\n{truncated}\n```\n\n"
        f"**Suggestion:** {suggestion or DEFAULT_SUGGESTION}\n\n"
        "---\n🤖 Powered by Clarity AI"
    )
