"""Request state models.

This module defines the persistent data model of the pipeline:
- RequestStatus / TaskStatus: lifecycle and compute-lifecycle enums
- FeatureRequest: one task from trigger to terminal outcome
- RequestMessage: one append-only entry in a request's thread
- VALID_TRANSITIONS: the expected status graph

The models use Pydantic for validation, consistent with the queue
payloads in queue/messages.py and the settings in config.py.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    """Lifecycle of a request.

    Stage Flow:
        pending → issue_created → processing ⇄ awaiting_clarification
        → pr_created | completed

    ``error`` and ``cancelled`` are reachable from any non-terminal
    status. Follow-ups re-enter ``processing`` from ``pr_created`` and
    ``completed``; a retry re-enters it from ``error``.
    """

    PENDING = "pending"
    ISSUE_CREATED = "issue_created"
    PROCESSING = "processing"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    PR_CREATED = "pr_created"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Coarse compute-lifecycle status of the current agent turn."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class RequestOrigin(str, Enum):
    SLACK = "slack"
    GITHUB_ISSUE = "github_issue"
    WEB = "web"


class MessageType(str, Enum):
    """Kinds of entries in a request's message thread."""

    INITIAL_REQUEST = "initial_request"
    CLARIFICATION_ASK = "clarification_ask"
    CLARIFICATION_ANSWER = "clarification_answer"
    FOLLOW_UP_REQUEST = "follow_up_request"
    PROCESSING_STARTED = "processing_started"
    PROCESSING_UPDATE = "processing_update"
    PR_CREATED = "pr_created"
    PR_UPDATED = "pr_updated"
    ERROR = "error"
    RETRY = "retry"
    CANCELLED = "cancelled"
    AGENT_THINKING = "agent_thinking"
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    AGENT_FILE_CHANGE = "agent_file_change"
    AGENT_TERMINAL = "agent_terminal"
    AGENT_SUMMARY = "agent_summary"


class MessageSource(str, Enum):
    SLACK = "slack"
    GITHUB = "github"
    WEB = "web"
    SYSTEM = "system"


# Statuses that still own a conversation thread for follow-up routing
ACTIVE_THREAD_STATUSES: FrozenSet[RequestStatus] = frozenset(
    {
        RequestStatus.PROCESSING,
        RequestStatus.AWAITING_CLARIFICATION,
        RequestStatus.PENDING,
        RequestStatus.PR_CREATED,
        RequestStatus.ISSUE_CREATED,
        RequestStatus.COMPLETED,
    }
)

TERMINAL_SUCCESS_STATUSES: FrozenSet[RequestStatus] = frozenset(
    {RequestStatus.PR_CREATED, RequestStatus.COMPLETED}
)

# Message types replayed into later agent prompts
CONVERSATION_MESSAGE_TYPES: FrozenSet[MessageType] = frozenset(
    {
        MessageType.CLARIFICATION_ASK,
        MessageType.CLARIFICATION_ANSWER,
        MessageType.FOLLOW_UP_REQUEST,
    }
)


@dataclass(frozen=True)
class Actor:
    """Who caused a message to be written."""

    id: str
    name: str
    source: MessageSource = MessageSource.SYSTEM


SYSTEM_ACTOR = Actor(id="system", name="Clarity AI", source=MessageSource.SYSTEM)


class FeatureRequest(BaseModel):
    """One task tracked from trigger to terminal outcome.

    Attributes:
        request_id: Globally unique identifier.
        origin: Where the request came from.
        status: Lifecycle status; written only by the state machine.
        task_status: Compute-lifecycle status of the current turn.
        pr_number / pr_url / pr_branch_name: Pull request identity once
            one exists. Follow-ups always target ``pr_branch_name``.
    """

    request_id: str = Field(..., min_length=1)
    origin: RequestOrigin = RequestOrigin.GITHUB_ISSUE

    repository_url: str = Field(..., description="HTTPS URL of the target repository")
    repository_name: str = Field(..., description='Full name "{owner}/{repo}"')
    default_branch: Optional[str] = None

    title: Optional[str] = None
    description: str = ""
    request_type: str = "feature"

    issue_id: Optional[int] = None
    issue_number: Optional[int] = None
    issue_url: Optional[str] = None

    status: RequestStatus = RequestStatus.PENDING
    task_status: TaskStatus = TaskStatus.PENDING

    follow_up_request: Optional[str] = None
    follow_up_author: Optional[str] = None

    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    pr_branch_name: Optional[str] = None

    requester_id: Optional[str] = None
    requester_name: Optional[str] = None
    slack_channel_id: Optional[str] = None
    slack_thread_ts: Optional[str] = None
    slack_trigger_message_ts: Optional[str] = None

    agent_type: Optional[str] = None
    agent_provider: Optional[str] = None
    agent_model: Optional[str] = None

    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def owner(self) -> str:
        return self.repository_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository_name.split("/", 1)[-1]

    @property
    def has_existing_pr(self) -> bool:
        return self.pr_number is not None and self.pr_url is not None


class RequestMessage(BaseModel):
    """Immutable entry in a request's thread, ordered by creation time."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request_id: str
    type: MessageType
    source: MessageSource = MessageSource.SYSTEM
    content: str = ""
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


VALID_TRANSITIONS: Dict[RequestStatus, List[RequestStatus]] = {
    RequestStatus.PENDING: [
        RequestStatus.ISSUE_CREATED,
        RequestStatus.PROCESSING,
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.ISSUE_CREATED: [
        RequestStatus.PROCESSING,
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.PROCESSING: [
        RequestStatus.AWAITING_CLARIFICATION,
        RequestStatus.PR_CREATED,
        RequestStatus.COMPLETED,
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.AWAITING_CLARIFICATION: [
        RequestStatus.PROCESSING,
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    ],
    # Follow-ups on a finished request re-enter processing
    RequestStatus.PR_CREATED: [
        RequestStatus.PROCESSING,
        RequestStatus.COMPLETED,
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.COMPLETED: [
        RequestStatus.PROCESSING,
    ],
    # A retry request re-enters processing
    RequestStatus.ERROR: [
        RequestStatus.PROCESSING,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.CANCELLED: [],
}


def is_valid_transition(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    """Check whether a status change follows the expected graph.

    Re-applying the current status is always valid so that redelivered
    messages are harmless.

    Example:
        >>> is_valid_transition(RequestStatus.PROCESSING, RequestStatus.PR_CREATED)
        True
        >>> is_valid_transition(RequestStatus.CANCELLED, RequestStatus.PROCESSING)
        False
    """
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: RequestStatus) -> bool:
    """Terminal statuses are those with no further automatic progress."""
    return status in TERMINAL_SUCCESS_STATUSES or status in (
        RequestStatus.ERROR,
        RequestStatus.CANCELLED,
    )
