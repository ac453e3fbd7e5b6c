"""Lifecycle events the coordinator publishes about each request."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """What happened to the request.

    STATE_TRANSITION is a status change; COMPLETION a turn that ended in a
    pull request or a comment; CLARIFICATION a turn that ended with
    questions; RETRY a failed turn handed back to the queue; ERROR a
    failure on the final attempt.
    """

    STATE_TRANSITION = "state_transition"
    COMPLETION = "completion"
    CLARIFICATION = "clarification"
    RETRY = "retry"
    ERROR = "error"


class RequestEvent(BaseModel):
    """One observation about one request.

    ``details`` keys by event type:

    - STATE_TRANSITION: ``from_status``, ``to_status``
    - COMPLETION: ``outcome``, ``pr_number``, ``duration_seconds``, ``cost_usd``
    - CLARIFICATION: ``question_count``
    - RETRY: ``attempt``, ``error_message``
    - ERROR: ``error_code``, ``category``, ``error_message``, ``attempt``
    """

    event_type: EventType
    request_id: str = Field(..., min_length=1)
    repository: str = Field(default="unknown", min_length=1, description="owner/repo")
    timestamp: datetime = Field(default_factory=_utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Event fields plus ``details`` in one flat mapping for log extras.

        Example:
            >>> RequestEvent(event_type=EventType.RETRY, request_id="fr-1").to_log_dict()["event_type"]
            'retry'
        """
        flat: Dict[str, Any] = dict(self.details)
        flat.update(
            event_type=self.event_type.value,
            request_id=self.request_id,
            repository=self.repository,
            timestamp=self.timestamp.isoformat(),
        )
        return flat
