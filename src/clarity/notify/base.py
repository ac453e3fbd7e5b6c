"""Notifier contract shared by chat and issue-tracker collaborators.

Notifications are best-effort. Callers go through ``notify_safely`` so a
failing collaborator is logged and never turns into a job retry that
would re-run the agent.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, List, Optional, Protocol, runtime_checkable

from src.clarity.state.models import FeatureRequest

logger = logging.getLogger(__name__)


class StatusState(str, Enum):
    QUEUED = "queued"
    WORKING = "working"
    NEEDS_CLARIFICATION = "needs_clarification"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class NotificationThread:
    """Where a request's notifications go.

    Attributes:
        request_id: Request being reported on.
        slack_channel_id: Slack channel, for chat-originated requests.
        slack_thread_ts: Slack thread root.
        slack_message_ts: Message that carries status reactions.
        repository_name: ``owner/repo`` of the anchor issue.
        issue_number: Anchor issue number.
    """

    request_id: str
    slack_channel_id: Optional[str] = None
    slack_thread_ts: Optional[str] = None
    slack_message_ts: Optional[str] = None
    repository_name: Optional[str] = None
    issue_number: Optional[int] = None

    @classmethod
    def from_request(cls, request: FeatureRequest) -> "NotificationThread":
        return cls(
            request_id=request.request_id,
            slack_channel_id=request.slack_channel_id,
            slack_thread_ts=request.slack_thread_ts,
            slack_message_ts=request.slack_trigger_message_ts or request.slack_thread_ts,
            repository_name=request.repository_name,
            issue_number=request.issue_number,
        )

    @property
    def has_slack(self) -> bool:
        return bool(self.slack_channel_id and self.slack_thread_ts)

    @property
    def has_issue(self) -> bool:
        return bool(self.repository_name and "/" in self.repository_name and self.issue_number)


@runtime_checkable
class Notifier(Protocol):
    async def post_comment(self, thread: NotificationThread, body: str) -> None:
        ...

    async def post_status_reaction(
        self, thread: NotificationThread, state: StatusState
    ) -> None:
        ...


async def notify_safely(
    notification: Awaitable[None],
    operation: str,
    request_id: Optional[str] = None,
) -> bool:
    """Await a notification, logging instead of raising on failure.

    Returns:
        True when the notification was delivered.
    """
    try:
        await notification
        return True
    except Exception:
        logger.exception(
            "Notification failed",
            extra={"operation": operation, "request_id": request_id},
        )
        return False


class NullNotifier(Notifier):
    async def post_comment(self, thread: NotificationThread, body: str) -> None:
        return None

    async def post_status_reaction(
        self, thread: NotificationThread, state: StatusState
    ) -> None:
        return None


class CompositeNotifier(Notifier):
    """Fans a notification out to several notifiers.

    Each child is isolated: one failing does not stop the others.
    """

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = notifiers

    async def post_comment(self, thread: NotificationThread, body: str) -> None:
        for notifier in self.notifiers:
            await notify_safely(
                notifier.post_comment(thread, body),
                f"{type(notifier).__name__}.post_comment",
                thread.request_id,
            )

    async def post_status_reaction(
        self, thread: NotificationThread, state: StatusState
    ) -> None:
        for notifier in self.notifiers:
            await notify_safely(
                notifier.post_status_reaction(thread, state),
                f"{type(notifier).__name__}.post_status_reaction",
                thread.request_id,
            )
