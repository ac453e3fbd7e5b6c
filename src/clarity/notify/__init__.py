"""Best-effort notifications to chat and issue-tracker collaborators."""

from src.clarity.notify.base import (
    CompositeNotifier,
    NotificationThread,
    Notifier,
    NullNotifier,
    StatusState,
    notify_safely,
)
from src.clarity.notify.github import GitHubIssueNotifier
from src.clarity.notify.slack import (
    STATUS_REACTIONS,
    SlackAPIError,
    SlackNotifier,
    ThreadMessage,
)

__all__ = [
    "CompositeNotifier",
    "GitHubIssueNotifier",
    "NotificationThread",
    "Notifier",
    "NullNotifier",
    "STATUS_REACTIONS",
    "SlackAPIError",
    "SlackNotifier",
    "StatusState",
    "ThreadMessage",
    "notify_safely",
]
