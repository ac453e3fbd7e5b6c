"""Issue-comment notifier."""

import logging

from src.clarity.github.client import GitHubClient
from src.clarity.notify.base import NotificationThread, Notifier, StatusState

logger = logging.getLogger(__name__)


class GitHubIssueNotifier(Notifier):
    """Posts comments on the request's anchor issue.

    Status changes are not mirrored to GitHub; the issue already gets a
    comment for every outcome a requester needs to act on.
    """

    def __init__(self, github: GitHubClient):
        self.github = github

    async def post_comment(self, thread: NotificationThread, body: str) -> None:
        if not thread.has_issue:
            return
        owner, repo = thread.repository_name.split("/", 1)
        await self.github.create_comment(owner, repo, thread.issue_number, body)

    async def post_status_reaction(
        self, thread: NotificationThread, state: StatusState
    ) -> None:
        logger.debug(
            "Status change not mirrored to GitHub",
            extra={"request_id": thread.request_id, "state": state.value},
        )
