"""GitHub webhook event models.

Two event families reach the pipeline:
- ``issues`` (opened, labeled): a labelled issue becomes a new request.
- ``issue_comment`` (created): a comment on an issue whose request is
  waiting for clarification is treated as the answer.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def github_request_id(owner: str, repository: str, issue_number: int) -> str:
    """Deterministic request id for an issue-originated request.

    A redelivered webhook for the same issue resolves to the same request,
    and an issue comment can find its request without a lookup table.
    """
    return f"gh-{owner}-{repository}-{issue_number}".lower()


class IssueAction(str, Enum):
    """``issues`` actions that can start a request."""

    OPENED = "opened"
    LABELED = "labeled"


class GitHubIssueEvent(BaseModel):
    """An ``issues`` delivery reduced to what intake needs.

    ``added_label`` is only set for ``labeled`` deliveries and names the
    label that was just applied; ``labels`` is the issue's full label set
    after the change.
    """

    action: IssueAction
    issue_number: int = Field(..., gt=0)
    issue_global_id: Optional[int] = None
    issue_url: Optional[str] = None
    title: str = Field(..., min_length=1)
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    added_label: Optional[str] = None
    repository: str = Field(..., min_length=1, description="Name without the owner prefix")
    owner: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1, description="Login of the issue author")

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repository}"

    @property
    def repository_url(self) -> str:
        return f"https://github.com/{self.full_repository}"

    @property
    def request_id(self) -> str:
        return github_request_id(self.owner, self.repository, self.issue_number)


class GitHubIssueCommentEvent(BaseModel):
    """A newly created ``issue_comment`` delivery.

    Comments on pull requests arrive through the same event with
    ``is_pull_request`` set.
    """

    issue_number: int = Field(..., gt=0)
    comment_id: int = Field(..., description="GitHub comment id")
    body: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    author_is_bot: bool = False
    is_pull_request: bool = False
    repository: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)

    @property
    def full_repository(self) -> str:
        return f"{self.owner}/{self.repository}"

    @property
    def request_id(self) -> str:
        return github_request_id(self.owner, self.repository, self.issue_number)
