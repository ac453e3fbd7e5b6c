"""Pydantic models for GitHub pull request and issue responses.

``create_pull_request`` returns ``PullRequestCreated`` or
``PullRequestAlreadyExists`` so callers branch on the variant instead of
catching an exception for the retry case.
"""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field


class PullRequestRef(BaseModel):
    """Number and URL of a pull request."""

    number: int = Field(..., gt=0, description="Pull request number")
    url: str = Field(..., description="HTML URL of the pull request")

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequestRef":
        return cls(number=data["number"], url=data["html_url"])


class PullRequestDetails(PullRequestRef):
    """Pull request fields needed to continue work on its branch."""

    head_branch: str = Field(..., description="Name of the PR's head branch")
    title: str = Field(default="")
    body: str = Field(default="")
    state: str = Field(default="open")

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequestDetails":
        return cls(
            number=data["number"],
            url=data["html_url"],
            head_branch=data["head"]["ref"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state") or "open",
        )


class PullRequestCreated(BaseModel):
    kind: Literal["created"] = "created"
    pull_request: PullRequestRef


class PullRequestAlreadyExists(BaseModel):
    """An open pull request already exists for the requested head branch.

    ``existing`` is None when the provider reported the conflict but the
    open pull request could not be found.
    """

    kind: Literal["already_exists"] = "already_exists"
    head_branch: str
    existing: Optional[PullRequestRef] = None


CreatePullRequestResult = Union[PullRequestCreated, PullRequestAlreadyExists]


class IssueRef(BaseModel):
    id: int = Field(..., description="Global issue id")
    number: int = Field(..., gt=0)
    url: str

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "IssueRef":
        return cls(id=data["id"], number=data["number"], url=data["html_url"])
