"""GitHub API client for issue and pull request interactions.

Includes rate limiting and retry logic for API resilience.
"""

from src.clarity.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
)
from src.clarity.github.models import (
    CreatePullRequestResult,
    IssueRef,
    PullRequestAlreadyExists,
    PullRequestCreated,
    PullRequestDetails,
    PullRequestRef,
)

__all__ = [
    "CreatePullRequestResult",
    "GitHubAPIError",
    "GitHubClient",
    "IssueRef",
    "PullRequestAlreadyExists",
    "PullRequestCreated",
    "PullRequestDetails",
    "PullRequestRef",
    "RateLimitError",
]
