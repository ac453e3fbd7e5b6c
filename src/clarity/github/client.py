"""Async GitHub REST client used by the pipeline.

Covers the handful of endpoints the pipeline touches: issue comments,
issue creation for chat-originated requests, pull request create, find,
update and read, and the repository's default branch.

Transient failures (timeouts, connection errors, 408/5xx) are retried
with jittered exponential backoff. An exhausted rate limit is surfaced
immediately as ``RateLimitError`` so the coordinator can decide whether
to requeue.

Source:
- src/clarity/github/models.py (PullRequestRef, CreatePullRequestResult)
- src/clarity/config.py (github_token, github_base_url)
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from src.clarity.github.models import (
    CreatePullRequestResult,
    IssueRef,
    PullRequestAlreadyExists,
    PullRequestCreated,
    PullRequestDetails,
    PullRequestRef,
)


logger = logging.getLogger(__name__)

PR_ALREADY_EXISTS_MARKER = "A pull request already exists"
API_VERSION = "2022-11-28"
USER_AGENT = "ClarityAI-Pipeline/1.0"


def _int_header(response: httpx.Response, name: str) -> Optional[int]:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class GitHubAPIError(Exception):
    """A GitHub call that ended in an error response or never got one.

    ``status_code`` and ``response_body`` are None when the request could
    not be delivered at all (every attempt timed out or failed to connect).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """GitHub refused the call because the token's quota is spent.

    ``retry_after`` prefers the Retry-After header and otherwise counts
    down to ``reset_at`` (epoch seconds from X-RateLimit-Reset).
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after

    @classmethod
    def from_response(cls, response: httpx.Response) -> "RateLimitError":
        reset_at = _int_header(response, "x-ratelimit-reset")
        retry_after = _int_header(response, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))
        return cls(
            "GitHub API rate limit exceeded",
            reset_at=reset_at,
            retry_after=retry_after,
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.request.url),
        )


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and _int_header(response, "x-ratelimit-remaining") == 0


class GitHubClient:
    """Thin async wrapper over the GitHub REST API.

    Works against github.com and GitHub Enterprise Server (pass the
    ``/api/v3`` root as ``base_url``). The underlying ``httpx.AsyncClient``
    is created lazily and recreated if closed; ``transport`` is exposed so
    tests can substitute ``httpx.MockTransport``.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as github:
        ...     await github.create_comment("acme", "widgets", 42, "On it")
    """

    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- transport -----------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        """Full-jitter delay for the given zero-based attempt."""
        ceiling = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, ceiling)

    async def _pause(self, attempt: int, method: str, path: str, reason: str) -> None:
        delay = self._backoff_delay(attempt)
        logger.warning(
            "Transient GitHub failure, will retry",
            extra={
                "method": method,
                "path": path,
                "reason": reason,
                "attempt": attempt + 1,
                "max_retries": self.max_retries,
                "delay": round(delay, 3),
            },
        )
        await asyncio.sleep(delay)

    def _fail(self, method: str, path: str, response: httpx.Response) -> GitHubAPIError:
        body = response.text
        logger.error(
            "GitHub rejected request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "response_body": body[:500],
            },
        )
        return GitHubAPIError(
            f"{method} {path} returned {response.status_code}",
            status_code=response.status_code,
            response_body=body,
            request_url=str(response.request.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one API call, retrying transient failures.

        Returns:
            The first non-error response.

        Raises:
            RateLimitError: The quota is exhausted (never retried here).
            GitHubAPIError: A non-retryable error status, a retryable one
                on the final attempt, or no response after every attempt.
        """
        last_reason = "no attempts made"

        for attempt in range(self.max_retries + 1):
            final = attempt == self.max_retries
            try:
                response = await self.client.request(method, path, json=json_data, params=params)
            except httpx.RequestError as e:
                # TimeoutException is a RequestError subclass.
                last_reason = f"{type(e).__name__}: {e}"
                if not final:
                    await self._pause(attempt, method, path, last_reason)
                continue

            if _is_rate_limited(response):
                error = RateLimitError.from_response(response)
                logger.warning(
                    "GitHub rate limit exhausted",
                    extra={
                        "path": path,
                        "reset_at": error.reset_at,
                        "retry_after": error.retry_after,
                        "limit": _int_header(response, "x-ratelimit-limit"),
                    },
                )
                raise error

            if response.status_code < 400:
                return response

            if response.status_code in self.RETRYABLE_STATUS_CODES and not final:
                await self._pause(attempt, method, path, f"HTTP {response.status_code}")
                continue

            raise self._fail(method, path, response)

        logger.error(
            "GitHub unreachable",
            extra={"method": method, "path": path, "attempts": self.max_retries + 1, "last_error": last_reason},
        )
        raise GitHubAPIError(
            f"{method} {path} got no response after {self.max_retries + 1} attempts: {last_reason}",
            request_url=f"{self.base_url}{path}",
        )

    # -- endpoints -----------------------------------------------------

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> Dict[str, Any]:
        """Comment on an issue (pull requests share the issues endpoint).

        Returns:
            The raw comment object GitHub returns.
        """
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
        comment = response.json()
        logger.info(
            "Posted issue comment",
            extra={
                "repository": f"{owner}/{repo}",
                "issue_number": issue_number,
                "comment_id": comment.get("id"),
                "body_length": len(body),
            },
        )
        return comment

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        labels: Optional[List[str]] = None,
    ) -> IssueRef:
        """Open a new issue, used to give chat-originated requests an anchor."""
        payload: Dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels

        response = await self._request("POST", f"/repos/{owner}/{repo}/issues", json_data=payload)
        issue = IssueRef.from_github_response(response.json())
        logger.info(
            "Opened issue",
            extra={"repository": f"{owner}/{repo}", "issue_number": issue.number, "labels": labels or []},
        )
        return issue

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> CreatePullRequestResult:
        """Open a pull request from ``head`` into ``base``.

        When GitHub answers 422 because a pull request for ``head`` is
        already open (a redelivered or retried turn), the result is
        ``PullRequestAlreadyExists`` carrying that pull request if the
        lookup finds it.

        Raises:
            GitHubAPIError: For any other failure.
        """
        try:
            response = await self._request(
                "POST",
                f"/repos/{owner}/{repo}/pulls",
                json_data={"title": title, "body": body, "head": head, "base": base},
            )
        except GitHubAPIError as e:
            if e.status_code != 422 or PR_ALREADY_EXISTS_MARKER not in (e.response_body or ""):
                raise
            existing = await self.find_open_pull_request(owner, repo, head)
            logger.info(
                "Pull request already open for branch",
                extra={
                    "repository": f"{owner}/{repo}",
                    "head": head,
                    "pr_number": existing.number if existing else None,
                },
            )
            return PullRequestAlreadyExists(head_branch=head, existing=existing)

        pull_request = PullRequestRef.from_github_response(response.json())
        logger.info(
            "Opened pull request",
            extra={
                "repository": f"{owner}/{repo}",
                "head": head,
                "base": base,
                "pr_number": pull_request.number,
                "pr_url": pull_request.url,
            },
        )
        return PullRequestCreated(pull_request=pull_request)

    async def find_open_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
    ) -> Optional[PullRequestRef]:
        """The open pull request whose head is ``owner:head``, if any."""
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{head}", "state": "open", "per_page": 1},
        )
        matches = response.json()
        return PullRequestRef.from_github_response(matches[0]) if matches else None

    async def update_pull_request(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        title: Optional[str] = None,
        body: Optional[str] = None,
    ) -> PullRequestRef:
        changes = {key: value for key, value in (("title", title), ("body", body)) if value is not None}
        response = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/pulls/{pr_number}", json_data=changes
        )
        logger.info(
            "Updated pull request",
            extra={"repository": f"{owner}/{repo}", "pr_number": pr_number, "fields": sorted(changes)},
        )
        return PullRequestRef.from_github_response(response.json())

    async def get_pull_request(
        self,
        owner: str,
        repo: str,
        pr_number: int,
    ) -> PullRequestDetails:
        response = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
        return PullRequestDetails.from_github_response(response.json())

    async def get_default_branch(self, owner: str, repo: str) -> str:
        response = await self._request("GET", f"/repos/{owner}/{repo}")
        return response.json()["default_branch"]

    async def health_check(self) -> bool:
        """True when the token authenticates against ``GET /user``."""
        try:
            response = await self.client.get("/user")
        except httpx.HTTPError as e:
            logger.warning("GitHub health check failed", extra={"error": str(e)})
            return False
        return response.status_code == 200
