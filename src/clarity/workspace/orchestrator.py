"""Workspace lifecycle and delivery of agent edits.

Turns an agent's edits into a pushed branch plus a pull request, or
into a comment when there is nothing mergeable. Each run owns one
directory under the base path for its whole life; the directory is
removed on every exit path.

Delivery ordering: commits are pushed before any pull request is
created or updated, so a pull request never references a branch tip
that does not exist on the remote.

Source:
- src/clarity/workspace/git.py (GitRunner)
- src/clarity/workspace/changes.py (classify_changes)
- src/clarity/github/client.py (GitHubClient)
"""

import logging
import os
import re
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional

from src.clarity.agents.types import TaskContext
from src.clarity.github.client import GitHubAPIError, GitHubClient
from src.clarity.github.models import PullRequestAlreadyExists, PullRequestRef
from src.clarity.workspace.changes import ChangeKind, ChangeSet, classify_changes, parse_porcelain_status
from src.clarity.workspace.git import (
    GitCommandError,
    GitRunner,
    build_authenticated_url,
)

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")

BRANCH_PREFIX = "clarity-ai/"
TASK_DOC_DIR = Path("doc") / "ai-task"
DEFAULT_CLONE_TIMEOUT_SECONDS = 300
DEFAULT_PR_BODY = "Automated fix generated by Clarity AI."
PRODUCT_URL = "https://claude.ai/code"


class WorkspaceSetupError(Exception):
    """Raised when the working tree cannot be prepared."""


class BranchAction(str, Enum):
    REUSED_LOCAL = "reused_local"
    TRACKED_REMOTE = "tracked_remote"
    CREATED = "created"


class DeliveryKind(str, Enum):
    PULL_REQUEST_CREATED = "pull_request_created"
    PULL_REQUEST_UPDATED = "pull_request_updated"
    FOLLOW_UP_PUSHED = "follow_up_pushed"
    COMMENT = "comment"


@dataclass
class WorkspaceRun:
    """Per-run context threaded through every workspace step.

    Attributes:
        path: Root of the cloned working tree.
        task: The task being worked on.
        pr_branch: Head branch of the existing pull request, if any.
    """

    path: Path
    task: TaskContext
    pr_branch: Optional[str] = None

    @property
    def is_follow_up(self) -> bool:
        return bool(self.pr_branch) and self.task.has_existing_pr


@dataclass
class DeliveryResult:
    kind: DeliveryKind
    message: str
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    pr_branch_name: Optional[str] = None
    summary: Optional[str] = None
    forced_push: bool = False
    is_doc_only: bool = False

    @property
    def has_pull_request(self) -> bool:
        return self.pr_number is not None


def generated_footer(display_name: str) -> str:
    return f"\n\n---\n🤖 Generated with [{display_name}]({PRODUCT_URL})"


class WorkspaceOrchestrator:
    """Prepares working trees and delivers their changes.

    Attributes:
        github: Client used for pull requests and comments.
        git: Git subprocess runner.
        base_path: Parent directory of all workspaces.
        clone_timeout_seconds: Ceiling for the initial clone.
    """

    def __init__(
        self,
        github: GitHubClient,
        git: Optional[GitRunner] = None,
        base_path: Path = Path("/tmp/workspace"),
        clone_timeout_seconds: int = DEFAULT_CLONE_TIMEOUT_SECONDS,
        git_user_name: str = "Clarity AI Bot",
        git_user_email: str = "clarity-ai@users.noreply.github.com",
    ):
        self.github = github
        self.git = git or GitRunner()
        self.base_path = Path(base_path)
        self.clone_timeout_seconds = clone_timeout_seconds
        self.git_user_name = git_user_name
        self.git_user_email = git_user_email

    def workspace_path(self, request_id: str) -> Path:
        """One directory per request; issue numbers repeat across repositories."""
        return self.base_path / f"request-{_UNSAFE_PATH_CHARS.sub('_', request_id)}"

    @asynccontextmanager
    async def workspace(
        self,
        task: TaskContext,
        pr_branch: Optional[str] = None,
    ) -> AsyncIterator[WorkspaceRun]:
        """Clone the task's repository into a fresh directory.

        Args:
            task: The task being worked on.
            pr_branch: Existing pull request branch to clone instead of
                the default branch.

        Yields:
            The WorkspaceRun for this directory.

        Raises:
            WorkspaceSetupError: If the directory cannot be reset or the
                clone fails or times out.
        """
        path = self.workspace_path(task.request_id)
        logger.info(
            "Setting up workspace",
            extra={
                "workspace": str(path),
                "request_id": task.request_id,
                "pr_branch": pr_branch or "default",
            },
        )

        self._leave_directory(path)
        self._remove_stale(path)
        try:
            await self._prepare(path, task, pr_branch)
            yield WorkspaceRun(path=path, task=task, pr_branch=pr_branch)
        finally:
            self._leave_directory(path)
            self._teardown(path)

    def _leave_directory(self, path: Path) -> None:
        """Move this process out of ``path`` before it is deleted."""
        try:
            cwd = Path.cwd()
        except FileNotFoundError:
            os.chdir("/")
            return
        if cwd == path or path in cwd.parents:
            os.chdir("/")

    def _remove_stale(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise WorkspaceSetupError(
                f"Failed to remove stale workspace at {path}: {exc}"
            ) from exc

    def _teardown(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Failed to remove workspace", extra={"workspace": str(path)})

    async def _prepare(
        self,
        path: Path,
        task: TaskContext,
        pr_branch: Optional[str],
    ) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceSetupError(
                f"Failed to create workspace parent {path.parent}: {exc}"
            ) from exc

        clone_url = build_authenticated_url(task.repository_url, task.github_token)
        try:
            await self.git.clone(
                clone_url,
                path,
                branch=pr_branch,
                timeout=self.clone_timeout_seconds,
            )
            await self.git.config(path, "user.name", self.git_user_name)
            await self.git.config(path, "user.email", self.git_user_email)
            await self.git.fetch(path)
        except GitCommandError as exc:
            raise WorkspaceSetupError(str(exc)) from exc

        # A previous attempt may have left local commits on the branch.
        if pr_branch:
            try:
                await self.git.reset_hard(path, f"origin/{pr_branch}")
                logger.info("Reset branch to remote state", extra={"branch": pr_branch})
            except GitCommandError as exc:
                logger.warning(
                    "Reset to remote skipped",
                    extra={"branch": pr_branch, "reason": exc.stderr},
                )

        logger.info("Workspace setup completed", extra={"workspace": str(path)})

    async def detect_changes(self, run: WorkspaceRun) -> ChangeSet:
        output = await self.git.status_porcelain(run.path)
        return classify_changes(parse_porcelain_status(output))

    @staticmethod
    def branch_name_for(request_id: str) -> str:
        return f"{BRANCH_PREFIX}issue-{request_id}"

    async def ensure_branch(self, run: WorkspaceRun, branch: str) -> BranchAction:
        """Check out ``branch``, reusing whatever an earlier attempt left.

        A local branch is reused as is, a remote-only branch gets a local
        tracking branch, and otherwise a new branch is created.
        """
        branches = await self.git.list_branches(run.path)

        if branch in branches:
            logger.info("Reusing existing local branch", extra={"branch": branch})
            await self.git.checkout(run.path, branch)
            return BranchAction.REUSED_LOCAL

        if f"remotes/origin/{branch}" in branches:
            logger.info("Creating local branch from remote", extra={"branch": branch})
            await self.git.checkout_tracking(run.path, branch)
            return BranchAction.TRACKED_REMOTE

        await self.git.checkout_new(run.path, branch)
        return BranchAction.CREATED

    async def commit_and_push(
        self,
        run: WorkspaceRun,
        branch: str,
        message: str,
        set_upstream: bool = False,
    ) -> bool:
        """Commit everything and push it to ``branch``.

        Remote changes are absorbed with ``pull --rebase`` first. When that
        fails on an automation-owned branch the rebase is aborted and the
        push falls back to ``--force-with-lease``.

        Returns:
            True when the push was forced.

        Raises:
            GitCommandError: If the commit or push fails, or the rebase
                fails on a branch this service does not own.
        """
        await self.git.add_all(run.path)
        await self.git.commit(run.path, message)

        forced = False
        try:
            await self.git.pull_rebase(run.path, branch)
            logger.info("Pulled remote changes before push", extra={"branch": branch})
        except GitCommandError as pull_error:
            try:
                await self.git.rebase_abort(run.path)
            except GitCommandError:
                logger.debug("No rebase in progress", extra={"branch": branch})
            if not branch.startswith(BRANCH_PREFIX):
                raise
            forced = True
            logger.info(
                "Pull-rebase failed, will force-push",
                extra={"branch": branch, "reason": pull_error.stderr},
            )

        await self.git.push(
            run.path, branch, set_upstream=set_upstream, force_with_lease=forced
        )
        logger.info("Pushed to remote", extra={"branch": branch, "forced": forced})
        return forced

    def _read_task_doc(self, run: WorkspaceRun, name: str) -> Optional[str]:
        try:
            content = (run.path / TASK_DOC_DIR / name).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        return content.strip() or None

    def read_clarifying_questions(self, run: WorkspaceRun) -> Optional[str]:
        """Questions the agent left for the requester, if any.

        Status lines claiming the work is complete are dropped; they are
        misleading while the agent is still waiting for answers.
        """
        content = self._read_task_doc(run, f"issue-{run.task.issue_number}-questions.md")
        if content is None:
            return None

        kept = []
        for line in content.split("\n"):
            lower = line.lower()
            if "status:" in lower and (
                "complete" in lower or "done" in lower or "✅" in lower
            ):
                continue
            kept.append(line)
        return "\n".join(kept).strip() or None

    def read_pr_summary(self, run: WorkspaceRun) -> Optional[str]:
        return self._read_task_doc(run, f"issue-{run.task.issue_number}.md")

    @staticmethod
    def pr_title(summary: Optional[str], issue_number: int) -> str:
        if summary:
            first_line = summary.split("\n", 1)[0].lstrip("#").strip()
            if first_line:
                return first_line
        return f"Fix issue #{issue_number}"

    @staticmethod
    def generate_pr_body(summary: Optional[str], issue_number: int) -> str:
        body = (summary or "").strip() or DEFAULT_PR_BODY
        return (
            f"{body}\n\n---\nFixes #{issue_number}\n\n"
            f"🤖 This pull request was generated automatically by "
            f"[Clarity AI]({PRODUCT_URL}) in response to the issue above."
        )

    async def post_clarifying_questions(self, run: WorkspaceRun, questions: str) -> None:
        task = run.task
        body = (
            "🤔 **Clarity AI needs some clarification**\n\n"
            "Before I proceed with the implementation, I have a few questions "
            "to ensure I build exactly what you need:\n\n"
            f"{questions}\n\n"
            "---\n"
            "Please reply to this comment with your answers. Once you respond, "
            "I'll continue with the implementation.\n\n"
            "🤖 Powered by Clarity AI"
        )
        await self.github.create_comment(task.owner, task.repo, task.issue_number, body)

    async def deliver(
        self,
        run: WorkspaceRun,
        changes: ChangeSet,
        solution: str,
        display_name: str,
    ) -> DeliveryResult:
        """Publish the outcome of an agent turn.

        - Follow-up on an existing pull request with any change: push to
          its branch and comment on the pull request.
        - Code changes on a new task: push a work branch and open (or
          update) a pull request.
        - Otherwise, including doc-only edits on a new task: post the
          solution as an issue comment.
        """
        if changes.has_changes and run.is_follow_up:
            return await self._deliver_follow_up(run, changes, solution, display_name)

        if changes.kind is ChangeKind.CODE:
            return await self._deliver_pull_request(run, solution, display_name)

        task = run.task
        await self.github.create_comment(
            task.owner,
            task.repo,
            task.issue_number,
            f"{solution}{generated_footer(display_name)}",
        )
        if changes.is_doc_only:
            logger.info(
                "Doc-only changes detected, skipping PR creation",
                extra={"request_id": task.request_id},
            )
            message = "Analysis complete"
        else:
            message = "Solution posted as comment (no file changes)"
        return DeliveryResult(
            kind=DeliveryKind.COMMENT,
            message=message,
            summary=solution,
            is_doc_only=changes.is_doc_only,
        )

    async def _deliver_follow_up(
        self,
        run: WorkspaceRun,
        changes: ChangeSet,
        solution: str,
        display_name: str,
    ) -> DeliveryResult:
        task = run.task
        branch = run.pr_branch
        requested_by = task.follow_up_author or "user"
        requested = task.follow_up_request or ""
        commit_message = (
            f"Follow-up changes for PR #{task.existing_pr_number}\n\n"
            f"Requested by: {requested_by}\n"
            f"Changes: {requested[:100] or 'Additional changes requested'}\n\n"
            f"🤖 Generated with {display_name}"
        )
        forced = await self.commit_and_push(run, branch, commit_message)

        await self.github.create_comment(
            task.owner,
            task.repo,
            task.existing_pr_number,
            "✅ **Follow-up changes applied**\n\n"
            f"I've pushed additional changes to this PR as requested by {requested_by}:\n\n"
            f"> {requested or 'Additional changes'}\n\n"
            f"{solution}{generated_footer(display_name)}",
        )

        return DeliveryResult(
            kind=DeliveryKind.FOLLOW_UP_PUSHED,
            message=f"Follow-up changes pushed to existing PR: {task.existing_pr_url}",
            pr_number=task.existing_pr_number,
            pr_url=task.existing_pr_url,
            pr_branch_name=branch,
            summary=self.read_pr_summary(run),
            forced_push=forced,
            is_doc_only=changes.is_doc_only,
        )

    async def _deliver_pull_request(
        self,
        run: WorkspaceRun,
        solution: str,
        display_name: str,
    ) -> DeliveryResult:
        task = run.task
        branch = self.branch_name_for(task.request_id)
        await self.ensure_branch(run, branch)
        forced = await self.commit_and_push(
            run,
            branch,
            f"Fix issue #{task.issue_number}: {task.issue_title}",
            set_upstream=True,
        )

        summary = self.read_pr_summary(run)
        title = self.pr_title(summary, task.issue_number)
        body = self.generate_pr_body(summary, task.issue_number)
        base = await self.github.get_default_branch(task.owner, task.repo)

        result = await self.github.create_pull_request(
            task.owner, task.repo, title, body, head=branch, base=base
        )
        if isinstance(result, PullRequestAlreadyExists):
            pull_request = await self._update_existing(run, result, title, body)
            kind = DeliveryKind.PULL_REQUEST_UPDATED
        else:
            pull_request = result.pull_request
            kind = DeliveryKind.PULL_REQUEST_CREATED

        await self.github.create_comment(
            task.owner,
            task.repo,
            task.issue_number,
            f"🔧 I've created a pull request with a potential fix: {pull_request.url}"
            f"\n\n{solution}{generated_footer(display_name)}",
        )

        return DeliveryResult(
            kind=kind,
            message=f"Pull request created successfully: {pull_request.url}",
            pr_number=pull_request.number,
            pr_url=pull_request.url,
            pr_branch_name=branch,
            summary=summary,
            forced_push=forced,
        )

    async def _update_existing(
        self,
        run: WorkspaceRun,
        result: PullRequestAlreadyExists,
        title: str,
        body: str,
    ) -> PullRequestRef:
        task = run.task
        if result.existing is None:
            raise GitHubAPIError(
                f"A pull request already exists for {result.head_branch} "
                "but no open pull request was found",
                status_code=422,
            )
        updated = await self.github.update_pull_request(
            task.owner, task.repo, result.existing.number, title=title, body=body
        )
        logger.info(
            "Updated existing PR",
            extra={"pr_number": updated.number, "pr_url": updated.url},
        )
        return updated
