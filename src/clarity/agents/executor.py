"""Per-run agent execution.

One ``run`` call sequences a whole agent turn: route the agent, open the
scoped workspace, build the prompt, execute, then read clarifying
questions or deliver the changes. Every failure after the agent produced
a session still returns that session so the caller can persist it.

Source:
- src/clarity/workspace/orchestrator.py (WorkspaceOrchestrator)
- src/clarity/agents/factory.py (AgentStrategyFactory)
- src/clarity/agents/router.py (AgentRouter)
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from src.clarity.agents.factory import AgentStrategyFactory
from src.clarity.agents.prompts import build_prompt
from src.clarity.agents.router import AgentRouter
from src.clarity.agents.types import (
    AgentContext,
    AgentResult,
    ProgressCallback,
    TaskContext,
)
from src.clarity.errors import ClarityError, ErrorCategory
from src.clarity.github.client import GitHubClient
from src.clarity.workspace.orchestrator import DeliveryKind, WorkspaceOrchestrator

logger = logging.getLogger(__name__)

SessionFetcher = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class ExecutionResult:
    """Outcome of one agent turn as seen by the coordinator.

    Attributes:
        success: Whether the turn completed.
        message: Short human-readable outcome.
        error: Failure description when ``success`` is False.
        exception: The exception behind a failure, for classification.
        pr_url: Pull request URL when one was created or updated.
        pr_number: Pull request number.
        pr_branch_name: Branch the changes were pushed to.
        summary: Agent summary or posted solution.
        needs_clarification: The agent asked questions instead of editing.
        clarifying_questions: The questions that were posted.
        is_doc_only: Only documentation paths changed.
        delivery_kind: How the outcome was published.
        cost_usd: Agent cost for the turn.
        duration_ms: Agent wall-clock time.
        agent_type: Agent variant that ran.
        session_id: Agent session produced by the turn.
        session_blob: Encoded session file for that session.
    """

    success: bool
    message: str
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    pr_branch_name: Optional[str] = None
    summary: Optional[str] = None
    needs_clarification: bool = False
    clarifying_questions: Optional[str] = None
    is_doc_only: bool = False
    delivery_kind: Optional[DeliveryKind] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    agent_type: Optional[str] = None
    session_id: Optional[str] = None
    session_blob: Optional[str] = field(default=None, repr=False)


class ExecutionUnit(Protocol):
    """Something that can run one agent turn for a task."""

    async def run(
        self,
        task: TaskContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExecutionResult:
        ...


class HttpSessionFetcher:
    """Downloads a session blob from a signed handover URL."""

    def __init__(self, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, url: str) -> Optional[str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.json().get("session_blob")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to download session blob", extra={"error": str(exc)})
            return None


def _with_agent_result(result: ExecutionResult, agent_result: Optional[AgentResult]) -> ExecutionResult:
    if agent_result is not None:
        result.cost_usd = agent_result.cost_usd
        result.duration_ms = agent_result.duration_ms
        result.session_id = agent_result.session_id
        result.session_blob = agent_result.session_blob
    return result


class AgentExecutor(ExecutionUnit):
    """Runs agent turns inside scoped workspaces.

    Attributes:
        github: Client used to look up existing pull requests.
        workspaces: Workspace lifecycle and delivery.
        router: Resolves the agent configuration for a task.
        factory: Builds a fresh strategy per run.
        session_fetcher: Downloads session blobs from signed URLs.
    """

    def __init__(
        self,
        github: GitHubClient,
        workspaces: WorkspaceOrchestrator,
        router: AgentRouter,
        factory: AgentStrategyFactory,
        session_fetcher: Optional[SessionFetcher] = None,
    ):
        self.github = github
        self.workspaces = workspaces
        self.router = router
        self.factory = factory
        self.session_fetcher = session_fetcher or HttpSessionFetcher()

    async def run(
        self,
        task: TaskContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExecutionResult:
        config = self.router.route(
            task.labels, task.agent_type, task.agent_provider, task.agent_model
        )
        strategy = self.factory.create(config)
        agent_result: Optional[AgentResult] = None

        logger.info(
            "Starting execution",
            extra={
                "request_id": task.request_id,
                "agent_type": config.type.value,
                "provider": config.provider.value if config.provider else None,
                "issue_number": task.issue_number,
                "has_existing_pr": task.has_existing_pr,
                "resuming": bool(task.resume_session_id),
            },
        )

        try:
            pr_branch = await self._resolve_pr_branch(task)
            session_blob = await self._fetch_session(task)

            async with self.workspaces.workspace(task, pr_branch) as run:
                context = AgentContext(
                    workspace_dir=str(run.path),
                    prompt=build_prompt(task),
                    config=config,
                    task=task,
                    resume_session_id=task.resume_session_id if session_blob else None,
                    session_blob=session_blob,
                    on_progress=on_progress,
                )

                validation = await strategy.validate(context)
                if not validation.valid:
                    errors = ", ".join(validation.errors)
                    return ExecutionResult(
                        success=False,
                        message=f"Validation failed: {errors}",
                        error=errors,
                        exception=ClarityError(
                            ErrorCategory.CONFIG,
                            "validate agent",
                            errors,
                            suggestion="Check the agent CLI installation and API keys",
                        ),
                        agent_type=config.type.value,
                    )

                agent_result = await strategy.execute(context)
                if not agent_result.success:
                    return _with_agent_result(
                        ExecutionResult(
                            success=False,
                            message=agent_result.message,
                            error=agent_result.error,
                            exception=ClarityError(
                                ErrorCategory.AGENT,
                                "run agent",
                                agent_result.error or agent_result.message,
                            ),
                            agent_type=config.type.value,
                        ),
                        agent_result,
                    )

                questions = self.workspaces.read_clarifying_questions(run)
                if questions:
                    logger.info("Clarifying questions found", extra={"request_id": task.request_id})
                    await self.workspaces.post_clarifying_questions(run, questions)
                    return _with_agent_result(
                        ExecutionResult(
                            success=True,
                            message="Clarifying questions posted - awaiting user response",
                            needs_clarification=True,
                            clarifying_questions=questions,
                            agent_type=config.type.value,
                        ),
                        agent_result,
                    )

                changes = await self.workspaces.detect_changes(run)
                solution = agent_result.solution or agent_result.message
                delivery = await self.workspaces.deliver(
                    run, changes, solution, strategy.display_name
                )
                return _with_agent_result(
                    ExecutionResult(
                        success=True,
                        message=delivery.message,
                        pr_url=delivery.pr_url,
                        pr_number=delivery.pr_number,
                        pr_branch_name=delivery.pr_branch_name,
                        summary=delivery.summary,
                        is_doc_only=delivery.is_doc_only,
                        delivery_kind=delivery.kind,
                        agent_type=config.type.value,
                    ),
                    agent_result,
                )

        except Exception as exc:
            logger.exception(
                "Error during execution",
                extra={"request_id": task.request_id},
            )
            return _with_agent_result(
                ExecutionResult(
                    success=False,
                    message="Failed to process issue",
                    error=str(exc) or type(exc).__name__,
                    exception=exc,
                    agent_type=config.type.value,
                ),
                agent_result,
            )
        finally:
            await self._cleanup(strategy)

    async def _resolve_pr_branch(self, task: TaskContext) -> Optional[str]:
        if not task.has_existing_pr:
            return None
        details = await self.github.get_pull_request(
            task.owner, task.repo, task.existing_pr_number
        )
        logger.info(
            "Retrieved PR branch for existing PR",
            extra={"pr_number": task.existing_pr_number, "branch": details.head_branch},
        )
        return details.head_branch

    async def _fetch_session(self, task: TaskContext) -> Optional[str]:
        if not (task.resume_session_id and task.session_download_url):
            return None
        blob = await self.session_fetcher(task.session_download_url)
        if blob is None:
            logger.warning(
                "Session blob unavailable; starting a fresh conversation",
                extra={"request_id": task.request_id, "session_id": task.resume_session_id},
            )
        return blob

    async def _cleanup(self, strategy) -> None:
        try:
            await strategy.cleanup()
        except Exception:
            logger.exception("Agent cleanup failed", extra={"agent": strategy.name})
