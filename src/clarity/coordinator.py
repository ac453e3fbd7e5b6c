"""Pipeline coordinator: dispatches queue deliveries to request handlers.

Each envelope in a batch is handled sequentially. Handlers own their
envelope's ack/retry decision; the retry policy itself lives in
``handle_retry_or_fail``.

Ordering within one agent turn:
1. The request moves to ``processing``.
2. The execution unit runs the turn.
3. The returned session is saved, before anything else happens.
4. Status is written, then collaborators are notified (best-effort).

Source:
- src/clarity/queue/abstractions.py (get_retry_info, handle_retry_or_fail)
- src/clarity/state/machine.py (RequestStateMachine)
- src/clarity/agents/executor.py (ExecutionUnit, ExecutionResult)
- src/clarity/sessions/ (SessionRepository, signed download URLs)
- src/clarity/notify/ (Notifier, notify_safely)
- src/clarity/events/ (EventEmitter)
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from pydantic import ValidationError

from src.clarity.agents.executor import ExecutionResult, ExecutionUnit
from src.clarity.agents.prompts import format_conversation_history
from src.clarity.agents.types import TaskContext
from src.clarity.config import ClaritySettings
from src.clarity.errors import (
    ClarityError,
    ErrorDetails,
    ErrorCategory,
    build_error_comment_body,
    get_error_details,
)
from src.clarity.events.emitter import EventEmitter, NullEventEmitter
from src.clarity.events.models import EventType, RequestEvent
from src.clarity.github.client import GitHubAPIError, GitHubClient
from src.clarity.github.models import IssueRef
from src.clarity.mention import (
    HELP_TEXT,
    extract_title,
    generate_request_id,
    parse_clarity_command,
    resolve_repository,
)
from src.clarity.notify.base import (
    NotificationThread,
    Notifier,
    NullNotifier,
    StatusState,
    notify_safely,
)
from src.clarity.notify.formatting import (
    clarification_message,
    feature_request_confirmation,
    follow_up_ack_message,
    no_code_changes_message,
    pull_request_message,
    request_type_emoji,
    truncate_text,
)
from src.clarity.notify.slack import SlackNotifier
from src.clarity.queue.abstractions import (
    DEFAULT_MAX_ATTEMPTS,
    QueueBatch,
    QueueMessage,
    QueueProducer,
    RetryInfo,
    get_retry_info,
    handle_retry_or_fail,
)
from src.clarity.queue.messages import (
    IssueQueueMessage,
    SlackAppMentionMessage,
    SlackClarificationAnswerMessage,
    SlackFeatureRequestMessage,
    SlackRetryRequestMessage,
    SlackSuggestChangesMessage,
    parse_queue_message,
)
from src.clarity.sessions.repository import SessionRepository
from src.clarity.sessions.signed_url import (
    DEFAULT_SIGNED_URL_TTL_SECONDS,
    build_session_download_url,
    generate_signed_token,
)
from src.clarity.state.machine import RequestStateMachine
from src.clarity.state.models import (
    Actor,
    FeatureRequest,
    MessageSource,
    MessageType,
    RequestOrigin,
    RequestStatus,
)
from src.clarity.workspace.git import GitCommandError
from src.clarity.workspace.orchestrator import WorkspaceSetupError

logger = logging.getLogger(__name__)

AI_TITLE_PATTERN = re.compile(r"##\s*Title\s*\n+([^\n#]+)", re.IGNORECASE)
FEATURE_REQUEST_ERROR_CODE = "SLACK_REQUEST_ERROR"
SLACK_LABEL = "slack"


@dataclass(frozen=True)
class CoordinatorSettings:
    """Scalar configuration for the coordinator.

    Attributes:
        session_signing_secret: HMAC secret for session download tokens.
        public_base_url: Base URL the execution unit downloads sessions from.
        max_attempts: Delivery attempts before a turn fails for good.
        signed_url_ttl_seconds: Lifetime of session download tokens.
        session_ttl_days: Session retention; None uses the repository default.
        github_token: Token handed to the execution unit.
        trigger_label: Label put on issues opened for chat requests.
        available_repositories: ``owner/repo`` names mentions may target.
        default_repository: Repository used when a mention names none.
    """

    session_signing_secret: str = field(repr=False)
    public_base_url: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    signed_url_ttl_seconds: int = DEFAULT_SIGNED_URL_TTL_SECONDS
    session_ttl_days: Optional[int] = None
    github_token: str = field(default="", repr=False)
    trigger_label: str = "clarity-ai"
    available_repositories: Tuple[str, ...] = ()
    default_repository: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: ClaritySettings) -> "CoordinatorSettings":
        return cls(
            session_signing_secret=settings.session_signing_secret,
            public_base_url=settings.public_base_url,
            max_attempts=settings.max_attempts,
            signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
            session_ttl_days=settings.session_ttl_days,
            github_token=settings.github_token,
            trigger_label=settings.trigger_label,
            available_repositories=tuple(settings.available_repositories),
            default_repository=settings.default_repository,
        )


def classify_error(exc: BaseException) -> BaseException:
    """Map component exceptions onto ClarityError categories.

    Unrecognised exceptions are returned unchanged and persist with the
    generic PROCESSING_ERROR code.
    """
    if isinstance(exc, ClarityError):
        return exc

    if isinstance(exc, (GitCommandError, WorkspaceSetupError)):
        classified = ClarityError(
            ErrorCategory.GIT,
            "prepare or push the workspace",
            str(exc),
            suggestion="Check repository access and branch state, then retry",
            cause=exc,
        )
    elif isinstance(exc, GitHubAPIError):
        classified = ClarityError(
            ErrorCategory.GITHUB,
            "call the GitHub API",
            str(exc),
            suggestion="Check the GitHub token permissions or retry later",
            cause=exc,
        )
    elif isinstance(exc, asyncio.TimeoutError):
        classified = ClarityError(
            ErrorCategory.TIMEOUT,
            "finish within the time limit",
            str(exc) or "Operation timed out",
            suggestion="Split the request into smaller tasks",
            cause=exc,
        )
    else:
        return exc

    classified.__cause__ = exc
    return classified


def extract_ai_title(summary: Optional[str]) -> Optional[str]:
    """Title from a ``## Title`` section of an agent summary."""
    if not summary:
        return None
    match = AI_TITLE_PATTERN.search(summary)
    if match is None:
        return None
    return match.group(1).strip() or None


def issue_message_for(request: FeatureRequest, **overrides: Any) -> IssueQueueMessage:
    """Rebuild an issue work item from a stored request."""
    if not request.issue_number:
        raise ValueError(f"Request {request.request_id} has no anchor issue")

    fields: Dict[str, Any] = {
        "request_id": request.request_id,
        "repository_url": request.repository_url,
        "repository_name": request.repository_name,
        "issue_id": request.issue_id,
        "issue_number": request.issue_number,
        "issue_title": request.title or "",
        "issue_body": request.description,
        "author": request.requester_name or "unknown",
        "existing_pr_number": request.pr_number,
        "existing_pr_url": request.pr_url,
        "agent_type": request.agent_type,
        "agent_provider": request.agent_provider,
        "agent_model": request.agent_model,
    }
    fields.update(overrides)
    return IssueQueueMessage(**fields)


class PipelineCoordinator:
    """Dispatches queue envelopes and drives requests through their turns.

    Attributes:
        machine: Sole writer of request status.
        sessions: Agent session storage.
        executor: Runs one agent turn.
        producer: Queue for follow-on work items.
        github: Used to open anchor issues for chat requests.
        settings: Scalar coordinator configuration.
        chat: Slack notifier, when Slack is configured.
        issue_notifier: Notifier for terminal failures on the anchor issue.
        event_emitter: Observability sink.
    """

    def __init__(
        self,
        machine: RequestStateMachine,
        sessions: SessionRepository,
        executor: ExecutionUnit,
        producer: QueueProducer,
        github: GitHubClient,
        settings: CoordinatorSettings,
        chat: Optional[SlackNotifier] = None,
        issue_notifier: Optional[Notifier] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.machine = machine
        self.sessions = sessions
        self.executor = executor
        self.producer = producer
        self.github = github
        self.settings = settings
        self.chat = chat
        self.issue_notifier = issue_notifier or NullNotifier()
        self.event_emitter = event_emitter or NullEventEmitter()

    async def process_batch(self, batch: QueueBatch[Any]) -> None:
        logger.info(
            "Processing queue batch",
            extra={"queue": batch.queue, "message_count": len(batch.messages)},
        )

        for message in batch.messages:
            try:
                body = parse_queue_message(message.body)
            except ValidationError as exc:
                logger.error(
                    "Dropping malformed queue message",
                    extra={"message_id": message.id, "errors": exc.errors()},
                )
                message.ack()
                continue

            if isinstance(body, SlackAppMentionMessage):
                await self.handle_app_mention(message, body)
            elif isinstance(body, SlackFeatureRequestMessage):
                await self.handle_feature_request(message, body)
            elif isinstance(body, SlackRetryRequestMessage):
                await self.handle_retry_request(message, body)
            elif isinstance(body, SlackClarificationAnswerMessage):
                await self.handle_clarification_answer(message, body)
            elif isinstance(body, SlackSuggestChangesMessage):
                await self.handle_suggest_changes(message, body)
            else:
                await self.handle_issue_message(message, body)

        logger.info(
            "Queue batch processing completed",
            extra={"queue": batch.queue, "message_count": len(batch.messages)},
        )

    # ------------------------------------------------------------------
    # Agent turns
    # ------------------------------------------------------------------

    async def handle_issue_message(
        self, message: QueueMessage[Any], data: IssueQueueMessage
    ) -> None:
        """Run one agent turn for an issue work item."""
        retry = get_retry_info(message, self.settings.max_attempts)

        logger.info(
            "Processing issue from queue",
            extra={
                "request_id": data.request_id,
                "issue_number": data.issue_number,
                "repository": data.repository_name,
                "attempt": retry.attempt_number,
                "is_last_attempt": retry.is_last_attempt,
                "is_follow_up": data.is_follow_up,
            },
        )

        try:
            previous = await self.machine.get_request(data.request_id)
            if previous is not None and previous.status is RequestStatus.CANCELLED:
                logger.info(
                    "Request cancelled before processing, skipping",
                    extra={"request_id": data.request_id},
                )
                message.ack()
                return

            request = await self.machine.start_processing(data.request_id)
            await self._emit_transition(request, previous.status if previous else None)

            thread = NotificationThread.from_request(request)
            await self._react(thread, StatusState.WORKING)

            if data.is_follow_up and data.follow_up_request and retry.attempt_number == 1:
                await self._post_chat(
                    thread,
                    follow_up_ack_message(
                        data.follow_up_author or "user",
                        data.follow_up_request,
                        data.existing_pr_number is not None,
                    ),
                    "follow-up acknowledgement",
                )

            task = await self._build_task(data)
            result = await self.executor.run(task)

            await self._save_session(data.request_id, result)

            # a cancel during the run wins over whatever the agent produced
            current = await self.machine.get_request(data.request_id)
            if current is not None and current.status is RequestStatus.CANCELLED:
                logger.info(
                    "Request cancelled while the agent ran, keeping cancelled status",
                    extra={"request_id": data.request_id, "agent_success": result.success},
                )
                message.ack()
                return

            if not result.success:
                if result.exception is not None:
                    raise result.exception
                raise ClarityError(
                    ErrorCategory.AGENT,
                    "process issue",
                    result.error or result.message,
                    suggestion="Check the agent logs or retry the request",
                )

            if result.needs_clarification:
                await self._handle_clarification_needed(data, request, result)
            else:
                await self._handle_completion(data, request, result)

            message.ack()
            logger.info("Message acknowledged", extra={"request_id": data.request_id})

        except Exception as exc:
            await self._handle_issue_error(message, data, exc, retry)

    async def _build_task(self, data: IssueQueueMessage) -> TaskContext:
        resume_session_id: Optional[str] = None
        download_url: Optional[str] = None
        history: Optional[str] = None

        if data.is_follow_up:
            session = await self.sessions.get_for_request(data.request_id)
            if session is not None:
                token = generate_signed_token(
                    data.request_id,
                    self.settings.session_signing_secret,
                    self.settings.signed_url_ttl_seconds,
                )
                download_url = build_session_download_url(
                    self.settings.public_base_url, data.request_id, token.token
                )
                resume_session_id = session.session_id
                logger.info(
                    "Session download URL attached for follow-up",
                    extra={
                        "request_id": data.request_id,
                        "session_id": session.session_id,
                        "blob_size_bytes": session.blob_size_bytes,
                    },
                )
            else:
                logger.info(
                    "No session found for follow-up request",
                    extra={"request_id": data.request_id},
                )

        if resume_session_id is None:
            messages = await self.machine.get_agent_conversation_context(data.request_id)
            if messages:
                history = format_conversation_history(messages)

        return TaskContext(
            request_id=data.request_id,
            repository_url=data.repository_url,
            repository_name=data.repository_name,
            issue_number=data.issue_number,
            issue_title=data.issue_title,
            issue_body=data.issue_body,
            issue_id=str(data.issue_id) if data.issue_id is not None else None,
            labels=tuple(data.labels),
            author=data.author,
            follow_up_request=data.follow_up_request,
            follow_up_author=data.follow_up_author,
            existing_pr_number=data.existing_pr_number,
            existing_pr_url=data.existing_pr_url,
            conversation_history=history,
            github_token=self.settings.github_token,
            resume_session_id=resume_session_id,
            session_download_url=download_url,
            agent_type=data.agent_type,
            agent_provider=data.agent_provider,
            agent_model=data.agent_model,
        )

    async def _save_session(self, request_id: str, result: ExecutionResult) -> None:
        if not (result.session_id and result.session_blob):
            return
        try:
            await self.sessions.save(
                request_id,
                result.session_id,
                result.agent_type or "claude-code",
                result.session_blob,
                blob_size_bytes=len(result.session_blob),
                ttl_days=self.settings.session_ttl_days,
            )
            logger.info(
                "Session blob saved",
                extra={
                    "request_id": request_id,
                    "session_id": result.session_id,
                    "blob_size_bytes": len(result.session_blob),
                    "outcome": "success" if result.success else "error",
                },
            )
        except Exception:
            # The turn's outcome still gets recorded without its session
            logger.exception(
                "Failed to save session blob",
                extra={"request_id": request_id, "session_id": result.session_id},
            )

    async def _handle_clarification_needed(
        self,
        data: IssueQueueMessage,
        request: FeatureRequest,
        result: ExecutionResult,
    ) -> None:
        questions = result.clarifying_questions or ""
        updated = await self.machine.request_clarification(data.request_id, questions)
        await self._emit_transition(updated, request.status)
        await self._emit(
            EventType.CLARIFICATION,
            updated,
            question_count=max(1, questions.count("?")),
        )

        thread = NotificationThread.from_request(updated)
        await self._react(thread, StatusState.NEEDS_CLARIFICATION)
        await self._post_chat(thread, clarification_message(questions), "clarification")

    async def _handle_completion(
        self,
        data: IssueQueueMessage,
        request: FeatureRequest,
        result: ExecutionResult,
    ) -> None:
        ai_title = extract_ai_title(result.summary)
        if ai_title and not request.title:
            await self.machine.update_title(data.request_id, ai_title)

        pr_url = result.pr_url or data.existing_pr_url
        pr_number = result.pr_number or data.existing_pr_number
        summary = result.summary or result.message

        if pr_url and pr_number:
            updated = await self.machine.complete_with_pr(
                data.request_id,
                pr_number,
                pr_url,
                pr_branch_name=result.pr_branch_name,
                summary=summary,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )
            text = pull_request_message(
                pr_url,
                pr_number,
                data.is_follow_up,
                summary=result.summary,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )
        else:
            updated = await self.machine.mark_processed(
                data.request_id,
                summary=summary,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )
            text = no_code_changes_message(
                summary,
                issue_number=data.issue_number,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
            )

        await self._emit_transition(updated, request.status)
        await self._emit(
            EventType.COMPLETION,
            updated,
            outcome=updated.status.value,
            pr_number=pr_number,
            is_doc_only=result.is_doc_only,
            cost_usd=result.cost_usd,
            duration_seconds=(result.duration_ms / 1000.0) if result.duration_ms else None,
        )

        thread = NotificationThread.from_request(updated)
        await self._react(thread, StatusState.SUCCEEDED)
        await self._post_chat(thread, text, "completion")

    async def _handle_issue_error(
        self,
        message: QueueMessage[Any],
        data: IssueQueueMessage,
        exc: BaseException,
        retry: RetryInfo,
    ) -> None:
        classified = classify_error(exc)
        details = get_error_details(classified)
        is_final = retry.is_last_attempt or (
            isinstance(classified, ClarityError) and not classified.is_retryable
        )

        logger.error(
            "Failed to process issue",
            extra={
                "request_id": data.request_id,
                "issue_number": data.issue_number,
                "error": details.message,
                "code": details.code,
                "category": details.category.value if details.category else None,
                "attempt": retry.attempt_number,
                "is_final": is_final,
            },
        )

        if is_final:
            await self._fail_request(data, details, retry.attempt_number)
        else:
            try:
                await self.machine.add_retry_message(
                    data.request_id, retry.attempt_number, details.message
                )
            except Exception:
                logger.exception(
                    "Failed to record retry message",
                    extra={"request_id": data.request_id},
                )
            await self._emit_raw(
                EventType.RETRY,
                data.request_id,
                data.repository_name,
                attempt=retry.attempt_number,
                error_message=details.message,
            )

        async def on_final_failure() -> None:
            logger.error(
                "Final failure for issue processing",
                extra={"request_id": data.request_id},
            )

        await handle_retry_or_fail(message, is_final, on_final_failure)

    async def _fail_request(
        self, data: IssueQueueMessage, details: ErrorDetails, attempt: int
    ) -> None:
        request: Optional[FeatureRequest] = None
        try:
            previous = await self.machine.get_request(data.request_id)
            request = await self.machine.mark_error(
                data.request_id, details.code, details.message, details.stack, attempt
            )
            await self._emit_transition(request, previous.status if previous else None)
        except Exception:
            logger.exception(
                "Failed to update error status",
                extra={"request_id": data.request_id},
            )

        await self._emit_raw(
            EventType.ERROR,
            data.request_id,
            data.repository_name,
            error_code=details.code,
            category=details.category.value if details.category else None,
            error_message=details.message,
            attempt=attempt,
        )

        if request is not None:
            thread = NotificationThread.from_request(request)
        else:
            thread = NotificationThread(
                request_id=data.request_id,
                repository_name=data.repository_name,
                issue_number=data.issue_number,
            )
        body = build_error_comment_body(details.message, attempt, details.suggestion)
        await self._react(thread, StatusState.FAILED)
        await self._post_chat(thread, body, "error")
        await notify_safely(
            self.issue_notifier.post_comment(thread, body),
            "issue error comment",
            data.request_id,
        )

    # ------------------------------------------------------------------
    # Chat-originated work
    # ------------------------------------------------------------------

    async def handle_feature_request(
        self, message: QueueMessage[Any], data: SlackFeatureRequestMessage
    ) -> None:
        """Open the anchor issue, record the request and queue its first turn."""
        retry = get_retry_info(message, self.settings.max_attempts)

        logger.info(
            "Processing Slack feature request",
            extra={
                "request_id": data.request_id,
                "repository": data.repository_name,
                "channel_id": data.channel_id,
                "attempt": retry.attempt_number,
            },
        )

        try:
            existing = await self.machine.get_request(data.request_id)
            issue = await self._ensure_issue(data, existing)
            issue_title = f"{request_type_emoji(data.request_type)} {data.title}"
            labels = [self.settings.trigger_label, data.request_type, SLACK_LABEL]

            if data.from_mention:
                thread_ts = data.trigger_thread_ts or data.trigger_message_ts
            else:
                thread_ts = data.thread_ts

            request = await self.machine.create_request(
                FeatureRequest(
                    request_id=data.request_id,
                    origin=RequestOrigin.SLACK,
                    repository_url=data.repository_url,
                    repository_name=data.repository_name,
                    title=data.title,
                    description=data.description,
                    request_type=data.request_type,
                    issue_id=issue.id,
                    issue_number=issue.number,
                    issue_url=issue.url,
                    status=RequestStatus.ISSUE_CREATED,
                    requester_id=data.user_id,
                    requester_name=data.user_name,
                    slack_channel_id=data.channel_id,
                    slack_thread_ts=thread_ts,
                    slack_trigger_message_ts=data.trigger_message_ts,
                    agent_type=data.agent_type,
                    agent_provider=data.agent_provider,
                    agent_model=data.agent_model,
                ),
                Actor(id=data.user_id, name=data.user_name, source=MessageSource.SLACK),
            )
            if request.issue_number != issue.number:
                request = await self.machine.update_issue(
                    data.request_id, issue.number, issue.id, issue.url
                )

            if retry.attempt_number == 1 and self.chat is not None:
                await self._confirm_feature_request(data, issue, thread_ts)

            await self.producer.send(
                issue_message_for(
                    request,
                    issue_title=issue_title,
                    labels=labels,
                    author=data.user_name,
                    triggered_by="slack",
                ).model_dump()
            )

            logger.info(
                "Slack feature request processed, agent turn queued",
                extra={"request_id": data.request_id, "issue_number": issue.number},
            )
            message.ack()

        except Exception as exc:
            await self._handle_feature_request_error(message, data, exc, retry)

    async def _ensure_issue(
        self,
        data: SlackFeatureRequestMessage,
        existing: Optional[FeatureRequest],
    ) -> IssueRef:
        if existing and existing.issue_number and existing.issue_id and existing.issue_url:
            logger.info(
                "Using existing GitHub issue from previous attempt",
                extra={"request_id": data.request_id, "issue_number": existing.issue_number},
            )
            return IssueRef(
                id=existing.issue_id, number=existing.issue_number, url=existing.issue_url
            )
        if data.issue_number and data.issue_id and data.issue_url:
            return IssueRef(id=data.issue_id, number=data.issue_number, url=data.issue_url)

        body = (
            "## Feature Request from Slack\n\n"
            f"**Requested by:** @{data.user_name}\n"
            f"**Type:** {data.request_type}\n"
            f"**Tracking ID:** `{data.request_id}`\n\n"
            f"## Description\n\n{data.description}\n\n"
            "---\n*Created via Slack*"
        )
        return await self.github.create_issue(
            data.owner,
            data.repo,
            f"{request_type_emoji(data.request_type)} {data.title}",
            body,
            labels=[self.settings.trigger_label, data.request_type, SLACK_LABEL],
        )

    async def _confirm_feature_request(
        self,
        data: SlackFeatureRequestMessage,
        issue: IssueRef,
        thread_ts: Optional[str],
    ) -> None:
        text = feature_request_confirmation(
            data.request_id,
            issue.number,
            issue.url,
            data.repository_name,
            # Mention titles are generated, so they are not echoed back
            title=None if data.from_mention else data.title,
        )
        try:
            posted_ts = await self.chat.post_message(data.channel_id, text, thread_ts)
        except Exception:
            logger.exception(
                "Failed to post Slack confirmation",
                extra={"request_id": data.request_id},
            )
            return
        if not thread_ts and posted_ts:
            await self.machine.update_slack_thread(data.request_id, data.channel_id, posted_ts)

    async def _handle_feature_request_error(
        self,
        message: QueueMessage[Any],
        data: SlackFeatureRequestMessage,
        exc: BaseException,
        retry: RetryInfo,
    ) -> None:
        details = get_error_details(classify_error(exc))
        logger.error(
            "Failed to process Slack feature request",
            extra={
                "request_id": data.request_id,
                "error": details.message,
                "attempt": retry.attempt_number,
                "is_last_attempt": retry.is_last_attempt,
            },
        )

        if await self.machine.get_request(data.request_id) is not None:
            try:
                if retry.is_last_attempt:
                    await self.machine.mark_error(
                        data.request_id,
                        FEATURE_REQUEST_ERROR_CODE,
                        details.message,
                        attempt=retry.attempt_number,
                    )
                else:
                    await self.machine.add_retry_message(
                        data.request_id, retry.attempt_number, details.message
                    )
            except Exception:
                logger.exception(
                    "Failed to record feature request failure",
                    extra={"request_id": data.request_id},
                )

        if retry.is_last_attempt:
            thread = NotificationThread(
                request_id=data.request_id,
                slack_channel_id=data.channel_id,
                slack_thread_ts=data.trigger_thread_ts or data.trigger_message_ts or data.thread_ts,
                slack_message_ts=data.trigger_message_ts,
            )
            await self._react(thread, StatusState.FAILED)
            await self._post_chat(
                thread,
                build_error_comment_body(details.message, retry.attempt_number, details.suggestion),
                "feature request error",
            )

        await handle_retry_or_fail(message, retry.is_last_attempt)

    async def handle_retry_request(
        self, message: QueueMessage[Any], data: SlackRetryRequestMessage
    ) -> None:
        """Re-queue a request at a user's request."""
        logger.info(
            "Processing Slack retry request",
            extra={"request_id": data.request_id, "user_id": data.user_id},
        )

        try:
            request = await self.machine.get_request(data.request_id)
            if request is None:
                logger.warning("No request found for retry", extra={"request_id": data.request_id})
                message.ack()
                return

            request = await self.machine.handle_retry(
                data.request_id,
                Actor(id=data.user_id, name=data.user_name, source=MessageSource.SLACK),
            )
            await self.producer.send(
                issue_message_for(request, is_retry=True, triggered_by="slack").model_dump()
            )
            logger.info("Request re-queued for retry", extra={"request_id": data.request_id})

            thread = NotificationThread(
                request_id=request.request_id,
                slack_channel_id=data.channel_id or request.slack_channel_id,
                slack_thread_ts=data.thread_ts or request.slack_thread_ts,
            )
            await self._post_chat(
                thread,
                "*Retrying...* Processing has been restarted for this request.",
                "retry acknowledgement",
            )
            message.ack()
        except Exception:
            logger.exception(
                "Failed to process Slack retry request",
                extra={"request_id": data.request_id},
            )
            message.retry()

    async def handle_clarification_answer(
        self, message: QueueMessage[Any], data: SlackClarificationAnswerMessage
    ) -> None:
        """Record the answer and run the next turn inline with the same envelope."""
        logger.info(
            "Processing Slack clarification answer",
            extra={"request_id": data.request_id},
        )

        try:
            request = await self.machine.get_request(data.request_id)
            if request is None:
                logger.warning(
                    "No request found for clarification answer",
                    extra={"request_id": data.request_id},
                )
                message.ack()
                return

            if data.message_ts and await self.machine.has_follow_up_with_message_ts(
                data.request_id, data.message_ts, MessageType.CLARIFICATION_ANSWER
            ):
                # redelivery; the answer was recorded on an earlier attempt
                logger.info(
                    "Clarification answer already recorded, retrying the turn",
                    extra={"request_id": data.request_id, "message_ts": data.message_ts},
                )
                updated = request
            else:
                updated = await self.machine.handle_clarification_answer(
                    data.request_id,
                    data.answer,
                    Actor(id=data.user_id, name=data.user_name, source=MessageSource.SLACK),
                    metadata=_slack_metadata(data.channel_id, data.thread_ts, data.message_ts),
                )
            work = issue_message_for(
                updated,
                is_follow_up=True,
                follow_up_request=data.answer,
                follow_up_author=data.user_name,
                triggered_by="slack",
            )
        except Exception:
            logger.exception(
                "Failed to process clarification answer",
                extra={"request_id": data.request_id},
            )
            message.retry()
            return

        logger.info(
            "Clarification answer recorded, dispatching to issue handler",
            extra={"request_id": data.request_id},
        )
        await self.handle_issue_message(message, work)

    async def handle_suggest_changes(
        self, message: QueueMessage[Any], data: SlackSuggestChangesMessage
    ) -> None:
        """Record requested changes and run the next turn inline."""
        logger.info(
            "Processing Slack suggest changes",
            extra={"request_id": data.request_id, "changes_length": len(data.changes)},
        )

        try:
            request = await self.machine.get_request(data.request_id)
            if request is None:
                logger.warning(
                    "No request found for suggest changes",
                    extra={"request_id": data.request_id},
                )
                message.ack()
                return

            if data.message_ts and await self.machine.has_follow_up_with_message_ts(
                data.request_id, data.message_ts
            ):
                # redelivery; the change request was recorded on an earlier attempt
                logger.info(
                    "Suggested changes already recorded, retrying the turn",
                    extra={"request_id": data.request_id, "message_ts": data.message_ts},
                )
                updated = request
            else:
                metadata = _slack_metadata(data.channel_id, data.thread_ts, data.message_ts)
                metadata.update({"prNumber": request.pr_number, "issueNumber": request.issue_number})
                updated = await self.machine.add_follow_up_request(
                    data.request_id,
                    data.changes,
                    Actor(id=data.user_id, name=data.user_name, source=MessageSource.SLACK),
                    metadata=metadata,
                )
            work = issue_message_for(
                updated,
                is_follow_up=True,
                follow_up_request=data.changes,
                follow_up_author=data.user_name,
                triggered_by="slack",
            )
        except Exception:
            logger.exception(
                "Failed to process suggest changes",
                extra={"request_id": data.request_id},
            )
            message.retry()
            return

        await self.handle_issue_message(message, work)

    async def handle_app_mention(
        self, message: QueueMessage[Any], data: SlackAppMentionMessage
    ) -> None:
        """Route an @-mention to a follow-up or a new feature request.

        Mention failures are always acknowledged; a redelivered mention
        could otherwise open duplicate requests.
        """
        logger.info(
            "Processing Slack app mention",
            extra={
                "channel_id": data.channel_id,
                "message_ts": data.message_ts,
                "thread_ts": data.thread_ts,
            },
        )

        try:
            await self._route_mention(data)
        except Exception:
            logger.exception(
                "Error processing app mention",
                extra={"channel_id": data.channel_id, "message_ts": data.message_ts},
            )
        message.ack()

    async def _route_mention(self, data: SlackAppMentionMessage) -> None:
        command = parse_clarity_command(data.text)
        reply = NotificationThread(
            request_id=data.message_ts,
            slack_channel_id=data.channel_id,
            slack_thread_ts=data.thread_ts or data.message_ts,
            slack_message_ts=data.message_ts,
        )

        if not command.prompt:
            await self._post_chat(reply, HELP_TEXT, "mention help")
            return

        if data.thread_ts and not command.force_new_agent:
            existing = await self.machine.find_active_agent_in_thread(
                data.channel_id, data.thread_ts
            )
            if existing is not None:
                await self._route_follow_up(data, existing, command.prompt, reply)
                return

        repositories = self.settings.available_repositories
        if not repositories:
            await self._post_chat(
                reply,
                "No repositories are configured. Add at least one repository to "
                "the available repositories setting.",
                "mention routing",
            )
            return

        resolved: Optional[str] = None
        if command.options.repo:
            resolved = resolve_repository(command.options.repo, repositories)
            if resolved is None:
                await self._post_chat(
                    reply,
                    f'Repository "{command.options.repo}" not found. '
                    f"Available repositories: {_repository_list(repositories)}",
                    "mention routing",
                )
                return
        elif self.settings.default_repository:
            resolved = resolve_repository(self.settings.default_repository, repositories)

        if resolved is None and len(repositories) == 1:
            resolved = repositories[0]

        if resolved is None:
            await self._post_chat(
                reply,
                f"Please specify a repository. Available: {_repository_list(repositories)}\n\n"
                f"Example: `@clarity [repo=myrepo] {command.prompt[:30]}...`",
                "mention routing",
            )
            return

        await self._react(reply, StatusState.QUEUED)

        thread_context: Optional[str] = None
        if data.thread_ts and self.chat is not None:
            try:
                thread_context = await self.chat.get_thread_context(
                    data.channel_id, data.thread_ts, exclude_ts=data.message_ts
                )
            except Exception:
                logger.exception(
                    "Failed to fetch thread context",
                    extra={"channel_id": data.channel_id, "thread_ts": data.thread_ts},
                )

        description = command.prompt
        if thread_context:
            description = (
                "## Thread Context\n\n"
                "The following is the conversation context from the Slack thread "
                f"where this request was made:\n\n{thread_context}\n\n---\n\n"
                f"## Request\n\n{command.prompt}"
            )

        request_id = generate_request_id()
        request_type = command.options.type or "feature"
        logger.info(
            "Queueing app mention as feature request",
            extra={"request_id": request_id, "repository": resolved, "request_type": request_type},
        )
        await self.producer.send(
            SlackFeatureRequestMessage(
                request_id=request_id,
                repository_url=f"https://github.com/{resolved}",
                repository_name=resolved,
                title=extract_title(command.prompt),
                description=description,
                request_type=request_type,
                user_id=data.user_id,
                user_name=data.user_name,
                channel_id=data.channel_id,
                trigger_message_ts=data.message_ts,
                trigger_thread_ts=data.thread_ts,
                from_mention=True,
                thread_context=thread_context,
                agent_model=command.options.model,
            ).model_dump()
        )

    async def _route_follow_up(
        self,
        data: SlackAppMentionMessage,
        existing: FeatureRequest,
        prompt: str,
        reply: NotificationThread,
    ) -> None:
        if await self.machine.has_follow_up_with_message_ts(existing.request_id, data.message_ts):
            logger.info(
                "Duplicate follow-up detected, skipping",
                extra={"request_id": existing.request_id, "message_ts": data.message_ts},
            )
            return

        logger.info(
            "Processing follow-up for existing request",
            extra={"request_id": existing.request_id, "status": existing.status.value},
        )
        await self._react(reply, StatusState.QUEUED)
        await self.machine.update_slack_thread(
            existing.request_id, data.channel_id, data.thread_ts, data.message_ts
        )
        updated = await self.machine.add_follow_up_request(
            existing.request_id,
            prompt,
            Actor(id=data.user_id, name=data.user_name, source=MessageSource.SLACK),
            metadata=_slack_metadata(data.channel_id, data.thread_ts, data.message_ts),
        )
        await self.producer.send(
            issue_message_for(
                updated,
                is_follow_up=True,
                follow_up_request=prompt,
                follow_up_author=data.user_name,
                triggered_by="slack",
            ).model_dump()
        )
        await self._post_chat(
            reply,
            "Adding follow-up instructions to the existing request: "
            f"*{truncate_text(prompt, 53)}*\n\n"
            "_Tip: Use `@clarity agent <prompt>` to start a completely new agent instead._",
            "follow-up routing",
        )

    # ------------------------------------------------------------------
    # Notifications and events
    # ------------------------------------------------------------------

    async def _post_chat(self, thread: NotificationThread, text: str, operation: str) -> None:
        if self.chat is None or not thread.has_slack:
            return
        await notify_safely(self.chat.post_comment(thread, text), operation, thread.request_id)

    async def _react(self, thread: NotificationThread, state: StatusState) -> None:
        if self.chat is None:
            return
        await notify_safely(
            self.chat.post_status_reaction(thread, state),
            f"status reaction {state.value}",
            thread.request_id,
        )

    async def _emit_transition(
        self, request: FeatureRequest, from_status: Optional[RequestStatus]
    ) -> None:
        await self._emit(
            EventType.STATE_TRANSITION,
            request,
            from_status=from_status.value if from_status else None,
            to_status=request.status.value,
        )

    async def _emit(self, event_type: EventType, request: FeatureRequest, **details: Any) -> None:
        await self._emit_raw(event_type, request.request_id, request.repository_name, **details)

    async def _emit_raw(
        self,
        event_type: EventType,
        request_id: str,
        repository: str,
        **details: Any,
    ) -> None:
        try:
            await self.event_emitter.emit(
                RequestEvent(
                    event_type=event_type,
                    request_id=request_id,
                    repository=repository or "unknown",
                    details=details,
                )
            )
        except Exception:
            logger.exception(
                "Failed to emit event",
                extra={"request_id": request_id, "event_type": event_type.value},
            )


def _slack_metadata(
    channel_id: Optional[str],
    thread_ts: Optional[str],
    message_ts: Optional[str],
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if channel_id:
        metadata["channelId"] = channel_id
    if thread_ts:
        metadata["threadTs"] = thread_ts
    if message_ts:
        metadata["messageTs"] = message_ts
    return metadata


def _repository_list(repositories: Sequence[str]) -> str:
    return ", ".join(f"`{name.split('/')[-1]}`" for name in repositories)
