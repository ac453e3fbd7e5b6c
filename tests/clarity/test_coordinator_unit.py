"""Unit tests for PipelineCoordinator.

The state machine and session store are the real in-memory
implementations; the execution unit, GitHub, Slack and the producer are
mocks.
"""

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from src.clarity.agents.executor import ExecutionResult
from src.clarity.coordinator import (
    CoordinatorSettings,
    PipelineCoordinator,
    classify_error,
    extract_ai_title,
    issue_message_for,
)
from src.clarity.errors import ClarityError, ErrorCategory
from src.clarity.events.models import EventType
from src.clarity.github.client import GitHubAPIError
from src.clarity.github.models import IssueRef
from src.clarity.mention import HELP_TEXT
from src.clarity.notify.base import StatusState
from src.clarity.notify.slack import SlackNotifier
from src.clarity.queue.abstractions import QueueBatch
from src.clarity.queue.memory import InMemoryMessage, _QueuedItem
from src.clarity.queue.messages import (
    IssueQueueMessage,
    SlackAppMentionMessage,
    SlackClarificationAnswerMessage,
    SlackFeatureRequestMessage,
    SlackRetryRequestMessage,
    SlackSuggestChangesMessage,
)
from src.clarity.sessions.repository import InMemorySessionRepository
from src.clarity.sessions.signed_url import verify_signed_token
from src.clarity.state.machine import RequestStateMachine
from src.clarity.state.memory import InMemoryMessageRepository, InMemoryRequestRepository
from src.clarity.state.models import (
    Actor,
    FeatureRequest,
    MessageSource,
    MessageType,
    RequestOrigin,
    RequestStatus,
)
from src.clarity.workspace.git import GitCommandError

SECRET = "coordinator-test-secret"
PR_URL = "https://github.com/acme/widgets/pull/7"
USER = Actor(id="U1", name="dev1", source=MessageSource.SLACK)


def run_async(coro):
    return asyncio.run(coro)


class RecordingEmitter:
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [e.event_type for e in self.events]


class Harness:
    """A coordinator wired to in-memory state and mocked collaborators."""

    def __init__(
        self,
        result: Optional[ExecutionResult] = None,
        max_attempts: int = 3,
        repositories=("acme/widgets",),
        default_repository: Optional[str] = None,
        with_chat: bool = True,
    ):
        self.machine = RequestStateMachine(InMemoryRequestRepository(), InMemoryMessageRepository())
        self.sessions = InMemorySessionRepository()
        self.executor = MagicMock()
        self.executor.run = AsyncMock(return_value=result or _pr_result())
        self.producer = AsyncMock()
        self.github = AsyncMock()
        self.github.create_issue.return_value = IssueRef(
            id=555, number=12, url="https://github.com/acme/widgets/issues/12"
        )
        self.chat = MagicMock(spec=SlackNotifier) if with_chat else None
        if self.chat is not None:
            self.chat.post_message.return_value = "300.1"
            self.chat.get_thread_context.return_value = None
        self.issue_notifier = AsyncMock()
        self.emitter = RecordingEmitter()
        self.coordinator = PipelineCoordinator(
            self.machine,
            self.sessions,
            self.executor,
            self.producer,
            self.github,
            CoordinatorSettings(
                session_signing_secret=SECRET,
                public_base_url="https://clarity.example.com",
                max_attempts=max_attempts,
                github_token="ghp_secret",
                available_repositories=tuple(repositories),
                default_repository=default_repository,
            ),
            chat=self.chat,
            issue_notifier=self.issue_notifier,
            event_emitter=self.emitter,
        )

    @property
    def sent(self) -> List[Dict[str, Any]]:
        return [call.args[0] for call in self.producer.send.await_args_list]

    @property
    def task(self):
        return self.executor.run.call_args.args[0]

    def chat_texts(self) -> List[str]:
        return [call.args[1] for call in self.chat.post_comment.await_args_list]

    def reactions(self) -> List[StatusState]:
        return [call.args[1] for call in self.chat.post_status_reaction.await_args_list]


def _envelope(body: Dict[str, Any], attempts: int = 1) -> InMemoryMessage:
    return InMemoryMessage(_QueuedItem(id=f"msg-{attempts}", body=body, attempts=attempts))


def _pr_result(**overrides) -> ExecutionResult:
    values = dict(
        success=True,
        message=f"Pull request created successfully: {PR_URL}",
        pr_url=PR_URL,
        pr_number=7,
        pr_branch_name="clarity-ai/issue-fr-1",
        summary="# Add feature X\n\nDid the thing.",
        cost_usd=0.4,
        duration_ms=90_000,
        agent_type="claude-code",
        session_id="s-1",
        session_blob="blob-1",
    )
    values.update(overrides)
    return ExecutionResult(**values)


def _request(**overrides) -> FeatureRequest:
    values = dict(
        request_id="fr-1",
        origin=RequestOrigin.SLACK,
        repository_url="https://github.com/acme/widgets",
        repository_name="acme/widgets",
        title="Add feature X",
        description="Implement feature X",
        issue_id=555,
        issue_number=42,
        issue_url="https://github.com/acme/widgets/issues/42",
        status=RequestStatus.ISSUE_CREATED,
        requester_name="dev1",
        slack_channel_id="C1",
        slack_thread_ts="100.1",
    )
    values.update(overrides)
    return FeatureRequest(**values)


def _issue_body(**overrides) -> Dict[str, Any]:
    values = dict(
        request_id="fr-1",
        repository_url="https://github.com/acme/widgets",
        repository_name="acme/widgets",
        issue_number=42,
        issue_title="Add feature X",
        issue_body="Implement feature X",
        labels=["clarity-ai"],
    )
    values.update(overrides)
    return IssueQueueMessage(**values).model_dump()


def _seed(harness: Harness, request: Optional[FeatureRequest] = None) -> None:
    run_async(harness.machine.create_request(request or _request(), USER))


def _handle(harness: Harness, body: Dict[str, Any], attempts: int = 1) -> InMemoryMessage:
    envelope = _envelope(body, attempts)
    run_async(harness.coordinator.process_batch(QueueBatch(queue="clarity-requests", messages=[envelope])))
    return envelope


def _get(harness: Harness, request_id: str = "fr-1") -> FeatureRequest:
    return run_async(harness.machine.get_request(request_id))


def _thread_types(harness: Harness, request_id: str = "fr-1") -> List[MessageType]:
    return [m.type for m in run_async(harness.machine.get_thread(request_id))]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_classify_error_wraps_component_errors(self):
        git_error = GitCommandError(["push"], 1, "rejected")
        classified = classify_error(git_error)
        assert isinstance(classified, ClarityError)
        assert classified.category is ErrorCategory.GIT
        assert classified.__cause__ is git_error

        assert classify_error(GitHubAPIError("boom", status_code=500)).category is ErrorCategory.GITHUB
        assert classify_error(asyncio.TimeoutError()).category is ErrorCategory.TIMEOUT

    def test_classify_error_passes_others_through(self):
        error = ValueError("bad")
        assert classify_error(error) is error
        clarity = ClarityError(ErrorCategory.CONFIG, "x", "y")
        assert classify_error(clarity) is clarity

    @pytest.mark.parametrize(
        "summary,expected",
        [
            ("# Work\n\n## Title\nAdd dark mode\n\nMore", "Add dark mode"),
            ("## title\n\n  Fix login  \n", "Fix login"),
            ("No title here", None),
            (None, None),
        ],
    )
    def test_extract_ai_title(self, summary, expected):
        assert extract_ai_title(summary) == expected

    def test_issue_message_requires_issue(self):
        with pytest.raises(ValueError):
            issue_message_for(_request(issue_number=None))

    def test_issue_message_carries_pr_and_overrides(self):
        message = issue_message_for(
            _request(pr_number=7, pr_url=PR_URL), is_follow_up=True, follow_up_request="more"
        )
        assert (message.existing_pr_number, message.existing_pr_url) == (7, PR_URL)
        assert message.is_follow_up and message.follow_up_request == "more"


# ---------------------------------------------------------------------------
# Agent turns
# ---------------------------------------------------------------------------


class TestIssueTurn:
    def test_new_issue_opens_pull_request(self):
        harness = Harness()
        _seed(harness)

        envelope = _handle(harness, _issue_body())

        assert envelope.acked
        request = _get(harness)
        assert request.status is RequestStatus.PR_CREATED
        assert (request.pr_number, request.pr_branch_name) == (7, "clarity-ai/issue-fr-1")
        assert request.cost_usd == 0.4

        task = harness.task
        assert task.github_token == "ghp_secret"
        assert task.resume_session_id is None
        assert task.conversation_history is None

        session = run_async(harness.sessions.get_for_request("fr-1"))
        assert (session.session_id, session.session_blob) == ("s-1", "blob-1")

        assert harness.reactions() == [StatusState.WORKING, StatusState.SUCCEEDED]
        assert harness.chat_texts()[-1].startswith(":white_check_mark: *Pull request created:*")
        assert harness.emitter.types() == [
            EventType.STATE_TRANSITION,
            EventType.STATE_TRANSITION,
            EventType.COMPLETION,
        ]
        completion = harness.emitter.events[-1]
        assert completion.details["outcome"] == "pr_created"
        assert completion.details["duration_seconds"] == 90.0

    def test_ai_title_fills_missing_title(self):
        harness = Harness(result=_pr_result(summary="Work\n\n## Title\nDark mode toggle\n"))
        _seed(harness, _request(title=None))

        _handle(harness, _issue_body())

        assert _get(harness).title == "Dark mode toggle"

    def test_no_changes_marks_processed(self):
        harness = Harness(
            result=_pr_result(pr_url=None, pr_number=None, pr_branch_name=None, summary="The answer")
        )
        _seed(harness)

        envelope = _handle(harness, _issue_body())

        assert envelope.acked
        assert _get(harness).status is RequestStatus.COMPLETED
        assert "(no code changes)" in harness.chat_texts()[-1]

    def test_clarification_needed(self):
        harness = Harness(
            result=_pr_result(
                pr_url=None,
                pr_number=None,
                needs_clarification=True,
                clarifying_questions="1. Which module?\n2. Which format?",
            )
        )
        _seed(harness)

        envelope = _handle(harness, _issue_body())

        assert envelope.acked
        assert _get(harness).status is RequestStatus.AWAITING_CLARIFICATION
        assert MessageType.CLARIFICATION_ASK in _thread_types(harness)
        assert harness.reactions()[-1] is StatusState.NEEDS_CLARIFICATION
        assert "1. Which module?" in harness.chat_texts()[-1]
        clarification = [e for e in harness.emitter.events if e.event_type is EventType.CLARIFICATION]
        assert clarification[0].details["question_count"] == 2

    def test_follow_up_with_session_gets_signed_url(self):
        harness = Harness()
        _seed(harness, _request(pr_number=7, pr_url=PR_URL, status=RequestStatus.PR_CREATED))
        run_async(harness.sessions.save("fr-1", "s-0", "claude-code", "old-blob"))

        _handle(
            harness,
            _issue_body(
                is_follow_up=True,
                follow_up_request="Rename the flag",
                follow_up_author="dev1",
                existing_pr_number=7,
                existing_pr_url=PR_URL,
            ),
        )

        task = harness.task
        assert task.resume_session_id == "s-0"
        assert task.conversation_history is None
        url = urlparse(task.session_download_url)
        assert url.path == "/api/requests/fr-1/handover"
        verify_signed_token(parse_qs(url.query)["token"][0], "fr-1", SECRET)
        assert harness.chat_texts()[0].startswith(":pencil2: *Change request from dev1:*")
        assert "*Pull request updated:*" in harness.chat_texts()[-1]

    def test_follow_up_without_session_replays_history(self):
        harness = Harness()
        _seed(harness)
        run_async(harness.machine.request_clarification("fr-1", "Which module?"))
        run_async(harness.machine.handle_clarification_answer("fr-1", "Billing", USER))

        _handle(harness, _issue_body(is_follow_up=True, follow_up_request="Billing"))

        task = harness.task
        assert task.resume_session_id is None
        assert task.session_download_url is None
        assert task.conversation_history == "**Clarity AI:** Which module?\n\n**dev1:** Billing"

    def test_retryable_failure_is_handed_back(self):
        failure = GitCommandError(["push"], 1, "rejected")
        harness = Harness(
            result=ExecutionResult(
                success=False,
                message="Failed to process issue",
                error="push rejected",
                exception=failure,
                session_id="s-2",
                session_blob="partial",
            )
        )
        _seed(harness)

        envelope = _handle(harness, _issue_body(), attempts=1)

        assert envelope.retried and not envelope.acked
        request = _get(harness)
        assert request.status is RequestStatus.PROCESSING
        assert _thread_types(harness)[-1] is MessageType.RETRY
        assert EventType.RETRY in harness.emitter.types()
        assert run_async(harness.sessions.get_for_request("fr-1")).session_id == "s-2"
        harness.issue_notifier.post_comment.assert_not_awaited()

    def test_final_failure_marks_error_and_notifies(self):
        harness = Harness(
            result=ExecutionResult(
                success=False,
                message="Failed",
                exception=GitCommandError(["push"], 1, "rejected"),
            )
        )
        _seed(harness)

        envelope = _handle(harness, _issue_body(), attempts=3)

        assert envelope.acked
        request = _get(harness)
        assert request.status is RequestStatus.ERROR
        assert request.error_code == "GIT_ERROR"
        assert harness.reactions()[-1] is StatusState.FAILED
        thread, body = harness.issue_notifier.post_comment.await_args.args
        assert thread.issue_number == 42
        assert "failed after 3 attempt(s)" in body
        error_event = [e for e in harness.emitter.events if e.event_type is EventType.ERROR][0]
        assert error_event.details["category"] == "GIT"

    def test_config_error_fails_on_first_attempt(self):
        harness = Harness(
            result=ExecutionResult(
                success=False,
                message="Validation failed",
                exception=ClarityError(ErrorCategory.CONFIG, "validate agent", "no API key"),
            )
        )
        _seed(harness)

        envelope = _handle(harness, _issue_body(), attempts=1)

        assert envelope.acked and not envelope.retried
        assert _get(harness).error_code == "CONFIG_ERROR"

    def test_failure_without_exception_is_agent_error(self):
        harness = Harness(result=ExecutionResult(success=False, message="Agent gave up"))
        _seed(harness)

        _handle(harness, _issue_body(), attempts=3)

        request = _get(harness)
        assert request.error_code == "AGENT_ERROR"
        assert "Agent gave up" in request.error_message

    def test_session_save_failure_does_not_fail_turn(self):
        harness = Harness()
        harness.sessions.save = AsyncMock(side_effect=RuntimeError("db down"))
        _seed(harness)

        envelope = _handle(harness, _issue_body())

        assert envelope.acked
        assert _get(harness).status is RequestStatus.PR_CREATED

    def test_chat_failures_do_not_fail_turn(self):
        harness = Harness()
        harness.chat.post_comment.side_effect = RuntimeError("slack down")
        harness.chat.post_status_reaction.side_effect = RuntimeError("slack down")
        _seed(harness)

        envelope = _handle(harness, _issue_body())

        assert envelope.acked
        assert _get(harness).status is RequestStatus.PR_CREATED

    def test_cancelled_request_is_acked_without_running(self):
        harness = Harness()
        _seed(harness)
        run_async(harness.machine.cancel_request("fr-1", USER, "No longer needed"))

        envelope = _handle(harness, _issue_body())

        assert envelope.acked and not envelope.retried
        assert _get(harness).status is RequestStatus.CANCELLED
        harness.executor.run.assert_not_awaited()
        assert harness.emitter.types() == []

    def test_cancel_during_run_keeps_cancelled_status(self):
        harness = Harness()
        _seed(harness)

        async def cancel_then_finish(task):
            await harness.machine.cancel_request("fr-1", USER, "Stop")
            return _pr_result()

        harness.executor.run.side_effect = cancel_then_finish

        envelope = _handle(harness, _issue_body())

        assert envelope.acked and not envelope.retried
        request = _get(harness)
        assert request.status is RequestStatus.CANCELLED
        assert request.pr_number is None
        assert run_async(harness.sessions.get_for_request("fr-1")).session_id == "s-1"
        assert StatusState.SUCCEEDED not in harness.reactions()
        assert EventType.COMPLETION not in harness.emitter.types()
        harness.issue_notifier.post_comment.assert_not_awaited()

    def test_missing_request_retries(self):
        harness = Harness()
        envelope = _handle(harness, _issue_body(), attempts=1)
        assert envelope.retried
        harness.executor.run.assert_not_awaited()

    def test_malformed_message_is_dropped(self):
        harness = Harness()
        envelope = _handle(harness, {"type": "issue", "request_id": "fr-1"})
        assert envelope.acked
        harness.executor.run.assert_not_awaited()


# ---------------------------------------------------------------------------
# Chat-originated work
# ---------------------------------------------------------------------------


def _feature_body(**overrides) -> Dict[str, Any]:
    values = dict(
        request_id="fr-9",
        repository_url="https://github.com/acme/widgets",
        repository_name="acme/widgets",
        title="Add dark mode",
        description="Please add dark mode",
        request_type="bug",
        user_id="U1",
        user_name="dev1",
        channel_id="C1",
    )
    values.update(overrides)
    return SlackFeatureRequestMessage(**values).model_dump()


class TestFeatureRequest:
    def test_opens_issue_and_queues_turn(self):
        harness = Harness()

        envelope = _handle(harness, _feature_body())

        assert envelope.acked
        owner, repo, title, body = harness.github.create_issue.await_args.args
        assert (owner, repo, title) == ("acme", "widgets", "🐛 Add dark mode")
        assert "**Tracking ID:** `fr-9`" in body
        assert harness.github.create_issue.await_args.kwargs["labels"] == ["clarity-ai", "bug", "slack"]

        request = _get(harness, "fr-9")
        assert request.status is RequestStatus.ISSUE_CREATED
        assert (request.issue_number, request.issue_id) == (12, 555)
        assert request.slack_thread_ts == "300.1"

        queued = harness.sent[0]
        assert queued["type"] == "issue"
        assert queued["issue_number"] == 12
        assert queued["issue_title"] == "🐛 Add dark mode"
        assert queued["labels"] == ["clarity-ai", "bug", "slack"]
        assert queued["triggered_by"] == "slack"
        assert ":rocket: *Request received*" in harness.chat.post_message.await_args.args[1]

    def test_mention_request_threads_under_trigger(self):
        harness = Harness()

        _handle(
            harness,
            _feature_body(from_mention=True, trigger_message_ts="200.5", trigger_thread_ts="200.1"),
        )

        request = _get(harness, "fr-9")
        assert request.slack_thread_ts == "200.1"
        assert request.slack_trigger_message_ts == "200.5"
        channel, text, thread_ts = harness.chat.post_message.await_args.args
        assert thread_ts == "200.1"
        assert "Add dark mode" not in text

    def test_redelivery_reuses_issue(self):
        harness = Harness()
        _seed(harness, _request(request_id="fr-9", issue_number=12, issue_id=555,
                                issue_url="https://github.com/acme/widgets/issues/12"))

        envelope = _handle(harness, _feature_body(), attempts=2)

        assert envelope.acked
        harness.github.create_issue.assert_not_awaited()
        harness.chat.post_message.assert_not_awaited()
        assert harness.sent[0]["issue_number"] == 12

    def test_issue_creation_failure_retries_then_fails(self):
        harness = Harness()
        harness.github.create_issue.side_effect = GitHubAPIError("boom", status_code=502)

        first = _handle(harness, _feature_body(trigger_message_ts="200.5"), attempts=1)
        last = _handle(harness, _feature_body(trigger_message_ts="200.5"), attempts=3)

        assert first.retried
        assert last.acked
        assert harness.reactions() == [StatusState.FAILED]
        assert "could not complete this request" in harness.chat_texts()[-1]
        assert harness.sent == []


class TestRetryRequest:
    def test_missing_request_is_acked(self):
        harness = Harness()
        envelope = _handle(
            harness, SlackRetryRequestMessage(request_id="nope", user_id="U1").model_dump()
        )
        assert envelope.acked
        assert harness.sent == []

    def test_requeues_request(self):
        harness = Harness()
        _seed(harness, _request(status=RequestStatus.ERROR))

        envelope = _handle(
            harness,
            SlackRetryRequestMessage(request_id="fr-1", user_id="U1", user_name="dev1").model_dump(),
        )

        assert envelope.acked
        assert _get(harness).retry_count == 1
        assert harness.sent[0]["is_retry"] is True
        assert harness.chat_texts()[-1].startswith("*Retrying...*")


class TestInlineFollowUps:
    def test_clarification_answer_runs_next_turn(self):
        harness = Harness()
        _seed(harness, _request(status=RequestStatus.AWAITING_CLARIFICATION))

        envelope = _handle(
            harness,
            SlackClarificationAnswerMessage(
                request_id="fr-1",
                answer="Use the billing module",
                user_id="U1",
                user_name="dev1",
                channel_id="C1",
                thread_ts="100.1",
                message_ts="100.9",
            ).model_dump(),
        )

        assert envelope.acked
        assert harness.task.follow_up_request == "Use the billing module"
        answers = [
            m for m in run_async(harness.machine.get_thread("fr-1"))
            if m.type is MessageType.CLARIFICATION_ANSWER
        ]
        assert answers[0].metadata == {"channelId": "C1", "threadTs": "100.1", "messageTs": "100.9"}
        harness.producer.send.assert_not_awaited()

    def test_suggest_changes_records_pr_context(self):
        harness = Harness()
        _seed(harness, _request(status=RequestStatus.PR_CREATED, pr_number=7, pr_url=PR_URL))

        _handle(
            harness,
            SlackSuggestChangesMessage(
                request_id="fr-1", changes="Rename the flag", user_id="U1", message_ts="101.0"
            ).model_dump(),
        )

        assert harness.task.existing_pr_number == 7
        follow_ups = [
            m for m in run_async(harness.machine.get_thread("fr-1"))
            if m.type is MessageType.FOLLOW_UP_REQUEST
        ]
        assert follow_ups[0].metadata["prNumber"] == 7
        assert follow_ups[0].metadata["issueNumber"] == 42

    def test_redelivered_suggest_changes_records_one_follow_up(self):
        failure = ExecutionResult(
            success=False,
            message="Failed to process issue",
            exception=GitCommandError(["push"], 1, "rejected"),
        )
        harness = Harness()
        harness.executor.run.side_effect = [failure, _pr_result()]
        _seed(harness, _request(status=RequestStatus.PR_CREATED, pr_number=7, pr_url=PR_URL))
        body = SlackSuggestChangesMessage(
            request_id="fr-1", changes="Rename the flag", user_id="U1", message_ts="101.0"
        ).model_dump()

        first = _handle(harness, body, attempts=1)
        second = _handle(harness, body, attempts=2)

        assert first.retried
        assert second.acked
        assert _thread_types(harness).count(MessageType.FOLLOW_UP_REQUEST) == 1
        assert harness.task.follow_up_request == "Rename the flag"
        assert _get(harness).status is RequestStatus.PR_CREATED

    def test_redelivered_clarification_answer_records_one_answer(self):
        failure = ExecutionResult(
            success=False,
            message="Failed to process issue",
            exception=GitCommandError(["push"], 1, "rejected"),
        )
        harness = Harness()
        harness.executor.run.side_effect = [failure, _pr_result()]
        _seed(harness, _request(status=RequestStatus.AWAITING_CLARIFICATION))
        body = SlackClarificationAnswerMessage(
            request_id="fr-1",
            answer="Use the billing module",
            user_id="U1",
            user_name="dev1",
            message_ts="100.9",
        ).model_dump()

        _handle(harness, body, attempts=1)
        second = _handle(harness, body, attempts=2)

        assert second.acked
        assert _thread_types(harness).count(MessageType.CLARIFICATION_ANSWER) == 1
        assert harness.task.follow_up_request == "Use the billing module"

    def test_unknown_request_is_acked(self):
        harness = Harness()
        envelope = _handle(
            harness,
            SlackSuggestChangesMessage(request_id="nope", changes="x", user_id="U1").model_dump(),
        )
        assert envelope.acked
        harness.executor.run.assert_not_awaited()


# ---------------------------------------------------------------------------
# Mentions
# ---------------------------------------------------------------------------


def _mention(text: str, thread_ts: Optional[str] = None, message_ts: str = "500.1") -> Dict[str, Any]:
    return SlackAppMentionMessage(
        text=text,
        user_id="U1",
        user_name="dev1",
        channel_id="C1",
        message_ts=message_ts,
        thread_ts=thread_ts,
    ).model_dump()


class TestAppMention:
    def test_empty_prompt_gets_help(self):
        harness = Harness()
        envelope = _handle(harness, _mention("<@U0BOT>"))
        assert envelope.acked
        assert harness.chat_texts() == [HELP_TEXT]
        assert harness.sent == []

    def test_new_request_is_queued(self):
        harness = Harness(repositories=("acme/widgets", "acme/gadgets"))

        envelope = _handle(harness, _mention("<@U0BOT> [repo=gadgets, type=bug, model=opus] Fix login. Now."))

        assert envelope.acked
        queued = harness.sent[0]
        assert queued["type"] == "slack_feature_request"
        assert queued["repository_name"] == "acme/gadgets"
        assert queued["repository_url"] == "https://github.com/acme/gadgets"
        assert queued["title"] == "Fix login."
        assert queued["request_type"] == "bug"
        assert queued["agent_model"] == "opus"
        assert queued["from_mention"] is True
        assert queued["trigger_message_ts"] == "500.1"
        assert queued["request_id"].startswith("fr-")
        assert harness.reactions() == [StatusState.QUEUED]

    def test_single_repository_is_implied(self):
        harness = Harness()
        _handle(harness, _mention("<@U0BOT> add dark mode"))
        assert harness.sent[0]["repository_name"] == "acme/widgets"

    def test_default_repository(self):
        harness = Harness(repositories=("acme/widgets", "acme/gadgets"), default_repository="gadgets")
        _handle(harness, _mention("<@U0BOT> add dark mode"))
        assert harness.sent[0]["repository_name"] == "acme/gadgets"

    def test_ambiguous_repository_asks_user(self):
        harness = Harness(repositories=("acme/widgets", "acme/gadgets"))
        _handle(harness, _mention("<@U0BOT> add dark mode"))
        assert harness.sent == []
        assert harness.chat_texts()[0].startswith("Please specify a repository. Available: `widgets`, `gadgets`")

    def test_unknown_repository(self):
        harness = Harness()
        _handle(harness, _mention("<@U0BOT> [repo=nope] add dark mode"))
        assert harness.chat_texts()[0].startswith('Repository "nope" not found.')

    def test_no_repositories_configured(self):
        harness = Harness(repositories=())
        _handle(harness, _mention("<@U0BOT> add dark mode"))
        assert harness.chat_texts()[0].startswith("No repositories are configured")

    def test_thread_context_is_included(self):
        harness = Harness()
        harness.chat.get_thread_context.return_value = "**<@U2>:** the page is slow"

        _handle(harness, _mention("<@U0BOT> fix it", thread_ts="400.1"))

        description = harness.sent[0]["description"]
        assert description.startswith("## Thread Context")
        assert description.endswith("## Request\n\nfix it")
        harness.chat.get_thread_context.assert_awaited_once_with("C1", "400.1", exclude_ts="500.1")

    def test_mention_in_active_thread_adds_follow_up(self):
        harness = Harness()
        _seed(harness, _request(status=RequestStatus.PR_CREATED, pr_number=7, pr_url=PR_URL,
                                slack_thread_ts="400.1"))

        _handle(harness, _mention("<@U0BOT> also update the docs", thread_ts="400.1"))

        queued = harness.sent[0]
        assert queued["type"] == "issue"
        assert queued["is_follow_up"] is True
        assert queued["follow_up_request"] == "also update the docs"
        assert queued["existing_pr_number"] == 7
        request = _get(harness)
        assert request.slack_trigger_message_ts == "500.1"
        assert harness.chat_texts()[-1].startswith("Adding follow-up instructions")

    def test_duplicate_follow_up_is_skipped(self):
        harness = Harness()
        _seed(harness, _request(slack_thread_ts="400.1"))
        mention = _mention("<@U0BOT> also update the docs", thread_ts="400.1")

        _handle(harness, mention)
        _handle(harness, mention)

        assert len(harness.sent) == 1

    def test_agent_keyword_starts_new_request_in_thread(self):
        harness = Harness()
        _seed(harness, _request(slack_thread_ts="400.1"))

        _handle(harness, _mention("<@U0BOT> agent start over", thread_ts="400.1"))

        assert harness.sent[0]["type"] == "slack_feature_request"
        assert harness.sent[0]["title"] == "start over"

    def test_failures_are_still_acked(self):
        harness = Harness()
        harness.producer.send.side_effect = RuntimeError("queue down")

        envelope = _handle(harness, _mention("<@U0BOT> add dark mode"))

        assert envelope.acked
