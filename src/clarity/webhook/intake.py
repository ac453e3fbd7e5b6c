"""Turns parsed GitHub webhook events into requests and queue work.

The webhook endpoint must answer quickly, so intake only records the
request and enqueues an ``IssueQueueMessage``; the agent turn runs on
the worker loop.
"""

import logging
from enum import Enum
from typing import Optional

from src.clarity.queue.abstractions import QueueProducer
from src.clarity.queue.messages import IssueQueueMessage
from src.clarity.state.machine import RequestStateMachine
from src.clarity.state.models import (
    Actor,
    FeatureRequest,
    MessageSource,
    RequestOrigin,
    RequestStatus,
)
from src.clarity.webhook.models import GitHubIssueCommentEvent, GitHubIssueEvent

logger = logging.getLogger(__name__)


class IntakeOutcome(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class WebhookIntake:
    """Records issue-triggered requests and clarification answers.

    Attributes:
        machine: Request state machine.
        producer: Queue the worker loop consumes.
        trigger_label: Base label; ``<label>`` and ``<label>-*`` trigger.
    """

    def __init__(
        self,
        machine: RequestStateMachine,
        producer: QueueProducer,
        trigger_label: str = "clarity-ai",
    ):
        self.machine = machine
        self.producer = producer
        self.trigger_label = trigger_label

    def is_trigger_label(self, label: Optional[str]) -> bool:
        if not label:
            return False
        return label == self.trigger_label or label.startswith(f"{self.trigger_label}-")

    async def handle_issue_event(self, event: GitHubIssueEvent) -> IntakeOutcome:
        """Create a request for a labelled issue and queue its first turn.

        A ``labeled`` event only triggers when the added label is a trigger
        label. The request id is derived from the issue, so a redelivered
        or repeated event finds the stored request and is not queued twice.
        """
        if event.added_label is not None:
            triggered = self.is_trigger_label(event.added_label)
        else:
            triggered = any(self.is_trigger_label(label) for label in event.labels)
        if not triggered:
            logger.debug(
                "Issue event without trigger label",
                extra={"repository": event.full_repository, "issue_number": event.issue_number},
            )
            return IntakeOutcome.IGNORED

        existing = await self.machine.get_request(event.request_id)
        if existing is not None:
            logger.info(
                "Request already exists for issue",
                extra={"request_id": existing.request_id, "status": existing.status.value},
            )
            return IntakeOutcome.DUPLICATE

        request = FeatureRequest(
            request_id=event.request_id,
            origin=RequestOrigin.GITHUB_ISSUE,
            repository_url=event.repository_url,
            repository_name=event.full_repository,
            title=event.title,
            description=event.body,
            issue_id=event.issue_global_id,
            issue_number=event.issue_number,
            issue_url=event.issue_url,
            status=RequestStatus.ISSUE_CREATED,
            requester_name=event.author,
        )
        stored = await self.machine.create_request(
            request,
            Actor(id=event.author, name=event.author, source=MessageSource.GITHUB),
        )

        await self.producer.send(
            IssueQueueMessage(
                request_id=stored.request_id,
                repository_url=stored.repository_url,
                repository_name=stored.repository_name,
                issue_id=stored.issue_id,
                issue_number=event.issue_number,
                issue_title=event.title,
                issue_body=event.body,
                labels=event.labels,
                author=event.author,
                triggered_by="github",
            ).model_dump()
        )
        logger.info(
            "Issue request queued",
            extra={"request_id": stored.request_id, "issue_number": event.issue_number},
        )
        return IntakeOutcome.ACCEPTED

    async def handle_issue_comment(self, event: GitHubIssueCommentEvent) -> IntakeOutcome:
        """Treat a human comment on a waiting request as its clarification answer."""
        if event.author_is_bot or event.is_pull_request:
            return IntakeOutcome.IGNORED

        request = await self.machine.get_request(event.request_id)
        if request is None or request.status != RequestStatus.AWAITING_CLARIFICATION:
            return IntakeOutcome.IGNORED

        actor = Actor(id=event.author, name=event.author, source=MessageSource.GITHUB)
        updated = await self.machine.handle_clarification_answer(
            request.request_id,
            event.body,
            actor,
            metadata={"commentId": event.comment_id},
        )
        await self.producer.send(
            IssueQueueMessage(
                request_id=updated.request_id,
                repository_url=updated.repository_url,
                repository_name=updated.repository_name,
                issue_id=updated.issue_id,
                issue_number=event.issue_number,
                issue_title=updated.title or "",
                issue_body=updated.description,
                author=updated.requester_name or event.author,
                follow_up_request=event.body,
                follow_up_author=event.author,
                existing_pr_number=updated.pr_number,
                existing_pr_url=updated.pr_url,
                is_follow_up=True,
                triggered_by="github",
                agent_type=updated.agent_type,
                agent_provider=updated.agent_provider,
                agent_model=updated.agent_model,
            ).model_dump()
        )
        logger.info(
            "Clarification answer queued",
            extra={"request_id": updated.request_id, "comment_id": event.comment_id},
        )
        return IntakeOutcome.ACCEPTED
