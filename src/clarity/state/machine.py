"""Request state machine and request service.

RequestStateMachine is the only component that writes a request's
``status``. Each operation loads the current record, applies a status
change plus field updates, persists it, and appends the matching
message to the request's thread.

Writes are last-writer-wins: two workers touching the same request do
not conflict, and re-applying a status (e.g. "processing" on a
redelivered message) is harmless. A change outside VALID_TRANSITIONS is
logged but still applied, because the external trigger (a follow-up, a
retry, a cancellation) is authoritative.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.clarity.state.models import (
    ACTIVE_THREAD_STATUSES,
    CONVERSATION_MESSAGE_TYPES,
    SYSTEM_ACTOR,
    Actor,
    FeatureRequest,
    MessageType,
    RequestMessage,
    RequestStatus,
    TaskStatus,
    is_valid_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_LIMIT = 10


class RequestNotFoundError(Exception):
    """Raised when an operation targets a request that does not exist.

    Attributes:
        request_id: The request ID that was not found.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request not found: {request_id}")


@runtime_checkable
class RequestRepository(Protocol):
    """Persistence for FeatureRequest records."""

    async def create(self, request: FeatureRequest) -> bool:
        """Insert a request.

        Returns:
            True if inserted, False if a request with the same id exists.
        """
        ...

    async def get(self, request_id: str) -> Optional[FeatureRequest]:
        ...

    async def save(self, request: FeatureRequest) -> None:
        """Overwrite the stored record (last writer wins)."""
        ...

    async def find_by_slack_thread(
        self, channel_id: str, thread_ts: str
    ) -> List[FeatureRequest]:
        """Requests whose Slack thread or trigger message matches ``thread_ts``."""
        ...


@runtime_checkable
class MessageRepository(Protocol):
    """Append-only persistence for RequestMessage entries."""

    async def add(self, message: RequestMessage) -> None:
        ...

    async def list_for_request(
        self,
        request_id: str,
        types: Optional[List[MessageType]] = None,
    ) -> List[RequestMessage]:
        """Messages for a request ordered by creation time, oldest first."""
        ...

    async def has_message_with_metadata(
        self,
        request_id: str,
        message_type: MessageType,
        key: str,
        value: str,
    ) -> bool:
        ...


class RequestStateMachine:
    """Lifecycle operations for requests and their message threads.

    Example:
        >>> machine = RequestStateMachine(requests, messages)
        >>> await machine.create_request(request, actor)
        >>> await machine.start_processing(request.request_id)
        >>> await machine.complete_with_pr(request.request_id, 7, url, branch)
    """

    def __init__(
        self,
        requests: RequestRepository,
        messages: MessageRepository,
    ):
        self.requests = requests
        self.messages = messages

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str) -> Optional[FeatureRequest]:
        return await self.requests.get(request_id)

    async def require_request(self, request_id: str) -> FeatureRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    async def get_thread(self, request_id: str) -> List[RequestMessage]:
        return await self.messages.list_for_request(request_id)

    async def get_agent_conversation_context(
        self,
        request_id: str,
        limit: int = DEFAULT_CONVERSATION_LIMIT,
    ) -> List[RequestMessage]:
        """Last ``limit`` clarification and follow-up messages, oldest first."""
        messages = await self.messages.list_for_request(
            request_id, types=list(CONVERSATION_MESSAGE_TYPES)
        )
        return messages[-limit:] if limit > 0 else []

    async def has_follow_up_with_message_ts(
        self,
        request_id: str,
        message_ts: str,
        message_type: MessageType = MessageType.FOLLOW_UP_REQUEST,
    ) -> bool:
        """Whether a message from this exact source message was recorded.

        Checks follow-up requests unless ``message_type`` says otherwise,
        e.g. ``MessageType.CLARIFICATION_ANSWER``.
        """
        return await self.messages.has_message_with_metadata(
            request_id, message_type, "messageTs", message_ts
        )

    async def find_active_agent_in_thread(
        self, channel_id: str, thread_ts: str
    ) -> Optional[FeatureRequest]:
        """Newest request in a Slack thread that can still take follow-ups.

        Requests in ``error`` or ``cancelled`` are never returned.
        """
        candidates = await self.requests.find_by_slack_thread(channel_id, thread_ts)
        active = [r for r in candidates if r.status in ACTIVE_THREAD_STATUSES]
        if not active:
            return None
        return max(active, key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_request(
        self,
        request: FeatureRequest,
        actor: Actor = SYSTEM_ACTOR,
    ) -> FeatureRequest:
        """Persist a new request and its initial_request message.

        Creating a request that already exists returns the stored record
        unchanged, so a redelivered message cannot create duplicates.
        """
        if not request.request_id:
            raise ValueError("request_id cannot be empty")

        inserted = await self.requests.create(request)
        if not inserted:
            logger.info(
                "Request already exists; reusing stored record",
                extra={"request_id": request.request_id},
            )
            return await self.require_request(request.request_id)

        await self._add_message(
            request.request_id,
            MessageType.INITIAL_REQUEST,
            request.description,
            actor,
            metadata={"title": request.title} if request.title else None,
        )
        logger.info(
            "Created request",
            extra={
                "request_id": request.request_id,
                "origin": request.origin.value,
                "status": request.status.value,
            },
        )
        return request

    async def start_processing(self, request_id: str) -> FeatureRequest:
        request = await self.require_request(request_id)
        now = datetime.now(timezone.utc)
        updated = await self._transition(
            request,
            RequestStatus.PROCESSING,
            task_status=TaskStatus.PROCESSING,
            processing_started_at=now,
            error_code=None,
            error_message=None,
            error_stack=None,
        )
        await self._add_message(
            request_id, MessageType.PROCESSING_STARTED, "Processing started"
        )
        return updated

    async def request_clarification(
        self, request_id: str, questions: str
    ) -> FeatureRequest:
        request = await self.require_request(request_id)
        updated = await self._transition(
            request,
            RequestStatus.AWAITING_CLARIFICATION,
            task_status=TaskStatus.COMPLETED,
        )
        await self._add_message(
            request_id, MessageType.CLARIFICATION_ASK, questions
        )
        return updated

    async def handle_clarification_answer(
        self,
        request_id: str,
        answer: str,
        actor: Actor,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FeatureRequest:
        request = await self.require_request(request_id)
        await self._add_message(
            request_id,
            MessageType.CLARIFICATION_ANSWER,
            answer,
            actor,
            metadata=metadata,
        )
        return await self._transition(
            request,
            RequestStatus.PROCESSING,
            follow_up_request=answer,
            follow_up_author=actor.name,
        )

    async def add_follow_up_request(
        self,
        request_id: str,
        text: str,
        actor: Actor,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FeatureRequest:
        request = await self.require_request(request_id)
        await self._add_message(
            request_id,
            MessageType.FOLLOW_UP_REQUEST,
            text,
            actor,
            metadata=metadata,
        )
        return await self._transition(
            request,
            RequestStatus.PROCESSING,
            follow_up_request=text,
            follow_up_author=actor.name,
        )

    async def complete_with_pr(
        self,
        request_id: str,
        pr_number: int,
        pr_url: str,
        pr_branch_name: Optional[str] = None,
        summary: Optional[str] = None,
        cost_usd: Optional[float] = None,
        duration_ms: Optional[int] = None,
    ) -> FeatureRequest:
        """Record a landed change set.

        A request keeps the branch it was first given: once
        ``pr_branch_name`` is set, later follow-ups cannot move it.
        """
        if pr_number <= 0:
            raise ValueError("pr_number must be positive")

        request = await self.require_request(request_id)
        is_update = request.pr_number == pr_number
        updated = await self._transition(
            request,
            RequestStatus.PR_CREATED,
            task_status=TaskStatus.COMPLETED,
            pr_number=pr_number,
            pr_url=pr_url,
            pr_branch_name=request.pr_branch_name or pr_branch_name,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            completed_at=datetime.now(timezone.utc),
        )
        await self._add_message(
            request_id,
            MessageType.PR_UPDATED if is_update else MessageType.PR_CREATED,
            pr_url,
            metadata={"prNumber": pr_number, "prUrl": pr_url},
        )
        if summary:
            await self.log_agent_summary(request_id, summary)
        return updated

    async def mark_processed(
        self,
        request_id: str,
        summary: Optional[str] = None,
        cost_usd: Optional[float] = None,
        duration_ms: Optional[int] = None,
    ) -> FeatureRequest:
        """Record a turn that produced no pull request."""
        request = await self.require_request(request_id)
        updated = await self._transition(
            request,
            RequestStatus.COMPLETED,
            task_status=TaskStatus.COMPLETED,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            completed_at=datetime.now(timezone.utc),
        )
        if summary:
            await self.log_agent_summary(request_id, summary)
        return updated

    async def mark_error(
        self,
        request_id: str,
        code: str,
        message: str,
        stack: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> FeatureRequest:
        request = await self.require_request(request_id)
        updated = await self._transition(
            request,
            RequestStatus.ERROR,
            task_status=TaskStatus.ERROR,
            error_code=code,
            error_message=message,
            error_stack=stack,
        )
        await self._add_message(
            request_id,
            MessageType.ERROR,
            message,
            metadata={"code": code, "attempt": attempt},
        )
        return updated

    async def add_retry_message(
        self, request_id: str, attempt: int, error_message: str
    ) -> None:
        """Record a non-final failure; status is left unchanged."""
        await self._add_message(
            request_id,
            MessageType.RETRY,
            f"Attempt {attempt} failed, retrying: {error_message}",
            metadata={"attempt": attempt},
        )

    async def handle_retry(
        self, request_id: str, actor: Actor
    ) -> FeatureRequest:
        """Record a user-initiated retry."""
        request = await self.require_request(request_id)
        updated = request.model_copy(
            update={
                "retry_count": request.retry_count + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        await self.requests.save(updated)
        await self._add_message(
            request_id,
            MessageType.RETRY,
            f"Retry requested by {actor.name}",
            actor,
            metadata={"retryCount": updated.retry_count},
        )
        return updated

    async def cancel_request(
        self,
        request_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> FeatureRequest:
        """Mark a request cancelled.

        Only the status changes; an in-flight agent run is not killed.
        """
        request = await self.require_request(request_id)
        updated = await self._transition(request, RequestStatus.CANCELLED)
        await self._add_message(
            request_id,
            MessageType.CANCELLED,
            reason or f"Cancelled by {actor.name}",
            actor,
        )
        return updated

    # ------------------------------------------------------------------
    # Non-status updates
    # ------------------------------------------------------------------

    async def log_agent_summary(
        self,
        request_id: str,
        summary: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._add_message(
            request_id, MessageType.AGENT_SUMMARY, summary, metadata=metadata
        )

    async def log_agent_activity(
        self,
        request_id: str,
        message_type: MessageType,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._add_message(request_id, message_type, content, metadata=metadata)

    async def update_slack_thread(
        self,
        request_id: str,
        channel_id: str,
        thread_ts: str,
        trigger_message_ts: Optional[str] = None,
    ) -> FeatureRequest:
        fields: Dict[str, Any] = {
            "slack_channel_id": channel_id,
            "slack_thread_ts": thread_ts,
        }
        if trigger_message_ts:
            fields["slack_trigger_message_ts"] = trigger_message_ts
        return await self._update_fields(request_id, **fields)

    async def update_title(self, request_id: str, title: str) -> FeatureRequest:
        return await self._update_fields(request_id, title=title)

    async def update_issue(
        self,
        request_id: str,
        issue_number: int,
        issue_id: Optional[int] = None,
        issue_url: Optional[str] = None,
    ) -> FeatureRequest:
        return await self._update_fields(
            request_id,
            issue_number=issue_number,
            issue_id=issue_id,
            issue_url=issue_url,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        request: FeatureRequest,
        to_status: RequestStatus,
        **fields: Any,
    ) -> FeatureRequest:
        from_status = request.status
        if not is_valid_transition(from_status, to_status):
            logger.warning(
                "Unexpected request status change applied",
                extra={
                    "request_id": request.request_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )

        updated = request.model_copy(
            update={
                **fields,
                "status": to_status,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        await self.requests.save(updated)

        logger.info(
            "Request status changed",
            extra={
                "request_id": request.request_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        return updated

    async def _update_fields(self, request_id: str, **fields: Any) -> FeatureRequest:
        request = await self.require_request(request_id)
        updated = request.model_copy(
            update={**fields, "updated_at": datetime.now(timezone.utc)}
        )
        await self.requests.save(updated)
        return updated

    async def _add_message(
        self,
        request_id: str,
        message_type: MessageType,
        content: str,
        actor: Actor = SYSTEM_ACTOR,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RequestMessage:
        message = RequestMessage(
            request_id=request_id,
            type=message_type,
            source=actor.source,
            content=content,
            actor_id=actor.id,
            actor_name=actor.name,
            metadata=metadata or {},
        )
        await self.messages.add(message)
        return message
