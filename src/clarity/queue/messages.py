"""Typed queue payloads.

Every payload carries a ``type`` discriminator. Payloads without one are
GitHub issue messages, the original message shape on the queue.
"""

from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field


class IssueQueueMessage(BaseModel):
    """Work item for one agent turn against a repository issue."""

    type: Literal["issue"] = "issue"

    request_id: str = Field(
        ...,
        min_length=1,
        description="Globally unique request identifier",
    )

    repository_url: str = Field(
        ...,
        description="HTTPS clone URL, e.g. https://github.com/acme/widgets",
    )

    repository_name: str = Field(
        ...,
        description='Full repository name in format "{owner}/{repo}"',
    )

    issue_id: Optional[int] = None

    issue_number: int = Field(..., gt=0)

    issue_title: str = ""

    issue_body: str = ""

    labels: List[str] = Field(default_factory=list)

    author: str = "unknown"

    follow_up_request: Optional[str] = Field(
        default=None,
        description="Follow-up or clarification text for a multi-turn request",
    )

    follow_up_author: Optional[str] = None

    existing_pr_number: Optional[int] = None

    existing_pr_url: Optional[str] = None

    is_follow_up: bool = False

    is_retry: bool = False

    triggered_by: str = "github"

    agent_type: Optional[str] = None

    agent_provider: Optional[str] = None

    agent_model: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repository_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository_name.split("/", 1)[-1]


class SlackFeatureRequestMessage(BaseModel):
    """Feature request raised from Slack; becomes an issue, then an IssueQueueMessage."""

    type: Literal["slack_feature_request"] = "slack_feature_request"
    request_id: str = Field(..., min_length=1)
    repository_url: str
    repository_name: str
    title: str
    description: str
    request_type: str = "feature"
    user_id: str
    user_name: str = "unknown"
    channel_id: str
    thread_ts: Optional[str] = None
    trigger_message_ts: Optional[str] = None
    trigger_thread_ts: Optional[str] = None
    from_mention: bool = False
    thread_context: Optional[str] = None
    agent_type: Optional[str] = None
    agent_provider: Optional[str] = None
    agent_model: Optional[str] = None

    # Set on redelivery once the issue exists, so the issue is not created twice
    issue_number: Optional[int] = None
    issue_id: Optional[int] = None
    issue_url: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repository_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository_name.split("/", 1)[-1]


class SlackRetryRequestMessage(BaseModel):
    type: Literal["slack_retry_request"] = "slack_retry_request"
    request_id: str = Field(..., min_length=1)
    user_id: str
    user_name: str = "unknown"
    channel_id: Optional[str] = None
    thread_ts: Optional[str] = None


class SlackClarificationAnswerMessage(BaseModel):
    type: Literal["slack_clarification_answer"] = "slack_clarification_answer"
    request_id: str = Field(..., min_length=1)
    answer: str
    user_id: str
    user_name: str = "unknown"
    channel_id: Optional[str] = None
    thread_ts: Optional[str] = None
    message_ts: Optional[str] = None


class SlackSuggestChangesMessage(BaseModel):
    type: Literal["slack_suggest_changes"] = "slack_suggest_changes"
    request_id: str = Field(..., min_length=1)
    changes: str
    user_id: str
    user_name: str = "unknown"
    channel_id: Optional[str] = None
    thread_ts: Optional[str] = None
    message_ts: Optional[str] = None


class SlackAppMentionMessage(BaseModel):
    """Raw @-mention of the bot; routing is resolved by the coordinator."""

    type: Literal["slack_app_mention"] = "slack_app_mention"
    text: str
    user_id: str
    user_name: str = "unknown"
    channel_id: str
    message_ts: str
    thread_ts: Optional[str] = None
    team_id: Optional[str] = None


QueuePayload = Union[
    IssueQueueMessage,
    SlackFeatureRequestMessage,
    SlackRetryRequestMessage,
    SlackClarificationAnswerMessage,
    SlackSuggestChangesMessage,
    SlackAppMentionMessage,
]

MESSAGE_TYPES: Dict[str, Type[BaseModel]] = {
    "issue": IssueQueueMessage,
    "slack_feature_request": SlackFeatureRequestMessage,
    "slack_retry_request": SlackRetryRequestMessage,
    "slack_clarification_answer": SlackClarificationAnswerMessage,
    "slack_suggest_changes": SlackSuggestChangesMessage,
    "slack_app_mention": SlackAppMentionMessage,
}


def parse_queue_message(data: Union[Dict[str, Any], BaseModel]) -> QueuePayload:
    """Parse a raw queue body into its typed payload.

    Args:
        data: Raw body as delivered by the transport, or an already
              parsed payload.

    Returns:
        The payload model selected by ``type``. Unknown or missing types
        are parsed as IssueQueueMessage.

    Raises:
        pydantic.ValidationError: If the body does not match its model.
    """
    if isinstance(data, BaseModel):
        return data  # type: ignore[return-value]

    model = MESSAGE_TYPES.get(data.get("type", "issue"), IssueQueueMessage)
    payload = dict(data)
    if model is IssueQueueMessage:
        payload["type"] = "issue"
    return model.model_validate(payload)  # type: ignore[return-value]
