"""Inbound webhook handling.

Receives and parses GitHub and Slack webhook events:
- issues.opened / issues.labeled with the trigger label start a request
- issue_comment.created on a request awaiting clarification answers it
- Slack app_mention events become mention work items
"""

from src.clarity.webhook.handler import WebhookHandler
from src.clarity.webhook.intake import IntakeOutcome, WebhookIntake
from src.clarity.webhook.models import (
    GitHubIssueCommentEvent,
    GitHubIssueEvent,
    IssueAction,
    github_request_id,
)
from src.clarity.webhook.slack import parse_app_mention, verify_slack_signature

__all__ = [
    "GitHubIssueCommentEvent",
    "GitHubIssueEvent",
    "IntakeOutcome",
    "IssueAction",
    "WebhookHandler",
    "WebhookIntake",
    "github_request_id",
    "parse_app_mention",
    "verify_slack_signature",
]
