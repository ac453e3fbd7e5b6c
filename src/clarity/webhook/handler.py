"""Turns raw GitHub deliveries into typed events.

Handles two event families: ``issues`` (opened or labeled) and
``issue_comment`` (created). Anything else, or any payload missing the
fields the pipeline needs, parses to None and is acknowledged without
work.

When a webhook secret is configured every delivery must carry a valid
``X-Hub-Signature-256`` (HMAC-SHA256 of the raw body). Without one,
deliveries are trusted, which is only safe behind something else that
authenticates GitHub.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional, Tuple

from src.clarity.webhook.models import (
    GitHubIssueCommentEvent,
    GitHubIssueEvent,
    IssueAction,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class _Malformed(ValueError):
    """A payload field is missing or has the wrong shape."""


def _mapping(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = container.get(key)
    if not isinstance(value, dict):
        raise _Malformed(f"'{key}' is not an object")
    return value


def _text(container: Dict[str, Any], key: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value.strip():
        raise _Malformed(f"'{key}' is missing or blank")
    return value.strip()


def _positive_int(container: Dict[str, Any], key: str) -> int:
    value = container.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise _Malformed(f"'{key}' is not a positive integer")
    return value


def _login(container: Dict[str, Any], key: str) -> str:
    return _text(_mapping(container, key), "login")


def _owner_and_name(payload: Dict[str, Any]) -> Tuple[str, str]:
    repository = _mapping(payload, "repository")
    return _login(repository, "owner"), _text(repository, "name")


def _label_names(raw: Any) -> List[str]:
    """Names from ``[{"name": ...}]``; bare strings are accepted, junk skipped."""
    if not isinstance(raw, list):
        return []
    names = []
    for entry in raw:
        name = entry.get("name") if isinstance(entry, dict) else entry
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return names


def _optional(value: Any, kind: type) -> Any:
    return value if isinstance(value, kind) and not isinstance(value, bool) else None


class WebhookHandler:
    """Verifies and parses GitHub webhook deliveries.

    The parse methods never raise.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret

    def verify_signature(self, body: bytes, signature_header: Optional[str]) -> bool:
        """True when no secret is set or ``sha256=<hex>`` matches ``body``."""
        if not self.secret:
            return True
        if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
            logger.warning("Webhook delivery has no sha256 signature")
            return False

        digest = hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if hmac.compare_digest(digest, signature_header[len(SIGNATURE_PREFIX):]):
            return True
        logger.warning("Webhook signature does not match body")
        return False

    def parse_issue_event(self, payload: Dict[str, Any]) -> Optional[GitHubIssueEvent]:
        """Parse an ``issues`` delivery with action opened or labeled."""
        if not isinstance(payload, dict):
            logger.warning("Issue payload is not an object", extra={"payload_type": type(payload).__name__})
            return None
        try:
            action = IssueAction(payload.get("action"))
        except ValueError:
            logger.debug("Issue action not handled", extra={"action": payload.get("action")})
            return None

        try:
            issue = _mapping(payload, "issue")
            owner, name = _owner_and_name(payload)
            event = GitHubIssueEvent(
                action=action,
                issue_number=_positive_int(issue, "number"),
                issue_global_id=_optional(issue.get("id"), int),
                issue_url=_optional(issue.get("html_url"), str),
                title=_text(issue, "title"),
                body=_optional(issue.get("body"), str) or "",
                labels=_label_names(issue.get("labels")),
                added_label=self._added_label(payload),
                repository=name,
                owner=owner,
                author=_login(issue, "user"),
            )
        except _Malformed as e:
            logger.warning("Dropping malformed issue payload", extra={"action": action.value, "reason": str(e)})
            return None

        logger.info(
            "Parsed issue event",
            extra={
                "action": action.value,
                "repository": event.full_repository,
                "issue_number": event.issue_number,
            },
        )
        return event

    def parse_issue_comment_event(
        self, payload: Dict[str, Any]
    ) -> Optional[GitHubIssueCommentEvent]:
        """Parse a newly created ``issue_comment`` delivery."""
        if not isinstance(payload, dict) or payload.get("action") != "created":
            return None

        try:
            issue = _mapping(payload, "issue")
            comment = _mapping(payload, "comment")
            comment_id = comment.get("id")
            if isinstance(comment_id, bool) or not isinstance(comment_id, int):
                raise _Malformed("'id' is not an integer")
            owner, name = _owner_and_name(payload)
            user = _mapping(comment, "user")
            return GitHubIssueCommentEvent(
                issue_number=_positive_int(issue, "number"),
                comment_id=comment_id,
                body=_text(comment, "body"),
                author=_text(user, "login"),
                author_is_bot=user.get("type") == "Bot",
                is_pull_request="pull_request" in issue,
                repository=name,
                owner=owner,
            )
        except _Malformed as e:
            logger.debug("Dropping issue comment", extra={"reason": str(e)})
            return None

    @staticmethod
    def _added_label(payload: Dict[str, Any]) -> Optional[str]:
        label = payload.get("label")
        if not isinstance(label, dict) or not isinstance(label.get("name"), str):
            return None
        return label["name"].strip() or None
