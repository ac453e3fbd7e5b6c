"""Slack Events API ingress.

Only ``app_mention`` events are turned into work; they become
``SlackAppMentionMessage`` queue items and the coordinator does the rest.
Requests are verified with Slack's v0 signing scheme when a signing
secret is configured.
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from src.clarity.queue.messages import SlackAppMentionMessage

logger = logging.getLogger(__name__)

SLACK_SIGNATURE_VERSION = "v0"
MAX_REQUEST_AGE_SECONDS = 300


def verify_slack_signature(
    secret: Optional[str],
    body: bytes,
    timestamp: Optional[str],
    signature: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """Check ``X-Slack-Signature`` for a request body.

    Returns True when no secret is configured. Requests older than five
    minutes are rejected to prevent replay.
    """
    if not secret:
        return True
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > MAX_REQUEST_AGE_SECONDS:
        logger.warning("Stale Slack request rejected", extra={"timestamp": timestamp})
        return False

    base = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"{SLACK_SIGNATURE_VERSION}={digest}", signature)


def parse_app_mention(payload: Dict[str, Any]) -> Optional[SlackAppMentionMessage]:
    """Queue message for an ``event_callback`` carrying an app mention.

    Bot-authored mentions and edits are ignored.
    """
    if payload.get("type") != "event_callback":
        return None
    event = payload.get("event")
    if not isinstance(event, dict) or event.get("type") != "app_mention":
        return None
    if event.get("bot_id") or event.get("subtype"):
        return None

    user = event.get("user")
    channel = event.get("channel")
    ts = event.get("ts")
    if not (isinstance(user, str) and isinstance(channel, str) and isinstance(ts, str)):
        logger.warning("Incomplete app_mention event", extra={"event_id": payload.get("event_id")})
        return None

    return SlackAppMentionMessage(
        text=event.get("text") or "",
        user_id=user,
        user_name=user,
        channel_id=channel,
        message_ts=ts,
        thread_ts=event.get("thread_ts"),
        team_id=payload.get("team_id"),
    )
