"""Slack Web API notifier.

Status is shown as a reaction on the triggering message; each state
swaps out the reactions of the states it can follow.

Source:
- src/clarity/github/client.py (httpx client lifecycle)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from src.clarity.notify.base import NotificationThread, Notifier, StatusState

logger = logging.getLogger(__name__)

STATUS_REACTIONS: Dict[StatusState, str] = {
    StatusState.QUEUED: "eyes",
    StatusState.WORKING: "clarity-loading",
    StatusState.NEEDS_CLARIFICATION: "speech_balloon",
    StatusState.SUCCEEDED: "white_check_mark",
    StatusState.FAILED: "x",
}

# Reactions removed before a state's own reaction is added.
REPLACED_STATES: Dict[StatusState, tuple] = {
    StatusState.QUEUED: (),
    StatusState.WORKING: (
        StatusState.QUEUED,
        StatusState.NEEDS_CLARIFICATION,
        StatusState.FAILED,
    ),
    StatusState.NEEDS_CLARIFICATION: (StatusState.WORKING,),
    StatusState.SUCCEEDED: (StatusState.WORKING,),
    StatusState.FAILED: (StatusState.WORKING,),
}

TOLERATED_ERRORS: FrozenSet[str] = frozenset({"already_reacted", "no_reaction"})


class SlackAPIError(Exception):
    """Raised when a Slack Web API call returns ``ok: false``.

    Attributes:
        method: Web API method name.
        error: Slack error code.
    """

    def __init__(self, method: str, error: str):
        self.method = method
        self.error = error
        super().__init__(f"Slack API {method} failed: {error}")


@dataclass(frozen=True)
class ThreadMessage:
    user: str
    text: str
    ts: str


class SlackNotifier(Notifier):
    """Posts thread replies and status reactions through the Slack Web API.

    Attributes:
        bot_token: Bot token (``xoxb-...``).
        base_url: Web API base URL.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        bot_token: str,
        base_url: str = "https://slack.com/api",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.bot_token}"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _call(
        self,
        method: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call a Web API method.

        Raises:
            SlackAPIError: If Slack reports an error other than a
                tolerated reaction conflict.
            httpx.HTTPError: On transport failures.
        """
        if params is not None:
            response = await self.client.get(f"/{method}", params=params)
        else:
            response = await self.client.post(f"/{method}", json=payload or {})
        response.raise_for_status()
        data = response.json()

        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            if error in TOLERATED_ERRORS:
                logger.debug("Tolerated Slack error", extra={"method": method, "error": error})
                return data
            raise SlackAPIError(method, error)
        return data

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        data = await self._call("chat.postMessage", payload)
        return data.get("ts", "")

    async def add_reaction(self, channel: str, timestamp: str, name: str) -> None:
        await self._call(
            "reactions.add", {"channel": channel, "timestamp": timestamp, "name": name}
        )

    async def remove_reaction(self, channel: str, timestamp: str, name: str) -> None:
        await self._call(
            "reactions.remove", {"channel": channel, "timestamp": timestamp, "name": name}
        )

    async def post_comment(self, thread: NotificationThread, body: str) -> None:
        if not thread.has_slack:
            return
        await self.post_message(thread.slack_channel_id, body, thread.slack_thread_ts)

    async def post_status_reaction(
        self, thread: NotificationThread, state: StatusState
    ) -> None:
        if not (thread.slack_channel_id and thread.slack_message_ts):
            return
        channel, ts = thread.slack_channel_id, thread.slack_message_ts
        for previous in REPLACED_STATES[state]:
            await self.remove_reaction(channel, ts, STATUS_REACTIONS[previous])
        await self.add_reaction(channel, ts, STATUS_REACTIONS[state])
        logger.info(
            "Updated status reaction",
            extra={"request_id": thread.request_id, "state": state.value},
        )

    async def get_thread_messages(
        self,
        channel: str,
        thread_ts: str,
        exclude_ts: Optional[str] = None,
    ) -> List[ThreadMessage]:
        """Human replies in a thread, oldest first, without bot messages."""
        data = await self._call(
            "conversations.replies",
            params={"channel": channel, "ts": thread_ts, "limit": 100},
        )
        messages = []
        for item in data.get("messages", []):
            if item.get("bot_id") or item.get("subtype") == "bot_message":
                continue
            if exclude_ts and item.get("ts") == exclude_ts:
                continue
            text = (item.get("text") or "").strip()
            if text:
                messages.append(
                    ThreadMessage(user=item.get("user", ""), text=text, ts=item.get("ts", ""))
                )
        return messages

    async def get_thread_context(
        self,
        channel: str,
        thread_ts: str,
        exclude_ts: Optional[str] = None,
    ) -> Optional[str]:
        """Earlier thread replies rendered for inclusion in a request."""
        messages = await self.get_thread_messages(channel, thread_ts, exclude_ts)
        if not messages:
            return None
        return "\n\n".join(f"**<@{m.user}>:** {m.text}" for m in messages)
