"""In-memory request and message repositories.

Used when no database is configured and throughout the test suite.
"""

from typing import Dict, List, Optional

from src.clarity.state.machine import MessageRepository, RequestRepository
from src.clarity.state.models import FeatureRequest, MessageType, RequestMessage


class InMemoryRequestRepository(RequestRepository):
    """Dictionary-backed RequestRepository."""

    def __init__(self) -> None:
        self._requests: Dict[str, FeatureRequest] = {}

    async def create(self, request: FeatureRequest) -> bool:
        if request.request_id in self._requests:
            return False
        self._requests[request.request_id] = request
        return True

    async def get(self, request_id: str) -> Optional[FeatureRequest]:
        return self._requests.get(request_id)

    async def save(self, request: FeatureRequest) -> None:
        self._requests[request.request_id] = request

    async def find_by_slack_thread(
        self, channel_id: str, thread_ts: str
    ) -> List[FeatureRequest]:
        return [
            r
            for r in self._requests.values()
            if r.slack_channel_id == channel_id
            and thread_ts in (r.slack_thread_ts, r.slack_trigger_message_ts)
        ]


class InMemoryMessageRepository(MessageRepository):
    """List-backed append-only MessageRepository."""

    def __init__(self) -> None:
        self._messages: List[RequestMessage] = []

    async def add(self, message: RequestMessage) -> None:
        self._messages.append(message)

    async def list_for_request(
        self,
        request_id: str,
        types: Optional[List[MessageType]] = None,
    ) -> List[RequestMessage]:
        # Append order breaks created_at ties
        return sorted(
            (
                m
                for m in self._messages
                if m.request_id == request_id and (types is None or m.type in types)
            ),
            key=lambda m: m.created_at,
        )

    async def has_message_with_metadata(
        self,
        request_id: str,
        message_type: MessageType,
        key: str,
        value: str,
    ) -> bool:
        return any(
            m.request_id == request_id
            and m.type == message_type
            and m.metadata.get(key) == value
            for m in self._messages
        )
