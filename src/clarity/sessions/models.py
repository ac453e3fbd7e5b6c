"""Agent session models."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_SESSION_TTL_DAYS = 7


class AgentSession(BaseModel):
    """Opaque conversation state returned by an agent turn.

    Attributes:
        request_id: Owning request.
        session_id: Agent-issued identifier; a fresh one per turn.
        agent_type: Agent variant that produced the session.
        session_blob: gzip-compressed, base64-encoded session file.
        blob_size_bytes: Size of ``session_blob``.
        created_at: When the row was written (UTC).
        expires_at: When the TTL sweep may delete the row (UTC).
    """

    request_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    agent_type: str
    session_blob: str
    blob_size_bytes: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


def compute_expiry(
    created_at: datetime, ttl_days: int = DEFAULT_SESSION_TTL_DAYS
) -> datetime:
    return created_at + timedelta(days=ttl_days)


@dataclass
class SessionStats:
    total_sessions: int
    expired_sessions: int
    total_blob_bytes: int
