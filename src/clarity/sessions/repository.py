"""Session persistence.

At most one live session exists per request: ``save`` deletes every
prior row for the request before inserting the new one, in a single
transaction. Rows expire after a TTL and are reaped by ``delete_expired``
on an independent schedule.

Source:
- migrations/001_clarity_pipeline.sql (agent_sessions table)
- src/clarity/state/repository.py (PostgresDatabase, DatabaseError)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, runtime_checkable

import asyncpg

from src.clarity.sessions.models import (
    DEFAULT_SESSION_TTL_DAYS,
    AgentSession,
    SessionStats,
    compute_expiry,
)
from src.clarity.state.repository import DatabaseError, PostgresDatabase, _as_utc

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionRepository(Protocol):
    """Persistence contract for agent sessions."""

    async def save(
        self,
        request_id: str,
        session_id: str,
        agent_type: str,
        session_blob: str,
        blob_size_bytes: Optional[int] = None,
        ttl_days: Optional[int] = None,
    ) -> AgentSession:
        """Replace the request's session with a new one."""
        ...

    async def get_for_request(self, request_id: str) -> Optional[AgentSession]:
        """The single live (unexpired) session for a request, if any."""
        ...

    async def get_by_session_id(self, session_id: str) -> Optional[AgentSession]:
        ...

    async def delete_expired(self) -> int:
        ...

    async def delete_for_request(self, request_id: str) -> int:
        ...

    async def update_expiry(self, request_id: str, ttl_days: int) -> bool:
        ...

    async def get_stats(self) -> SessionStats:
        ...


def _build_session(
    request_id: str,
    session_id: str,
    agent_type: str,
    session_blob: str,
    blob_size_bytes: Optional[int],
    ttl_days: Optional[int],
) -> AgentSession:
    if ttl_days is None:
        ttl_days = DEFAULT_SESSION_TTL_DAYS
    elif ttl_days < 1:
        raise ValueError(f"ttl_days must be at least 1, got {ttl_days}")
    created_at = datetime.now(timezone.utc)
    return AgentSession(
        request_id=request_id,
        session_id=session_id,
        agent_type=agent_type,
        session_blob=session_blob,
        blob_size_bytes=(
            blob_size_bytes if blob_size_bytes is not None else len(session_blob)
        ),
        created_at=created_at,
        expires_at=compute_expiry(created_at, ttl_days),
    )


class InMemorySessionRepository(SessionRepository):
    """Dictionary-backed SessionRepository keyed by request id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, AgentSession] = {}

    async def save(
        self,
        request_id: str,
        session_id: str,
        agent_type: str,
        session_blob: str,
        blob_size_bytes: Optional[int] = None,
        ttl_days: Optional[int] = None,
    ) -> AgentSession:
        session = _build_session(
            request_id, session_id, agent_type, session_blob, blob_size_bytes, ttl_days
        )
        self._sessions[request_id] = session
        return session

    async def get_for_request(self, request_id: str) -> Optional[AgentSession]:
        session = self._sessions.get(request_id)
        if session is None or session.is_expired():
            return None
        return session

    async def get_by_session_id(self, session_id: str) -> Optional[AgentSession]:
        for session in self._sessions.values():
            if session.session_id == session_id:
                return session
        return None

    async def delete_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [rid for rid, s in self._sessions.items() if s.is_expired(now)]
        for request_id in expired:
            del self._sessions[request_id]
        return len(expired)

    async def delete_for_request(self, request_id: str) -> int:
        return 1 if self._sessions.pop(request_id, None) is not None else 0

    async def update_expiry(self, request_id: str, ttl_days: int) -> bool:
        session = self._sessions.get(request_id)
        if session is None:
            return False
        self._sessions[request_id] = session.model_copy(
            update={
                "expires_at": datetime.now(timezone.utc) + timedelta(days=ttl_days)
            }
        )
        return True

    async def get_stats(self) -> SessionStats:
        now = datetime.now(timezone.utc)
        sessions = list(self._sessions.values())
        return SessionStats(
            total_sessions=len(sessions),
            expired_sessions=sum(1 for s in sessions if s.is_expired(now)),
            total_blob_bytes=sum(s.blob_size_bytes for s in sessions),
        )


_SESSION_COLUMNS = """
    request_id, session_id, agent_type, session_blob,
    blob_size_bytes, created_at, expires_at
"""


class PostgresSessionRepository(SessionRepository):
    """PostgreSQL implementation of the SessionRepository protocol."""

    def __init__(self, database: PostgresDatabase):
        self.database = database

    def _from_row(self, row: asyncpg.Record) -> AgentSession:
        return AgentSession(
            request_id=row["request_id"],
            session_id=row["session_id"],
            agent_type=row["agent_type"],
            session_blob=row["session_blob"],
            blob_size_bytes=row["blob_size_bytes"],
            created_at=_as_utc(row["created_at"]),
            expires_at=_as_utc(row["expires_at"]),
        )

    async def save(
        self,
        request_id: str,
        session_id: str,
        agent_type: str,
        session_blob: str,
        blob_size_bytes: Optional[int] = None,
        ttl_days: Optional[int] = None,
    ) -> AgentSession:
        session = _build_session(
            request_id, session_id, agent_type, session_blob, blob_size_bytes, ttl_days
        )
        try:
            async with self.database.transaction() as conn:
                deleted = await conn.execute(
                    "DELETE FROM agent_sessions WHERE request_id = $1",
                    request_id,
                )
                await conn.execute(
                    f"""
                    INSERT INTO agent_sessions ({_SESSION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    session.request_id,
                    session.session_id,
                    session.agent_type,
                    session.session_blob,
                    session.blob_size_bytes,
                    session.created_at,
                    session.expires_at,
                )
        except Exception as e:
            logger.error(
                "Failed to save agent session",
                extra={"request_id": request_id, "session_id": session_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save agent session: {e}", original_error=e
            ) from e

        logger.info(
            "Saved agent session",
            extra={
                "request_id": request_id,
                "session_id": session_id,
                "blob_size_bytes": session.blob_size_bytes,
                "replaced": int(deleted.split()[-1]),
            },
        )
        return session

    async def get_for_request(self, request_id: str) -> Optional[AgentSession]:
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM agent_sessions
                    WHERE request_id = $1 AND expires_at > NOW()
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    request_id,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get agent session: {e}", original_error=e
            ) from e
        return self._from_row(row) if row is not None else None

    async def get_by_session_id(self, session_id: str) -> Optional[AgentSession]:
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_SESSION_COLUMNS} FROM agent_sessions WHERE session_id = $1",
                    session_id,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get agent session: {e}", original_error=e
            ) from e
        return self._from_row(row) if row is not None else None

    async def delete_expired(self) -> int:
        try:
            async with self.database.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM agent_sessions WHERE expires_at <= NOW()"
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to delete expired sessions: {e}", original_error=e
            ) from e

        deleted = int(result.split()[-1])
        if deleted:
            logger.info("Deleted expired agent sessions", extra={"count": deleted})
        return deleted

    async def delete_for_request(self, request_id: str) -> int:
        try:
            async with self.database.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM agent_sessions WHERE request_id = $1", request_id
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to delete agent sessions: {e}", original_error=e
            ) from e
        return int(result.split()[-1])

    async def update_expiry(self, request_id: str, ttl_days: int) -> bool:
        expires_at = datetime.now(timezone.utc) + timedelta(days=ttl_days)
        try:
            async with self.database.pool.acquire() as conn:
                result = await conn.execute(
                    "UPDATE agent_sessions SET expires_at = $2 WHERE request_id = $1",
                    request_id,
                    expires_at,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to update session expiry: {e}", original_error=e
            ) from e
        return int(result.split()[-1]) > 0

    async def get_stats(self) -> SessionStats:
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        COUNT(*) AS total,
                        COUNT(*) FILTER (WHERE expires_at <= NOW()) AS expired,
                        COALESCE(SUM(blob_size_bytes), 0) AS total_bytes
                    FROM agent_sessions
                    """
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to read session stats: {e}", original_error=e
            ) from e
        return SessionStats(
            total_sessions=row["total"],
            expired_sessions=row["expired"],
            total_blob_bytes=int(row["total_bytes"]),
        )
