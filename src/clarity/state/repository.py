"""PostgreSQL repositories for requests and their message threads.

This module implements the RequestRepository and MessageRepository
protocols using asyncpg. A single PostgresDatabase owns the connection
pool and is shared with the session repository.

Source:
- migrations/001_clarity_pipeline.sql (schema definition)
- src/clarity/state/machine.py (repository protocols)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from src.clarity.state.machine import MessageRepository, RequestRepository
from src.clarity.state.models import (
    FeatureRequest,
    MessageSource,
    MessageType,
    RequestMessage,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """A repository call against PostgreSQL failed.

    ``original_error`` keeps the asyncpg or socket exception for logs.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresDatabase:
    """The asyncpg pool shared by the request, message and session repositories.

    Example:
        >>> async with PostgresDatabase("postgresql://...") as db:
        ...     requests = PostgresRequestRepository(db)
    """

    def __init__(self, dsn: str, min_pool_size: int = 2, max_pool_size: int = 10):
        self.dsn = dsn
        self.pool_bounds = (min_pool_size, max_pool_size)
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """The live pool.

        Raises:
            DatabaseError: ``connect`` has not been awaited yet.
        """
        if self._pool is None:
            raise DatabaseError("PostgresDatabase used before connect()")
        return self._pool

    async def connect(self) -> None:
        """Open the pool; a second call is a no-op.

        Raises:
            DatabaseError: PostgreSQL could not be reached.
        """
        if self._pool is not None:
            return
        low, high = self.pool_bounds
        try:
            self._pool = await asyncpg.create_pool(self.dsn, min_size=low, max_size=high)
        except Exception as e:
            logger.error("PostgreSQL pool could not be opened", extra={"error": str(e)})
            raise DatabaseError(f"cannot open PostgreSQL pool: {e}", original_error=e) from e
        logger.info("PostgreSQL pool open", extra={"min_size": low, "max_size": high})

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info("PostgreSQL pool closed")

    async def __aenter__(self) -> "PostgresDatabase":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """A pooled connection inside an open transaction."""
        async with self.pool.acquire() as conn, conn.transaction():
            yield conn

    async def health_check(self) -> bool:
        """Round-trip ``SELECT 1``; False on any failure."""
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning("PostgreSQL health check failed", extra={"error": str(e)})
            return False


_REQUEST_COLUMNS = (
    "request_id",
    "origin",
    "repository_url",
    "repository_name",
    "default_branch",
    "title",
    "description",
    "request_type",
    "issue_id",
    "issue_number",
    "issue_url",
    "status",
    "task_status",
    "follow_up_request",
    "follow_up_author",
    "pr_number",
    "pr_url",
    "pr_branch_name",
    "requester_id",
    "requester_name",
    "slack_channel_id",
    "slack_thread_ts",
    "slack_trigger_message_ts",
    "agent_type",
    "agent_provider",
    "agent_model",
    "cost_usd",
    "duration_ms",
    "retry_count",
    "error_code",
    "error_message",
    "error_stack",
    "created_at",
    "updated_at",
    "processing_started_at",
    "completed_at",
)

_INSERT_REQUEST_SQL = """
    INSERT INTO feature_requests ({columns})
    VALUES ({placeholders})
""".format(
    columns=", ".join(_REQUEST_COLUMNS),
    placeholders=", ".join(f"${i}" for i in range(1, len(_REQUEST_COLUMNS) + 1)),
)

_UPSERT_REQUEST_SQL = _INSERT_REQUEST_SQL + """
    ON CONFLICT (request_id) DO UPDATE SET {assignments}
""".format(
    assignments=", ".join(
        f"{column} = EXCLUDED.{column}"
        for column in _REQUEST_COLUMNS
        if column not in ("request_id", "created_at")
    ),
)

_SELECT_REQUEST_SQL = "SELECT {columns} FROM feature_requests".format(
    columns=", ".join(_REQUEST_COLUMNS)
)


class PostgresRequestRepository(RequestRepository):
    """PostgreSQL implementation of the RequestRepository protocol."""

    def __init__(self, database: PostgresDatabase):
        self.database = database

    def _to_row(self, request: FeatureRequest) -> List[Any]:
        data = request.model_dump(mode="python")
        values = []
        for column in _REQUEST_COLUMNS:
            value = data[column]
            values.append(value.value if hasattr(value, "value") else value)
        return values

    def _from_row(self, row: asyncpg.Record) -> FeatureRequest:
        data = dict(row)
        for column in ("created_at", "updated_at", "processing_started_at", "completed_at"):
            data[column] = _as_utc(data[column])
        return FeatureRequest.model_validate(data)

    async def create(self, request: FeatureRequest) -> bool:
        try:
            async with self.database.pool.acquire() as conn:
                await conn.execute(_INSERT_REQUEST_SQL, *self._to_row(request))
            return True
        except asyncpg.UniqueViolationError:
            return False
        except Exception as e:
            logger.error(
                "Failed to create request",
                extra={"request_id": request.request_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to create request: {e}", original_error=e
            ) from e

    async def get(self, request_id: str) -> Optional[FeatureRequest]:
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(
                    _SELECT_REQUEST_SQL + " WHERE request_id = $1",
                    request_id,
                )
        except Exception as e:
            logger.error(
                "Failed to get request",
                extra={"request_id": request_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get request: {e}", original_error=e) from e
        return self._from_row(row) if row is not None else None

    async def save(self, request: FeatureRequest) -> None:
        try:
            async with self.database.pool.acquire() as conn:
                await conn.execute(_UPSERT_REQUEST_SQL, *self._to_row(request))
        except Exception as e:
            logger.error(
                "Failed to save request",
                extra={"request_id": request.request_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save request: {e}", original_error=e) from e

    async def find_by_slack_thread(
        self, channel_id: str, thread_ts: str
    ) -> List[FeatureRequest]:
        try:
            async with self.database.pool.acquire() as conn:
                rows = await conn.fetch(
                    _SELECT_REQUEST_SQL
                    + """
                    WHERE slack_channel_id = $1
                      AND (slack_thread_ts = $2 OR slack_trigger_message_ts = $2)
                    ORDER BY created_at DESC
                    """,
                    channel_id,
                    thread_ts,
                )
        except Exception as e:
            logger.error(
                "Failed to look up requests by Slack thread",
                extra={"channel_id": channel_id, "thread_ts": thread_ts, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to look up requests by Slack thread: {e}", original_error=e
            ) from e
        return [self._from_row(row) for row in rows]


class PostgresMessageRepository(MessageRepository):
    """PostgreSQL implementation of the MessageRepository protocol."""

    def __init__(self, database: PostgresDatabase):
        self.database = database

    async def add(self, message: RequestMessage) -> None:
        try:
            async with self.database.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO request_messages (
                        id,
                        request_id,
                        type,
                        source,
                        content,
                        actor_id,
                        actor_name,
                        metadata,
                        created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    message.id,
                    message.request_id,
                    message.type.value,
                    message.source.value,
                    message.content,
                    message.actor_id,
                    message.actor_name,
                    json.dumps(message.metadata),
                    message.created_at,
                )
        except Exception as e:
            logger.error(
                "Failed to add request message",
                extra={
                    "request_id": message.request_id,
                    "type": message.type.value,
                    "error": str(e),
                },
            )
            raise DatabaseError(
                f"Failed to add request message: {e}", original_error=e
            ) from e

    async def list_for_request(
        self,
        request_id: str,
        types: Optional[List[MessageType]] = None,
    ) -> List[RequestMessage]:
        query = """
            SELECT id, request_id, type, source, content, actor_id,
                   actor_name, metadata, created_at
            FROM request_messages
            WHERE request_id = $1
        """
        args: List[Any] = [request_id]
        if types is not None:
            query += " AND type = ANY($2::text[])"
            args.append([t.value for t in types])
        query += " ORDER BY created_at ASC, seq ASC"

        try:
            async with self.database.pool.acquire() as conn:
                rows = await conn.fetch(query, *args)
        except Exception as e:
            logger.error(
                "Failed to list request messages",
                extra={"request_id": request_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list request messages: {e}", original_error=e
            ) from e

        return [
            RequestMessage(
                id=row["id"],
                request_id=row["request_id"],
                type=MessageType(row["type"]),
                source=MessageSource(row["source"]),
                content=row["content"],
                actor_id=row["actor_id"],
                actor_name=row["actor_name"],
                metadata=json.loads(row["metadata"])
                if isinstance(row["metadata"], str)
                else (row["metadata"] or {}),
                created_at=_as_utc(row["created_at"]),
            )
            for row in rows
        ]

    async def has_message_with_metadata(
        self,
        request_id: str,
        message_type: MessageType,
        key: str,
        value: str,
    ) -> bool:
        try:
            async with self.database.pool.acquire() as conn:
                found = await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM request_messages
                        WHERE request_id = $1
                          AND type = $2
                          AND metadata ->> $3 = $4
                    )
                    """,
                    request_id,
                    message_type.value,
                    key,
                    value,
                )
        except Exception as e:
            logger.error(
                "Failed to check request messages",
                extra={"request_id": request_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to check request messages: {e}", original_error=e
            ) from e
        return bool(found)
