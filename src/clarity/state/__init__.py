"""Request lifecycle state and persistence.

Requests move through:
- pending → issue_created → processing ⇄ awaiting_clarification
- → pr_created | completed, with error and cancelled from anywhere

Each request owns an append-only message thread used as audit trail
and as conversation context for later agent turns.
"""

from src.clarity.state.machine import (
    MessageRepository,
    RequestNotFoundError,
    RequestRepository,
    RequestStateMachine,
)
from src.clarity.state.memory import (
    InMemoryMessageRepository,
    InMemoryRequestRepository,
)
from src.clarity.state.repository import (
    DatabaseError,
    PostgresDatabase,
    PostgresMessageRepository,
    PostgresRequestRepository,
)
from src.clarity.state.models import (
    ACTIVE_THREAD_STATUSES,
    SYSTEM_ACTOR,
    VALID_TRANSITIONS,
    Actor,
    FeatureRequest,
    MessageSource,
    MessageType,
    RequestMessage,
    RequestOrigin,
    RequestStatus,
    TaskStatus,
    is_terminal_status,
    is_valid_transition,
)

__all__ = [
    # Models
    "ACTIVE_THREAD_STATUSES",
    "Actor",
    "FeatureRequest",
    "MessageSource",
    "MessageType",
    "RequestMessage",
    "RequestOrigin",
    "RequestStatus",
    "SYSTEM_ACTOR",
    "TaskStatus",
    "VALID_TRANSITIONS",
    "is_terminal_status",
    "is_valid_transition",
    # State machine
    "MessageRepository",
    "RequestNotFoundError",
    "RequestRepository",
    "RequestStateMachine",
    # Repositories
    "InMemoryMessageRepository",
    "InMemoryRequestRepository",
    "DatabaseError",
    "PostgresDatabase",
    "PostgresMessageRepository",
    "PostgresRequestRepository",
]
