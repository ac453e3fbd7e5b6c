"""Provider-agnostic queue contract and retry policy.

The coordinator only ever sees QueueMessage envelopes and a
QueueProducer. Transport adapters (the in-memory broker in memory.py, a
managed queue service, a self-hosted broker) implement these types.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

BodyT = TypeVar("BodyT")


class QueueMessage(ABC, Generic[BodyT]):
    """One delivery of a message body.

    Exists only for the duration of a delivery and is never persisted.
    ``attempts`` is 1-based: the first delivery reports 1.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @property
    @abstractmethod
    def body(self) -> BodyT:
        ...

    @property
    @abstractmethod
    def attempts(self) -> int:
        ...

    @abstractmethod
    def ack(self) -> None:
        """Mark the delivery as handled; it will not be redelivered."""

    @abstractmethod
    def retry(self, delay_seconds: Optional[float] = None) -> None:
        """Request redelivery, optionally after a delay."""


@dataclass
class QueueBatch(Generic[BodyT]):
    """A batch of envelopes delivered to one worker invocation."""

    queue: str
    messages: List[QueueMessage[BodyT]] = field(default_factory=list)


@runtime_checkable
class QueueProducer(Protocol):
    """Sending side of a queue."""

    async def send(self, message: Dict[str, Any]) -> None:
        ...

    async def send_batch(self, messages: List[Dict[str, Any]]) -> None:
        ...


@dataclass(frozen=True)
class RetryInfo:
    attempt_number: int
    is_last_attempt: bool


def get_retry_info(
    message: QueueMessage[Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RetryInfo:
    """Compute the attempt number and whether it is the final one.

    Args:
        message: The envelope being processed.
        max_attempts: Attempt ceiling for this message type.

    Returns:
        RetryInfo for the envelope.
    """
    attempt_number = message.attempts
    return RetryInfo(
        attempt_number=attempt_number,
        is_last_attempt=attempt_number >= max_attempts,
    )


async def handle_retry_or_fail(
    message: QueueMessage[Any],
    is_last_attempt: bool,
    on_final_failure: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Apply the standard retry policy to a failed delivery.

    On the last attempt the envelope is always acknowledged so it is not
    redelivered, then ``on_final_failure`` runs. Otherwise the envelope
    is handed back to the transport with ``retry()``.

    Args:
        message: The envelope that failed.
        is_last_attempt: Result of get_retry_info for this envelope.
        on_final_failure: Optional terminal-failure callback.
    """
    if not is_last_attempt:
        logger.info(
            "Scheduling message retry",
            extra={"message_id": message.id, "attempt": message.attempts},
        )
        message.retry()
        return

    message.ack()
    logger.warning(
        "Message failed on final attempt; acknowledged to stop redelivery",
        extra={"message_id": message.id, "attempt": message.attempts},
    )
    if on_final_failure is not None:
        try:
            await on_final_failure()
        except Exception:
            logger.exception(
                "Final failure callback raised",
                extra={"message_id": message.id},
            )
