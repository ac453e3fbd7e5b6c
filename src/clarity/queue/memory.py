"""In-process queue transport.

Adapts an ``asyncio.Queue`` to the QueueProducer/QueueMessage contract.
Used by the local worker loop and by tests; a managed queue service can
replace it without touching the coordinator.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.clarity.queue.abstractions import QueueBatch, QueueMessage

logger = logging.getLogger(__name__)


@dataclass
class _QueuedItem:
    id: str
    body: Dict[str, Any]
    attempts: int = 0


class InMemoryMessage(QueueMessage[Dict[str, Any]]):
    """Envelope for one in-memory delivery."""

    def __init__(self, item: _QueuedItem):
        self._item = item
        self.acked = False
        self.retried = False
        self.retry_delay: Optional[float] = None

    @property
    def id(self) -> str:
        return self._item.id

    @property
    def body(self) -> Dict[str, Any]:
        return self._item.body

    @property
    def attempts(self) -> int:
        return self._item.attempts

    def ack(self) -> None:
        self.acked = True
        self.retried = False

    def retry(self, delay_seconds: Optional[float] = None) -> None:
        self.retried = True
        self.acked = False
        self.retry_delay = delay_seconds


class InMemoryQueue:
    """Asyncio-backed queue with ack/retry redelivery.

    Messages that are neither acknowledged nor retried when a batch is
    settled are treated as acknowledged, unless the batch handler raised,
    in which case they are redelivered.

    Attributes:
        name: Queue name reported on delivered batches.
        max_batch_size: Upper bound on envelopes per batch.
        default_retry_delay: Delay applied to retries that do not set one.
    """

    def __init__(
        self,
        name: str = "clarity-requests",
        max_batch_size: int = 10,
        default_retry_delay: float = 0.0,
    ):
        self.name = name
        self.max_batch_size = max_batch_size
        self.default_retry_delay = default_retry_delay
        self._pending: "asyncio.Queue[_QueuedItem]" = asyncio.Queue()
        self.acked_ids: List[str] = []

    @property
    def pending_count(self) -> int:
        return self._pending.qsize()

    async def send(self, message: Dict[str, Any]) -> None:
        item = _QueuedItem(id=uuid.uuid4().hex, body=dict(message))
        self._pending.put_nowait(item)
        logger.debug(
            "Message enqueued",
            extra={"message_id": item.id, "type": message.get("type", "issue")},
        )

    async def send_batch(self, messages: List[Dict[str, Any]]) -> None:
        for message in messages:
            await self.send(message)

    async def receive_batch(
        self, timeout: Optional[float] = None
    ) -> Optional[QueueBatch[Dict[str, Any]]]:
        """Wait for at least one message and drain up to a full batch.

        Args:
            timeout: Seconds to wait for the first message; None waits forever.

        Returns:
            A QueueBatch, or None if the timeout elapsed with nothing queued.
        """
        try:
            first = await asyncio.wait_for(self._pending.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        items = [first]
        while len(items) < self.max_batch_size and not self._pending.empty():
            items.append(self._pending.get_nowait())

        messages: List[QueueMessage[Dict[str, Any]]] = []
        for item in items:
            item.attempts += 1
            messages.append(InMemoryMessage(item))
        return QueueBatch(queue=self.name, messages=messages)

    def settle(
        self,
        batch: QueueBatch[Dict[str, Any]],
        handler_failed: bool = False,
    ) -> None:
        """Apply ack/retry decisions recorded on a processed batch."""
        for message in batch.messages:
            assert isinstance(message, InMemoryMessage)
            if message.retried or (handler_failed and not message.acked):
                self._requeue(message._item, message.retry_delay)
            else:
                self.acked_ids.append(message.id)

    def _requeue(self, item: _QueuedItem, delay: Optional[float]) -> None:
        delay = self.default_retry_delay if delay is None else delay
        if delay <= 0:
            self._pending.put_nowait(item)
            return
        loop = asyncio.get_running_loop()
        loop.call_later(delay, self._pending.put_nowait, item)

    async def consume(
        self,
        handler: Callable[[QueueBatch[Dict[str, Any]]], Awaitable[None]],
        stop_event: asyncio.Event,
        poll_interval: float = 1.0,
    ) -> None:
        """Deliver batches to ``handler`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            batch = await self.receive_batch(timeout=poll_interval)
            if batch is None:
                continue
            try:
                await handler(batch)
            except Exception:
                logger.exception(
                    "Batch handler failed; redelivering unsettled messages",
                    extra={"queue": self.name, "size": len(batch.messages)},
                )
                self.settle(batch, handler_failed=True)
            else:
                self.settle(batch)
