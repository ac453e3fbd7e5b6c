"""Queue contract, retry policy, payloads and the in-process transport."""

from src.clarity.queue.abstractions import (
    QueueBatch,
    QueueMessage,
    QueueProducer,
    RetryInfo,
    get_retry_info,
    handle_retry_or_fail,
)
from src.clarity.queue.memory import InMemoryMessage, InMemoryQueue
from src.clarity.queue.messages import (
    IssueQueueMessage,
    SlackAppMentionMessage,
    SlackClarificationAnswerMessage,
    SlackFeatureRequestMessage,
    SlackRetryRequestMessage,
    SlackSuggestChangesMessage,
    parse_queue_message,
)

__all__ = [
    "InMemoryMessage",
    "InMemoryQueue",
    "IssueQueueMessage",
    "QueueBatch",
    "QueueMessage",
    "QueueProducer",
    "RetryInfo",
    "SlackAppMentionMessage",
    "SlackClarificationAnswerMessage",
    "SlackFeatureRequestMessage",
    "SlackRetryRequestMessage",
    "SlackSuggestChangesMessage",
    "get_retry_info",
    "handle_retry_or_fail",
    "parse_queue_message",
]
