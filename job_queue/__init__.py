"""
Job Queue — typed message dispatch over a pluggable transport.

- Producer BUILDS tagged envelopes and enqueues them
- Consumer RECEIVES delivered batches and acks or retries each message
- Router DISPATCHES each envelope to the processor registered for its tag
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
from job_queue.consumer import BatchOutcome, QueueConsumer
from job_queue.errors import (
    InvalidMessageTypeError,
    ProcessingError,
    QueueError,
    TransportError,
    WebhookDeliveryError,
)
from job_queue.message_queue import (
    InMemoryMessageQueue,
    MessageQueue,
    QueueMessage,
    RedisMessageQueue,
    create_message_queue,
)
from job_queue.observability import DispatchMetrics, DispatchObserver, Outcome, StructlogObserver
from job_queue.processors import (
    AnalyticsProcessor,
    CustomProcessor,
    EmailProcessor,
    MessageProcessor,
    NotificationProcessor,
    TaskProcessor,
    WebhookProcessor,
)
from job_queue.producer import QueueProducer, SendOptions
from job_queue.router import BatchResult, MessageRouter

__all__ = [
    "QueueProducer", "SendOptions",
    "MessageRouter", "BatchResult",
    "QueueConsumer", "BatchOutcome",
    "MessageQueue", "InMemoryMessageQueue", "RedisMessageQueue", "QueueMessage",
    "create_message_queue",
    "MessageProcessor", "WebhookProcessor", "EmailProcessor", "NotificationProcessor",
    "TaskProcessor", "AnalyticsProcessor", "CustomProcessor",
    "DispatchObserver", "StructlogObserver", "DispatchMetrics", "Outcome",
    "QueueError", "InvalidMessageTypeError", "ProcessingError",
    "WebhookDeliveryError", "TransportError",
]
