"""
Message Queue — transport backends behind the producer and the consumer.

The dispatch core only needs three things from a transport:
  send(body, options)         enqueue one message
  send_batch([{body, ...}])   enqueue many in one call
  consume(handler)            deliver batches of QueueMessage, each with
                              ack() / retry()

Delivery guarantees, redelivery delay and the retry budget belong to the
backend. Both backends here redeliver a retried message until it has been
retried ``max_retries`` times, then move it to a dead-letter list.

Backends:
  InMemoryMessageQueue   asyncio.Queue, single process (dev / tests)
  RedisMessageQueue      Redis Streams + consumer group (production)
"""
from __future__ import annotations

import abc
import asyncio
import json
import uuid
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from job_queue.errors import TransportError

logger = structlog.get_logger()


class Settlement:
    PENDING = "pending"
    ACKED = "acked"
    RETRY = "retry"


# ──────────────────────────────────────────────────────────────
#  Delivered message
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueMessage:
    """One delivered message. ``body`` is the decoded JSON the producer sent."""
    body: Any
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    attempts: int = 0
    outcome: str = Settlement.PENDING
    retry_delay_seconds: Optional[float] = None

    def ack(self) -> None:
        """Never redeliver this message. Settling twice keeps the first outcome."""
        if self.outcome == Settlement.PENDING:
            self.outcome = Settlement.ACKED

    def retry(self, delay_seconds: Optional[float] = None) -> None:
        """Ask the transport to redeliver this message later."""
        if self.outcome == Settlement.PENDING:
            self.outcome = Settlement.RETRY
            self.retry_delay_seconds = delay_seconds


BatchHandler = Callable[[list[QueueMessage]], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(abc.ABC):
    """Abstract transport interface."""

    def __init__(self, max_retries: int = 3, retry_delay_seconds: float = 0):
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._running = False

    @abc.abstractmethod
    async def connect(self):
        ...

    @abc.abstractmethod
    async def close(self):
        ...

    @abc.abstractmethod
    async def send(self, body: dict[str, Any], options: Optional[dict[str, Any]] = None):
        """Enqueue one message body. Options: delay_seconds."""
        ...

    @abc.abstractmethod
    async def send_batch(self, messages: list[dict[str, Any]]):
        """Enqueue ``[{"body": ..., **options}, ...]`` as a single call."""
        ...

    @abc.abstractmethod
    async def receive(self, batch_size: int = 10, timeout: float = 2.0) -> list[QueueMessage]:
        """Wait up to ``timeout`` seconds for a batch of at most ``batch_size``."""
        ...

    @abc.abstractmethod
    async def queue_length(self) -> int:
        ...

    @abc.abstractmethod
    async def dead_letters(self, count: int = 100) -> list[QueueMessage]:
        ...

    @abc.abstractmethod
    async def _ack(self, message: QueueMessage):
        ...

    @abc.abstractmethod
    async def _requeue(self, message: QueueMessage, delay_seconds: float):
        ...

    @abc.abstractmethod
    async def _dead_letter(self, message: QueueMessage):
        ...

    async def settle(self, batch: list[QueueMessage], handler_failed: bool = False):
        """
        Apply each message's ack/retry decision.

        Unsettled messages are acked when the handler returned normally and
        retried when it raised.
        """
        for message in batch:
            if message.outcome == Settlement.PENDING:
                if handler_failed:
                    message.retry()
                else:
                    message.ack()

            if message.outcome == Settlement.ACKED:
                await self._ack(message)
                continue

            if message.attempts + 1 > self.max_retries:
                await self._dead_letter(message)
                logger.warning("message_moved_to_dlq",
                               message_id=message.id,
                               attempts=message.attempts + 1)
            else:
                delay = message.retry_delay_seconds
                if delay is None:
                    delay = self.retry_delay_seconds
                await self._requeue(message, delay)
                logger.info("message_scheduled_for_retry",
                            message_id=message.id,
                            attempt=message.attempts + 1,
                            delay_seconds=delay)

    async def consume(self, handler: BatchHandler, batch_size: int = 10):
        """Deliver batches to ``handler`` until stop() or cancellation."""
        self._running = True
        logger.info("consumer_started", backend=type(self).__name__, batch_size=batch_size)

        while self._running:
            try:
                batch = await self.receive(batch_size=batch_size)
                if not batch:
                    continue
                try:
                    await handler(batch)
                except asyncio.CancelledError:
                    # unsettled messages go back to the queue as a failed attempt
                    logger.warning("batch_interrupted", size=len(batch))
                    await self.settle(batch, handler_failed=True)
                    raise
                except Exception as e:
                    logger.error("batch_handler_error", size=len(batch), error=str(e))
                    await self.settle(batch, handler_failed=True)
                else:
                    await self.settle(batch)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", error=str(e))
                await asyncio.sleep(1)

    def stop(self):
        self._running = False


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only. Bodies are JSON round-tripped so consumers see
    exactly what a networked transport would deliver.
    """

    def __init__(self, max_retries: int = 3, retry_delay_seconds: float = 0):
        super().__init__(max_retries, retry_delay_seconds)
        self._queue: Optional[asyncio.Queue] = None
        self._dlq: list[QueueMessage] = []
        self._timers: set[asyncio.TimerHandle] = set()
        self._closed = False

    def _get_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def connect(self):
        self._closed = False
        self._get_queue()
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        self._closed = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

    def _put(self, message: QueueMessage, delay_seconds: float = 0):
        q = self._get_queue()
        if delay_seconds and delay_seconds > 0:
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle

            def _deliver():
                self._timers.discard(handle)
                q.put_nowait(message)

            handle = loop.call_later(delay_seconds, _deliver)
            self._timers.add(handle)
        else:
            q.put_nowait(message)

    def _encode(self, body: Any) -> QueueMessage:
        try:
            decoded = json.loads(json.dumps(body))
        except (TypeError, ValueError) as e:
            raise TransportError(f"Message body is not JSON-serializable: {e}", cause=e) from e
        return QueueMessage(body=decoded)

    async def send(self, body: dict[str, Any], options: Optional[dict[str, Any]] = None):
        if self._closed:
            raise TransportError("Queue is closed")
        options = options or {}
        message = self._encode(body)
        self._put(message, options.get("delay_seconds", 0))
        logger.debug("message_sent", message_id=message.id)

    async def send_batch(self, messages: list[dict[str, Any]]):
        if self._closed:
            raise TransportError("Queue is closed")
        encoded = [(self._encode(m["body"]), m.get("delay_seconds", 0)) for m in messages]
        for message, delay in encoded:
            self._put(message, delay)
        logger.debug("batch_sent", count=len(encoded))

    async def receive(self, batch_size: int = 10, timeout: float = 2.0) -> list[QueueMessage]:
        q = self._get_queue()
        try:
            first = await asyncio.wait_for(q.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return []
        batch = [first]
        while len(batch) < batch_size and not q.empty():
            batch.append(q.get_nowait())
        return batch

    async def queue_length(self) -> int:
        return self._get_queue().qsize()

    async def dead_letters(self, count: int = 100) -> list[QueueMessage]:
        return self._dlq[:count]

    async def _ack(self, message: QueueMessage):
        pass  # nothing retained once delivered

    async def _requeue(self, message: QueueMessage, delay_seconds: float):
        redelivery = QueueMessage(body=message.body, id=message.id, attempts=message.attempts + 1)
        self._put(redelivery, delay_seconds)

    async def _dead_letter(self, message: QueueMessage):
        self._dlq.append(message)


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by a Redis Stream with a consumer group.

    Each entry stores the JSON body and its attempt count. A retry re-adds
    the entry with attempts + 1 and acks the original; exhausted entries go
    to ``<stream>:dlq``. Delayed sends and retry delays are not supported by
    Streams and are delivered immediately.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        stream: str = "dispatch",
        consumer_group: str = "dispatch-workers",
        consumer_name: str = "",
        max_retries: int = 3,
        retry_delay_seconds: float = 0,
    ):
        super().__init__(max_retries, retry_delay_seconds)
        self._redis_url = redis_url
        self.stream = stream
        self.dlq_stream = f"{stream}:dlq"
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self._redis = None
        self._entry_ids: dict[str, str] = {}

    async def connect(self):
        import redis.asyncio as aioredis
        from redis.exceptions import ResponseError

        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        try:
            await self._redis.xgroup_create(self.stream, self.consumer_group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        logger.info("redis_queue_connected", url=self._redis_url, stream=self.stream)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.close()

    def _fields(self, message_id: str, body: Any, attempts: int = 0) -> dict[str, str]:
        return {"id": message_id, "body": json.dumps(body), "attempts": str(attempts)}

    async def send(self, body: dict[str, Any], options: Optional[dict[str, Any]] = None):
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        await self._redis.xadd(self.stream, self._fields(message_id, body))
        logger.debug("message_sent", stream=self.stream, message_id=message_id)

    async def send_batch(self, messages: list[dict[str, Any]]):
        pipe = self._redis.pipeline()
        for m in messages:
            pipe.xadd(self.stream, self._fields(f"msg_{uuid.uuid4().hex[:12]}", m["body"]))
        await pipe.execute()
        logger.debug("batch_sent", stream=self.stream, count=len(messages))

    async def receive(self, batch_size: int = 10, timeout: float = 2.0) -> list[QueueMessage]:
        response = await self._redis.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={self.stream: ">"},
            count=batch_size,
            block=int(timeout * 1000),
        )
        batch = []
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                message = QueueMessage(
                    body=json.loads(fields["body"]),
                    id=fields.get("id", entry_id),
                    attempts=int(fields.get("attempts", 0)),
                )
                self._entry_ids[message.id] = entry_id
                batch.append(message)
        return batch

    async def queue_length(self) -> int:
        return await self._redis.xlen(self.stream)

    async def dead_letters(self, count: int = 100) -> list[QueueMessage]:
        entries = await self._redis.xrange(self.dlq_stream, count=count)
        return [
            QueueMessage(body=json.loads(f["body"]), id=f.get("id", eid), attempts=int(f.get("attempts", 0)))
            for eid, f in entries
        ]

    async def _xack(self, message: QueueMessage):
        entry_id = self._entry_ids.pop(message.id, None)
        if entry_id:
            await self._redis.xack(self.stream, self.consumer_group, entry_id)

    async def _ack(self, message: QueueMessage):
        await self._xack(message)

    async def _requeue(self, message: QueueMessage, delay_seconds: float):
        await self._redis.xadd(self.stream, self._fields(message.id, message.body, message.attempts + 1))
        await self._xack(message)

    async def _dead_letter(self, message: QueueMessage):
        await self._redis.xadd(self.dlq_stream, self._fields(message.id, message.body, message.attempts + 1))
        await self._xack(message)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: Any = None) -> MessageQueue:
    """Build the configured backend from a QueueConfig (or a plain dict)."""
    if queue_config is None:
        config: dict[str, Any] = {}
    elif isinstance(queue_config, dict):
        config = queue_config
    else:
        config = vars(queue_config)

    backend = config.get("backend", "memory")
    max_retries = config.get("max_retries", 3)
    retry_delay = config.get("retry_delay_seconds", 0)

    if backend == "redis":
        return RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            stream=config.get("stream", "dispatch"),
            consumer_group=config.get("consumer_group", "dispatch-workers"),
            max_retries=max_retries,
            retry_delay_seconds=retry_delay,
        )
    return InMemoryMessageQueue(max_retries=max_retries, retry_delay_seconds=retry_delay)
