"""
Queue Consumer — receives delivered batches and settles every message.

Per delivered message:

  Delivered ─▶ Processing ─▶ Acked                      (processor succeeded,
                  │                                      tag unhandled, body
                  │                                      malformed or misrouted)
                  └────────▶ RetryScheduled ─▶ Delivered (processor raised)

The consumer calls router.process_message for each message, never
process_batch, so one message's failure retries only that message. How
often a retried message comes back, and when it is dead-lettered, is up to
the transport.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field

from pydantic import ValidationError

from job_queue.errors import InvalidMessageTypeError
from job_queue.message_queue import MessageQueue, QueueMessage
from job_queue.router import MessageRouter
from models.schemas import envelope_from_dict

logger = structlog.get_logger()


@dataclass
class BatchOutcome:
    """How one delivered batch was settled."""
    acked: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    malformed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.acked) + len(self.retried)


class QueueConsumer:
    """
    Consumes batches from a MessageQueue and dispatches through a MessageRouter.

    Usage:
        consumer = QueueConsumer(router, queue)
        await consumer.start()             # blocks, runs forever
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        router: MessageRouter,
        queue: MessageQueue,
        batch_size: int = 10,
        concurrency: int = 10,
    ):
        self.router = router
        self.queue = queue
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("queue_consumer_starting",
                    batch_size=self.batch_size,
                    concurrency=self.concurrency)
        await self.queue.consume(self.handle_batch, batch_size=self.batch_size)

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.queue.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_consumer_stopped")

    async def handle_batch(self, batch: list[QueueMessage]) -> BatchOutcome:
        """Dispatch every message concurrently and ack or retry each one."""
        logger.info("processing_batch", size=len(batch))
        outcome = BatchOutcome()
        await asyncio.gather(*(self._handle_message(m, outcome) for m in batch))
        logger.info("batch_complete",
                    acked=len(outcome.acked),
                    retried=len(outcome.retried),
                    malformed=len(outcome.malformed))
        return outcome

    async def _handle_message(self, message: QueueMessage, outcome: BatchOutcome):
        async with self._semaphore:
            try:
                envelope = envelope_from_dict(message.body)
            except ValidationError as e:
                # malformed bodies are acked, never retried
                logger.error("malformed_message_dropped",
                             message_id=message.id,
                             error=str(e))
                message.ack()
                outcome.acked.append(message.id)
                outcome.malformed.append(message.id)
                return

            logger.debug("processing_message",
                         message_id=message.id,
                         message_type=envelope.type,
                         timestamp=envelope.timestamp,
                         attempt=message.attempts)
            try:
                await self.router.process_message(envelope)
            except InvalidMessageTypeError as e:
                logger.error("message_misrouted",
                             message_id=message.id,
                             message_type=envelope.type,
                             error=str(e))
                message.ack()
                outcome.acked.append(message.id)
                outcome.malformed.append(message.id)
                return
            except Exception as e:
                logger.error("message_processing_error",
                             message_id=message.id,
                             message_type=envelope.type,
                             error=str(e),
                             attempt=message.attempts)
                message.retry()
                outcome.retried.append(message.id)
                return

            message.ack()
            outcome.acked.append(message.id)
