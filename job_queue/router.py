"""
Message Router — resolves an envelope's tag to exactly one processor.

Two dispatch disciplines, deliberately kept apart:

  process_message(env)   per-message: processor errors propagate unchanged,
                         so the consumer can retry exactly that message.
                         The transport-facing QueueConsumer uses only this.

  process_batch(envs)    aggregate-only convenience for callers without an
                         ack/retry-capable transport: every message is
                         attempted concurrently, failures are counted and
                         reported, nothing is raised.

A tag with no registered processor is dropped on purpose: it is counted as
``unhandled`` and treated as consumed, never retried.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from job_queue.observability import DispatchObserver, Outcome, StructlogObserver
from job_queue.processors import MessageProcessor, default_processors
from models.schemas import MessageEnvelope, MessageType

logger = structlog.get_logger()


@dataclass
class BatchResult:
    """Aggregate outcome of process_batch."""
    total: int
    failures: int
    errors: list[BaseException] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.total - self.failures

    @property
    def ok(self) -> bool:
        return self.failures == 0


class MessageRouter:
    """
    Tag → processor registry owned by this instance.

    Usage:
        router = MessageRouter()
        router.register_processor(MessageType.CUSTOM, CustomProcessor(handle))
        await router.process_message(envelope)

    register_processor is meant for start-up; nothing guards it against
    dispatch that is already in flight.
    """

    def __init__(
        self,
        processors: Optional[Mapping[MessageType, MessageProcessor]] = None,
        observer: DispatchObserver = None,
        webhook_timeout: float = 30.0,
    ):
        self.observer = observer or StructlogObserver()
        self._processors: dict[MessageType, MessageProcessor] = {}
        for message_type, processor in default_processors(self.observer, webhook_timeout).items():
            self.register_processor(message_type, processor)
        for message_type, processor in (processors or {}).items():
            self.register_processor(message_type, processor)

    def register_processor(self, message_type: MessageType, processor: MessageProcessor) -> None:
        """Register (or replace) the processor for a tag. Last write wins."""
        message_type = MessageType(message_type)
        replaced = self._processors.get(message_type)
        self._processors[message_type] = processor
        logger.debug("processor_registered",
                     message_type=message_type.value,
                     processor=type(processor).__name__,
                     replaced=type(replaced).__name__ if replaced else None)

    def get_processor(self, message_type: MessageType) -> Optional[MessageProcessor]:
        return self._processors.get(MessageType(message_type))

    def registered_types(self) -> list[MessageType]:
        return list(self._processors.keys())

    async def process_message(self, envelope: MessageEnvelope) -> None:
        message_type = envelope.type
        processor = self._processors.get(MessageType(message_type))

        if processor is None:
            self.observer.record(message_type, Outcome.UNHANDLED,
                                 sent_at=envelope.timestamp)
            return

        start = time.monotonic()
        try:
            await processor.process(envelope)
        except Exception as e:
            self.observer.record(message_type, Outcome.FAILED,
                                 latency_ms=(time.monotonic() - start) * 1000,
                                 error=str(e),
                                 error_type=type(e).__name__)
            raise

        self.observer.record(message_type, Outcome.PROCESSED,
                             latency_ms=(time.monotonic() - start) * 1000)

    async def process_batch(self, envelopes: Iterable[MessageEnvelope]) -> BatchResult:
        """Attempt every envelope concurrently; report failures only in aggregate."""
        envelopes = list(envelopes)
        results = await asyncio.gather(
            *(self.process_message(env) for env in envelopes),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        result = BatchResult(total=len(envelopes), failures=len(errors), errors=errors)

        if result.failures:
            logger.error("batch_processed",
                         failures=result.failures,
                         total=result.total,
                         summary=f"{result.failures} out of {result.total} messages failed to process")
        else:
            logger.info("batch_processed", failures=0, total=result.total)
        return result

    async def aclose(self) -> None:
        """Release processor resources (HTTP clients)."""
        for processor in self._processors.values():
            await processor.aclose()
