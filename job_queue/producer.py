"""
Queue Producer — builds envelopes and hands them to the transport.

One transport call per send / send_batch; no retries, no local buffering.
A call returns once the transport has accepted the message, not once a
consumer has processed it.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

from job_queue.message_queue import MessageQueue
from models.schemas import (
    AnalyticsData, AnalyticsEnvelope, CustomEnvelope, EmailData, EmailEnvelope,
    MessageEnvelope, NotificationData, NotificationEnvelope, NotificationPriority,
    TaskData, TaskEnvelope, WebhookData, WebhookEnvelope, envelope_to_dict,
)

logger = structlog.get_logger()


@dataclass
class SendOptions:
    """Per-send transport options."""
    delay_seconds: int = 0
    content_type: str = "json"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QueueProducer:
    """
    Producer API over a MessageQueue.

    Usage:
        producer = QueueProducer(queue)
        await producer.send_email("a@b.com", "noreply@b.com", "Hi", "Hello")
        await producer.send_batch([env1, env2])
    """

    def __init__(self, queue: MessageQueue):
        self.queue = queue

    async def send(self, envelope: MessageEnvelope, options: Optional[SendOptions] = None) -> MessageEnvelope:
        await self.queue.send(envelope_to_dict(envelope), options.to_dict() if options else None)
        logger.info("message_enqueued",
                    message_type=envelope.type,
                    timestamp=envelope.timestamp)
        return envelope

    async def send_batch(
        self,
        envelopes: Sequence[MessageEnvelope],
        options: Optional[SendOptions] = None,
    ) -> list[MessageEnvelope]:
        extra = options.to_dict() if options else {}
        await self.queue.send_batch([
            {"body": envelope_to_dict(env), **extra} for env in envelopes
        ])
        logger.info("batch_enqueued", count=len(envelopes))
        return list(envelopes)

    # ── Convenience constructors ──────────────────────────────

    async def send_webhook(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> WebhookEnvelope:
        envelope = WebhookEnvelope(
            data=WebhookData(url=url, method=method, headers=headers, body=body),
            metadata=metadata,
        )
        return await self.send(envelope)

    async def send_email(
        self,
        to: str,
        from_: str,
        subject: str,
        body: str,
        html: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> EmailEnvelope:
        envelope = EmailEnvelope(
            data=EmailData(to=to, from_=from_, subject=subject, body=body, html=html),
            metadata=metadata,
        )
        return await self.send(envelope)

    async def send_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        priority: NotificationPriority | str = NotificationPriority.MEDIUM,
        metadata: Optional[dict[str, str]] = None,
    ) -> NotificationEnvelope:
        envelope = NotificationEnvelope(
            data=NotificationData(
                user_id=user_id,
                title=title,
                message=message,
                priority=NotificationPriority(priority),
            ),
            metadata=metadata,
        )
        return await self.send(envelope)

    async def send_task(
        self,
        task_id: str,
        action: str,
        payload: dict[str, Any],
        metadata: Optional[dict[str, str]] = None,
    ) -> TaskEnvelope:
        envelope = TaskEnvelope(
            data=TaskData(task_id=task_id, action=action, payload=payload),
            metadata=metadata,
        )
        return await self.send(envelope)

    async def send_analytics(
        self,
        event: str,
        properties: dict[str, Any],
        user_id: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> AnalyticsEnvelope:
        envelope = AnalyticsEnvelope(
            data=AnalyticsData(event=event, properties=properties, user_id=user_id),
            metadata=metadata,
        )
        return await self.send(envelope)

    async def send_custom(
        self,
        data: Any,
        metadata: Optional[dict[str, str]] = None,
    ) -> CustomEnvelope:
        return await self.send(CustomEnvelope(data=data, metadata=metadata))
