"""
Message processors — one unit of work per message type.

Every processor checks that it received its own tag before doing anything;
a mismatch is a wiring bug and raises InvalidMessageTypeError. Side-effect
failures are never swallowed here: retry-vs-drop is decided by the consumer.

WebhookProcessor performs the real HTTP call. The email, notification, task
and analytics processors are integration points: give them a ``sink`` (SMTP
client, push service, workflow engine, analytics client) and they forward the
typed payload to it; without one they log the intent and succeed.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Awaitable, Callable, Optional

import httpx

from job_queue.errors import InvalidMessageTypeError, WebhookDeliveryError
from job_queue.observability import DispatchObserver, StructlogObserver
from models.schemas import (
    AnalyticsData, EmailData, MessageEnvelope, MessageType,
    NotificationData, TaskData,
)

logger = structlog.get_logger()

Sink = Callable[[Any], Awaitable[Any]]


class MessageProcessor(abc.ABC):
    """Base class for all processors. Subclasses implement _handle."""

    message_type: MessageType

    def __init__(self, observer: DispatchObserver = None):
        self.observer = observer or StructlogObserver()

    async def process(self, envelope: MessageEnvelope) -> None:
        if envelope.type != self.message_type.value:
            raise InvalidMessageTypeError(self.message_type.value, envelope.type)
        await self._handle(envelope)

    @abc.abstractmethod
    async def _handle(self, envelope: MessageEnvelope) -> None:
        ...

    async def aclose(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  WEBHOOK
# ══════════════════════════════════════════════════════════════

class WebhookProcessor(MessageProcessor):
    """Delivers the envelope's HTTP request. Only a 2xx response counts as success."""

    message_type = MessageType.WEBHOOK

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        observer: DispatchObserver = None,
    ):
        super().__init__(observer)
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            )
        return self._client

    async def _handle(self, envelope: MessageEnvelope) -> None:
        data = envelope.data
        self.observer.event("webhook_processing", method=data.method, url=data.url)

        client = await self._get_client()
        try:
            response = await client.request(
                data.method,
                data.url,
                headers=data.headers,
                content=data.body if data.body else None,
            )
        except httpx.HTTPError as e:
            logger.error("webhook_transport_error", url=data.url, error=str(e))
            raise

        if not response.is_success:
            body = response.text
            logger.error("webhook_api_error",
                         url=data.url,
                         status=response.status_code,
                         body=body[:500])
            raise WebhookDeliveryError(data.url, response.status_code, body)

        self.observer.event("webhook_delivered", url=data.url, status=response.status_code)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  INTEGRATION POINTS
# ══════════════════════════════════════════════════════════════

class _SinkProcessor(MessageProcessor):
    """Forwards the typed payload to an injected async sink, if any."""

    def __init__(self, sink: Optional[Sink] = None, observer: DispatchObserver = None):
        super().__init__(observer)
        self.sink = sink

    async def _handle(self, envelope: MessageEnvelope) -> None:
        self._log_intent(envelope.data)
        if self.sink is not None:
            await self.sink(envelope.data)

    @abc.abstractmethod
    def _log_intent(self, data: Any) -> None:
        ...


class EmailProcessor(_SinkProcessor):
    """Email delivery. Production sink: SMTP or a provider API (SES, SendGrid, ...)."""

    message_type = MessageType.EMAIL

    def _log_intent(self, data: EmailData) -> None:
        self.observer.event("email_processing",
                            to=data.to,
                            sender=data.from_,
                            subject=data.subject,
                            has_html=data.html is not None)


class NotificationProcessor(_SinkProcessor):
    message_type = MessageType.NOTIFICATION

    def _log_intent(self, data: NotificationData) -> None:
        self.observer.event("notification_processing",
                            user_id=data.user_id,
                            title=data.title,
                            priority=data.priority.value)


class TaskProcessor(_SinkProcessor):
    """
    Background task execution.

    Per-action handlers take precedence over the generic sink:
        processor.register_action("generate_report", build_report)
    """

    message_type = MessageType.TASK

    def __init__(self, sink: Optional[Sink] = None, observer: DispatchObserver = None):
        super().__init__(sink, observer)
        self._actions: dict[str, Sink] = {}

    def register_action(self, action: str, handler: Sink) -> None:
        self._actions[action] = handler

    async def _handle(self, envelope: MessageEnvelope) -> None:
        data: TaskData = envelope.data
        self._log_intent(data)
        handler = self._actions.get(data.action, self.sink)
        if handler is not None:
            await handler(data)

    def _log_intent(self, data: TaskData) -> None:
        self.observer.event("task_processing",
                            task_id=data.task_id,
                            action=data.action,
                            payload_keys=sorted(data.payload))


class AnalyticsProcessor(_SinkProcessor):
    message_type = MessageType.ANALYTICS

    def _log_intent(self, data: AnalyticsData) -> None:
        self.observer.event("analytics_processing",
                            analytics_event=data.event,
                            user_id=data.user_id,
                            properties=data.properties)


class CustomProcessor(MessageProcessor):
    """Extension point for the custom tag. Not registered by default."""

    message_type = MessageType.CUSTOM

    def __init__(self, handler: Callable[[MessageEnvelope], Awaitable[Any]], observer: DispatchObserver = None):
        super().__init__(observer)
        self.handler = handler

    async def _handle(self, envelope: MessageEnvelope) -> None:
        await self.handler(envelope)


def default_processors(
    observer: DispatchObserver = None,
    webhook_timeout: float = 30.0,
) -> dict[MessageType, MessageProcessor]:
    """The five processors every router starts with. Custom has no default."""
    return {
        MessageType.WEBHOOK: WebhookProcessor(timeout=webhook_timeout, observer=observer),
        MessageType.EMAIL: EmailProcessor(observer=observer),
        MessageType.NOTIFICATION: NotificationProcessor(observer=observer),
        MessageType.TASK: TaskProcessor(observer=observer),
        MessageType.ANALYTICS: AnalyticsProcessor(observer=observer),
    }
