"""Shared test fixtures for the dispatch queue."""
import pytest
from typing import Any

import httpx

from job_queue.message_queue import InMemoryMessageQueue
from job_queue.observability import DispatchMetrics, StructlogObserver
from job_queue.processors import MessageProcessor
from job_queue.producer import QueueProducer
from job_queue.router import MessageRouter
from models.schemas import (
    AnalyticsData, AnalyticsEnvelope, CustomEnvelope, EmailData, EmailEnvelope,
    MessageType, NotificationData, NotificationEnvelope, TaskData, TaskEnvelope,
    WebhookData, WebhookEnvelope,
)


class RecordingProcessor(MessageProcessor):
    """Processor that records every envelope and optionally raises."""

    def __init__(self, message_type: MessageType, error: Exception = None):
        super().__init__()
        self.message_type = message_type
        self.error = error
        self.seen: list[Any] = []

    async def _handle(self, envelope):
        self.seen.append(envelope)
        if self.error is not None:
            raise self.error


def _mock_http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def mock_http_client():
    """Factory: httpx client whose requests are answered by ``handler(request)``."""
    return _mock_http_client


@pytest.fixture
def recording_processor():
    """Factory for RecordingProcessor."""
    return RecordingProcessor


@pytest.fixture
def metrics() -> DispatchMetrics:
    return DispatchMetrics()


@pytest.fixture
def observer(metrics) -> StructlogObserver:
    return StructlogObserver(metrics)


@pytest.fixture
def router(observer) -> MessageRouter:
    return MessageRouter(observer=observer)


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(max_retries=3)


@pytest.fixture
def producer(queue) -> QueueProducer:
    return QueueProducer(queue)


@pytest.fixture
def webhook_envelope() -> WebhookEnvelope:
    return WebhookEnvelope(data=WebhookData(
        url="https://hooks.example.com/orders",
        method="POST",
        headers={"Content-Type": "application/json"},
        body='{"order_id": "ord_123"}',
    ))


@pytest.fixture
def email_envelope() -> EmailEnvelope:
    return EmailEnvelope(data=EmailData(
        to="priya@acme.com",
        from_="support@example.com",
        subject="Your ticket was updated",
        body="We replied to your ticket.",
    ))


@pytest.fixture
def notification_envelope() -> NotificationEnvelope:
    return NotificationEnvelope(data=NotificationData(
        user_id="u_42", title="Payment received", message="Thanks!", priority="high",
    ))


@pytest.fixture
def task_envelope() -> TaskEnvelope:
    return TaskEnvelope(data=TaskData(
        task_id="task_001", action="generate_report", payload={"month": "2024-05"},
    ))


@pytest.fixture
def analytics_envelope() -> AnalyticsEnvelope:
    return AnalyticsEnvelope(data=AnalyticsData(
        event="signup", properties={"plan": "pro"}, user_id="u1",
    ))


@pytest.fixture
def custom_envelope() -> CustomEnvelope:
    return CustomEnvelope(data={"kind": "reindex", "shard": 3})
