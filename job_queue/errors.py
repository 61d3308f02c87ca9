"""
Error hierarchy for the dispatch pipeline.

  QueueError
  ├── InvalidMessageTypeError   wiring bug: processor got another tag's envelope
  ├── ProcessingError           a processor's side effect failed
  │   └── WebhookDeliveryError  non-2xx response from a webhook target
  └── TransportError            the queue backend rejected an operation
"""
from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    """Base exception for all queue operations."""

    def __init__(self, message: str, message_type: str = "", retryable: bool = False):
        self.message_type = message_type
        self.retryable = retryable
        super().__init__(message)


class InvalidMessageTypeError(QueueError):
    def __init__(self, expected: str, received: str):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Invalid message type: {received} (processor handles {expected})",
            message_type=received,
            retryable=False,
        )


class ProcessingError(QueueError):
    def __init__(self, message: str, message_type: str = "", retryable: bool = True):
        super().__init__(message, message_type, retryable)


class WebhookDeliveryError(ProcessingError):
    def __init__(self, url: str, status_code: int, body: str = ""):
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(
            f"Webhook failed with status {status_code}: {body}",
            message_type="webhook",
        )


class TransportError(QueueError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, retryable=True)
