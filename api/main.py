"""
FastAPI Application — HTTP producer surface for the dispatch queue.

Provides:
- /queue/{action} endpoints that enqueue typed messages
- Health and queue statistics
- Background consumer that dispatches delivered batches
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from job_queue.consumer import QueueConsumer
from job_queue.errors import QueueError
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.observability import StructlogObserver
from job_queue.producer import QueueProducer
from job_queue.router import MessageRouter
from models.schemas import MessageType, new_envelope

logger = structlog.get_logger()


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status)


def _ok(message: str) -> dict[str, Any]:
    return {"success": True, "message": message}


def _missing(body: dict[str, Any], *fields: str) -> bool:
    return any(body.get(f) in (None, "") for f in fields)


# ──────────────────────────────────────────────────────────────
#  Action handlers — one per /queue/{action}
# ──────────────────────────────────────────────────────────────

async def _send(producer: QueueProducer, body: dict[str, Any]):
    envelope = new_envelope({
        "type": body.get("type") or MessageType.CUSTOM.value,
        "data": body.get("data"),
        "metadata": body.get("metadata"),
    })
    await producer.send(envelope)
    return _ok("Message queued successfully")


async def _webhook(producer: QueueProducer, body: dict[str, Any]):
    if _missing(body, "url", "method"):
        return _error(400, "url and method are required")
    await producer.send_webhook(
        body["url"],
        body["method"],
        body.get("headers") or {},
        body.get("body"),
        body.get("metadata"),
    )
    return _ok("Webhook message queued successfully")


async def _email(producer: QueueProducer, body: dict[str, Any]):
    if _missing(body, "to", "from", "subject", "body"):
        return _error(400, "to, from, subject, and body are required")
    await producer.send_email(
        body["to"],
        body["from"],
        body["subject"],
        body["body"],
        body.get("html"),
        body.get("metadata"),
    )
    return _ok("Email message queued successfully")


async def _notification(producer: QueueProducer, body: dict[str, Any]):
    if _missing(body, "userId", "title", "message"):
        return _error(400, "userId, title, and message are required")
    await producer.send_notification(
        body["userId"],
        body["title"],
        body["message"],
        body.get("priority") or "medium",
        body.get("metadata"),
    )
    return _ok("Notification message queued successfully")


async def _task(producer: QueueProducer, body: dict[str, Any]):
    if _missing(body, "taskId", "action", "payload"):
        return _error(400, "taskId, action, and payload are required")
    await producer.send_task(body["taskId"], body["action"], body["payload"], body.get("metadata"))
    return _ok("Task message queued successfully")


async def _analytics(producer: QueueProducer, body: dict[str, Any]):
    if _missing(body, "event", "properties"):
        return _error(400, "event and properties are required")
    await producer.send_analytics(
        body["event"],
        body["properties"],
        body.get("userId"),
        body.get("metadata"),
    )
    return _ok("Analytics message queued successfully")


async def _batch(producer: QueueProducer, body: dict[str, Any]):
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        return _error(400, "messages array is required")
    envelopes = [new_envelope(m) for m in messages]
    await producer.send_batch(envelopes)
    return _ok(f"{len(envelopes)} messages queued successfully")


ACTIONS = {
    "send": _send,
    "webhook": _webhook,
    "email": _email,
    "notification": _notification,
    "task": _task,
    "analytics": _analytics,
    "batch": _batch,
}


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[MessageQueue] = None,
    router: Optional[MessageRouter] = None,
) -> FastAPI:
    settings = settings or get_settings()
    queue = queue or create_message_queue(settings.queue)
    observer = StructlogObserver()
    router = router or MessageRouter(observer=observer, webhook_timeout=settings.webhook.timeout_seconds)
    producer = QueueProducer(queue)
    consumer = QueueConsumer(
        router, queue,
        batch_size=settings.queue.batch_size,
        concurrency=settings.queue.consumer_concurrency,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.connect()
        if settings.run_consumer:
            await consumer.start_background()
        logger.info("dispatch_started",
                    app_name=settings.app_name,
                    queue_backend=type(queue).__name__,
                    processors=[t.value for t in router.registered_types()])
        yield

        await consumer.stop()
        await queue.close()
        await router.aclose()
        logger.info("dispatch_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Typed message dispatch queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.queue = queue
    app.state.router = router
    app.state.producer = producer
    app.state.consumer = consumer

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "processors": [t.value for t in router.registered_types()],
            "consumer_running": consumer.running,
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats():
        metrics = router.observer.metrics.to_dict() if isinstance(router.observer, StructlogObserver) else {}
        return {
            "queue_depth": await queue.queue_length(),
            "dead_letters": len(await queue.dead_letters()),
            "consumer_running": consumer.running,
            "dispatch": metrics,
        }

    @app.post("/queue/{action}")
    async def enqueue(action: str, request: Request):
        handler = ACTIONS.get(action)
        if handler is None:
            return _error(404, f"Unknown action: {action}")

        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _error(400, "Request body must be a JSON object")

        try:
            return await handler(producer, body)
        except ValueError as e:
            # pydantic ValidationError is a ValueError
            return _error(400, str(e))
        except QueueError as e:
            logger.error("enqueue_failed", action=action, error=str(e))
            return _error(500, str(e))
        except Exception as e:
            logger.error("enqueue_failed", action=action, error=str(e), exc_info=True)
            return _error(500, "Queue operation failed")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
