"""Tests for the HTTP producer surface (/queue/{action})."""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import parse_timestamp


@pytest.fixture
def app_queue():
    return InMemoryMessageQueue()


@pytest.fixture
def client(app_queue):
    app = create_app(settings=Settings(run_consumer=False), queue=app_queue)
    with TestClient(app) as c:
        yield c


def queue_depth(client) -> int:
    return client.get("/api/v1/queue/stats").json()["queue_depth"]


class TestQueueEndpoints:
    def test_send_defaults_to_custom(self, client):
        resp = client.post("/queue/send", json={"data": {"k": "v"}})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Message queued successfully"}
        assert queue_depth(client) == 1

    def test_send_stamps_new_envelope(self, client, app_queue):
        client.post("/queue/send", json={"data": {"k": "v"}})
        message = app_queue._get_queue().get_nowait()
        assert parse_timestamp(message.body["timestamp"]) is not None
        assert "metadata" not in message.body

    def test_send_typed(self, client):
        resp = client.post("/queue/send", json={
            "type": "analytics",
            "data": {"event": "signup", "properties": {"plan": "pro"}},
        })
        assert resp.status_code == 200

    def test_send_mismatched_payload_is_400(self, client):
        resp = client.post("/queue/send", json={"type": "email", "data": {"to": "a@b.com"}})
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert queue_depth(client) == 0

    def test_webhook(self, client):
        resp = client.post("/queue/webhook", json={"url": "https://example.com/hook", "method": "POST"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Webhook message queued successfully"

    def test_webhook_requires_url_and_method(self, client):
        resp = client.post("/queue/webhook", json={"url": "https://example.com/hook"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "url and method are required"

    def test_email(self, client):
        resp = client.post("/queue/email", json={
            "to": "a@b.com", "from": "c@d.com", "subject": "Hi", "body": "Hello",
        })
        assert resp.status_code == 200

    def test_email_missing_fields(self, client):
        resp = client.post("/queue/email", json={"to": "a@b.com"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "to, from, subject, and body are required"

    def test_notification(self, client):
        resp = client.post("/queue/notification", json={"userId": "u1", "title": "t", "message": "m"})
        assert resp.status_code == 200

    def test_notification_bad_priority(self, client):
        resp = client.post("/queue/notification", json={
            "userId": "u1", "title": "t", "message": "m", "priority": "critical",
        })
        assert resp.status_code == 400

    def test_task(self, client):
        resp = client.post("/queue/task", json={"taskId": "t1", "action": "resize", "payload": {"w": 1}})
        assert resp.status_code == 200

    def test_task_missing_payload(self, client):
        resp = client.post("/queue/task", json={"taskId": "t1", "action": "resize"})
        assert resp.status_code == 400

    def test_analytics(self, client):
        resp = client.post("/queue/analytics", json={"event": "signup", "properties": {}, "userId": "u1"})
        assert resp.status_code == 200

    def test_batch(self, client):
        resp = client.post("/queue/batch", json={"messages": [
            {"type": "custom", "data": 1},
            {"type": "task", "data": {"taskId": "t", "action": "a", "payload": {}}},
        ]})
        assert resp.status_code == 200
        assert resp.json()["message"] == "2 messages queued successfully"
        assert queue_depth(client) == 2

    def test_batch_requires_messages(self, client):
        resp = client.post("/queue/batch", json={"messages": []})
        assert resp.status_code == 400
        assert resp.json()["error"] == "messages array is required"

    def test_unknown_action(self, client):
        resp = client.post("/queue/fax", json={})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Unknown action: fax"

    def test_get_not_allowed(self, client):
        assert client.get("/queue/send").status_code == 405

    def test_invalid_json(self, client):
        resp = client.post("/queue/send", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert "custom" not in body["processors"]
        assert body["consumer_running"] is False

    def test_stats(self, client):
        body = client.get("/api/v1/queue/stats").json()
        assert body["queue_depth"] == 0
        assert body["dead_letters"] == 0
        assert body["dispatch"]["failed"] == 0
