"""Tests for the in-memory transport and the backend factory."""
import asyncio
import pytest

from job_queue.errors import TransportError
from job_queue.message_queue import (
    InMemoryMessageQueue, QueueMessage, RedisMessageQueue, Settlement,
    create_message_queue,
)
from config.settings import QueueConfig


class TestQueueMessage:
    def test_ack(self):
        m = QueueMessage(body={})
        m.ack()
        assert m.outcome == Settlement.ACKED

    def test_first_settlement_wins(self):
        m = QueueMessage(body={})
        m.retry()
        m.ack()
        assert m.outcome == Settlement.RETRY


class TestInMemoryMessageQueue:
    @pytest.mark.asyncio
    async def test_send_and_receive_json_roundtrip(self, queue):
        body = {"type": "custom", "data": {"n": 1}}
        await queue.send(body)
        [message] = await queue.receive(timeout=0.1)
        assert message.body == body
        assert message.body is not body
        assert message.attempts == 0

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self, queue):
        with pytest.raises(TransportError):
            await queue.send({"when": object()})

    @pytest.mark.asyncio
    async def test_receive_times_out_empty(self, queue):
        assert await queue.receive(timeout=0.01) == []

    @pytest.mark.asyncio
    async def test_batch_size_respected(self, queue):
        await queue.send_batch([{"body": {"i": i}} for i in range(5)])
        first = await queue.receive(batch_size=3, timeout=0.1)
        second = await queue.receive(batch_size=3, timeout=0.1)
        assert [m.body["i"] for m in first] == [0, 1, 2]
        assert [m.body["i"] for m in second] == [3, 4]

    @pytest.mark.asyncio
    async def test_delayed_send(self, queue):
        await queue.send({"late": True}, {"delay_seconds": 0.05})
        assert await queue.receive(timeout=0.01) == []
        [message] = await queue.receive(timeout=0.5)
        assert message.body == {"late": True}

    @pytest.mark.asyncio
    async def test_retry_redelivers_with_incremented_attempts(self, queue):
        await queue.send({"x": 1})
        [message] = await queue.receive(timeout=0.1)
        message.retry()
        await queue.settle([message])

        [again] = await queue.receive(timeout=0.1)
        assert again.id == message.id
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_ack_removes_message(self, queue):
        await queue.send({"x": 1})
        [message] = await queue.receive(timeout=0.1)
        message.ack()
        await queue.settle([message])
        assert await queue.queue_length() == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_lettered(self):
        queue = InMemoryMessageQueue(max_retries=2)
        await queue.send({"x": 1})
        for _ in range(3):
            [message] = await queue.receive(timeout=0.1)
            message.retry()
            await queue.settle([message])

        assert await queue.queue_length() == 0
        [dead] = await queue.dead_letters()
        assert dead.body == {"x": 1}

    @pytest.mark.asyncio
    async def test_unsettled_follow_handler_result(self, queue):
        await queue.send_batch([{"body": {"i": 0}}, {"body": {"i": 1}}])
        batch = await queue.receive(timeout=0.1)
        await queue.settle(batch, handler_failed=True)
        assert all(m.outcome == Settlement.RETRY for m in batch)
        assert await queue.queue_length() == 2

    @pytest.mark.asyncio
    async def test_send_after_close_fails(self, queue):
        await queue.connect()
        await queue.close()
        with pytest.raises(TransportError):
            await queue.send({"x": 1})

    @pytest.mark.asyncio
    async def test_consume_delivers_batches_until_stopped(self, queue):
        received = []

        async def handler(batch):
            received.extend(m.body for m in batch)
            queue.stop()

        await queue.send({"x": 1})
        await asyncio.wait_for(queue.consume(handler), timeout=3)
        assert received == [{"x": 1}]

    @pytest.mark.asyncio
    async def test_consume_retries_batch_when_handler_raises(self, queue):
        calls = 0

        async def handler(batch):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("crash")
            queue.stop()

        await queue.send({"x": 1})
        await asyncio.wait_for(queue.consume(handler), timeout=3)
        assert calls == 2


class TestFactory:
    def test_memory_default(self):
        assert isinstance(create_message_queue(), InMemoryMessageQueue)

    def test_from_queue_config(self):
        queue = create_message_queue(QueueConfig(backend="memory", max_retries=7))
        assert queue.max_retries == 7

    def test_redis_backend(self):
        queue = create_message_queue({"backend": "redis", "redis_url": "redis://cache:6379", "stream": "jobs"})
        assert isinstance(queue, RedisMessageQueue)
        assert queue.dlq_stream == "jobs:dlq"
