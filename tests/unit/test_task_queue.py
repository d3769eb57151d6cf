"""Unit tests for the phase task queue backends."""

import fakeredis.aioredis
import pytest

from tradeflow.services.task_queue import MemoryQueueBackend, PhaseTask, RedisQueueBackend, TaskQueueService


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


def test_phase_task_round_trips_through_stream_fields():
    task = PhaseTask(
        task_id="a-1:market:abc",
        analysis_id="a-1",
        phase="market",
        ticker="AAPL",
        user_id="user-1",
        api_settings={"ai_provider": "openai", "auto_execute_trades": True},
        retry_count=2,
    )

    fields = task.to_dict()

    assert all(isinstance(value, str) for value in fields.values())
    assert PhaseTask.from_dict(fields) == task


@pytest.mark.asyncio
class TestMemoryQueue:
    async def test_enqueue_dequeue_ack(self):
        queue = TaskQueueService(MemoryQueueBackend())

        await queue.enqueue_phase(analysis_id="a-1", phase="market", ticker="AAPL", user_id="user-1")
        assert (await queue.get_queue_stats())["pending_count"] == 1

        message_id, task = await queue.dequeue("worker-1", block_ms=100)

        assert task.analysis_id == "a-1"
        assert task.phase == "market"
        assert await queue.ack(message_id) is True
        assert await queue.ack(message_id) is False

    async def test_dequeue_times_out(self):
        queue = TaskQueueService(MemoryQueueBackend())

        assert await queue.dequeue("worker-1", block_ms=10) is None

    async def test_nack_retries_then_dead_letters(self):
        queue = TaskQueueService(MemoryQueueBackend())
        await queue.enqueue_phase(
            analysis_id="a-1", phase="risk", ticker="AAPL", user_id="user-1", max_retries=1
        )

        message_id, task = await queue.dequeue("worker-1", block_ms=100)
        await queue.nack(message_id, task)
        message_id, task = await queue.dequeue("worker-1", block_ms=100)
        assert task.retry_count == 1

        await queue.nack(message_id, task)

        dead = await queue.dead_letters()
        assert len(dead) == 1
        assert dead[0]["analysis_id"] == "a-1"
        assert dead[0]["original_message_id"] == message_id
        stats = await queue.get_queue_stats()
        assert stats == {"pending_count": 0, "dead_letter_count": 1, "backend": "memory"}


@pytest.mark.asyncio
class TestRedisQueue:
    async def test_enqueue_dequeue_ack(self, redis_client):
        queue = TaskQueueService(RedisQueueBackend(client=redis_client))

        await queue.enqueue_phase(
            analysis_id="a-1",
            phase="portfolio",
            ticker="AAPL",
            user_id="user-1",
            api_settings={"ai_provider": "openai"},
        )
        message_id, task = await queue.dequeue("worker-1", block_ms=100)

        assert task.phase == "portfolio"
        assert task.api_settings == {"ai_provider": "openai"}
        assert await queue.ack(message_id) is True

    async def test_nack_without_retries_dead_letters(self, redis_client):
        queue = TaskQueueService(RedisQueueBackend(client=redis_client))
        await queue.enqueue_phase(
            analysis_id="a-1", phase="market", ticker="AAPL", user_id="user-1", max_retries=0
        )
        message_id, task = await queue.dequeue("worker-1", block_ms=100)

        await queue.nack(message_id, task)

        dead = await queue.dead_letters()
        assert len(dead) == 1
        assert dead[0]["task_id"] == task.task_id
        assert await queue.dequeue("worker-1", block_ms=10) is None
