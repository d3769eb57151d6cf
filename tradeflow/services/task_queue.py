"""Phase task queue.

Redis Stream backend for production:
- persisted tasks
- consumer group (horizontal worker scaling)
- ACK and re-enqueue on retry
- dead-letter queue (DLQ)

Memory backend (asyncio.Queue) for development and tests.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog

from ..config import get_settings

logger = structlog.get_logger(__name__)

PHASES: Tuple[str, ...] = ("market", "research", "risk", "portfolio", "execution")


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class PhaseTask:
    """One phase of one analysis, as carried on the queue."""

    task_id: str
    analysis_id: str
    phase: str
    ticker: str
    user_id: str
    api_settings: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3

    def to_dict(self) -> Dict[str, Any]:
        """Flatten for a Redis stream entry (string values only)."""
        data = asdict(self)
        data["api_settings"] = json.dumps(data["api_settings"])
        data["created_at"] = data["created_at"] or ""
        data["retry_count"] = str(data["retry_count"])
        data["max_retries"] = str(data["max_retries"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseTask":
        data = dict(data)
        if isinstance(data.get("api_settings"), str):
            data["api_settings"] = json.loads(data["api_settings"]) if data["api_settings"] else {}
        data["retry_count"] = int(data.get("retry_count", 0))
        data["max_retries"] = int(data.get("max_retries", 3))
        data["created_at"] = data.get("created_at") or None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class TaskQueueBackend(ABC):
    @abstractmethod
    async def enqueue(self, task: PhaseTask) -> str:
        """Enqueue a task and return its message id."""

    @abstractmethod
    async def dequeue(self, consumer_name: str, block_ms: int = 5000) -> Optional[Tuple[str, PhaseTask]]:
        """Block until a task arrives or ``block_ms`` elapses."""

    @abstractmethod
    async def ack(self, message_id: str) -> bool:
        """Acknowledge a finished task."""

    @abstractmethod
    async def nack(self, message_id: str, task: PhaseTask) -> bool:
        """Reject a task: re-enqueue while retries remain, otherwise dead-letter it."""

    @abstractmethod
    async def get_pending_count(self) -> int:
        pass

    @abstractmethod
    async def get_dead_letters(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class MemoryQueueBackend(TaskQueueBackend):
    """In-process queue backend (development)."""

    def __init__(self):
        self._queue: asyncio.Queue[Tuple[str, PhaseTask]] = asyncio.Queue()
        self._pending: Dict[str, PhaseTask] = {}
        self._dead_letters: List[Dict[str, Any]] = []

    async def enqueue(self, task: PhaseTask) -> str:
        message_id = f"mem_{uuid.uuid4().hex[:12]}"
        await self._queue.put((message_id, task))
        logger.debug("Task enqueued to memory queue", task_id=task.task_id, phase=task.phase, message_id=message_id)
        return message_id

    async def dequeue(self, consumer_name: str, block_ms: int = 5000) -> Optional[Tuple[str, PhaseTask]]:
        try:
            message_id, task = await asyncio.wait_for(self._queue.get(), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            return None
        self._pending[message_id] = task
        logger.debug("Task dequeued from memory queue", task_id=task.task_id, consumer=consumer_name)
        return message_id, task

    async def ack(self, message_id: str) -> bool:
        return self._pending.pop(message_id, None) is not None

    async def nack(self, message_id: str, task: PhaseTask) -> bool:
        if self._pending.pop(message_id, None) is None:
            return False
        if task.retry_count < task.max_retries:
            task.retry_count += 1
            await self.enqueue(task)
            logger.info("Task re-enqueued for retry", task_id=task.task_id, retry=task.retry_count)
        else:
            self._dead_letters.append(
                {
                    **task.to_dict(),
                    "failed_at": datetime.utcnow().isoformat(),
                    "original_message_id": message_id,
                }
            )
            logger.error("Task moved to DLQ", task_id=task.task_id, phase=task.phase)
        return True

    async def get_pending_count(self) -> int:
        return self._queue.qsize()

    async def get_dead_letters(self) -> List[Dict[str, Any]]:
        return list(self._dead_letters)

    async def close(self) -> None:
        pass


class RedisQueueBackend(TaskQueueBackend):
    """Redis Stream backend (production)."""

    STREAM_KEY = "tradeflow:phase_tasks"
    GROUP_NAME = "phase_workers"
    DLQ_KEY = "tradeflow:phase_dlq"
    # Pending entries idle this long are reclaimed from crashed consumers
    CLAIM_IDLE_MS = 300000

    def __init__(self, redis_url: Optional[str] = None, client: Optional[aioredis.Redis] = None):
        self._redis_url = redis_url
        self._redis = client
        self._group_ready = False

    async def _ensure_initialized(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        if self._group_ready:
            return
        try:
            await self._redis.xgroup_create(self.STREAM_KEY, self.GROUP_NAME, id="0", mkstream=True)
            logger.info("Created Redis consumer group", group=self.GROUP_NAME)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def enqueue(self, task: PhaseTask) -> str:
        await self._ensure_initialized()
        message_id = await self._redis.xadd(self.STREAM_KEY, task.to_dict(), maxlen=10000)
        logger.info("Task enqueued to Redis Stream", task_id=task.task_id, phase=task.phase, message_id=message_id)
        return message_id

    async def dequeue(self, consumer_name: str, block_ms: int = 5000) -> Optional[Tuple[str, PhaseTask]]:
        await self._ensure_initialized()

        # Crash recovery: reclaim a stale unacknowledged entry first
        pending = await self._redis.xpending_range(
            self.STREAM_KEY,
            self.GROUP_NAME,
            min="-",
            max="+",
            count=1,
            consumername=consumer_name,
        )
        for entry in pending or []:
            if entry["time_since_delivered"] > self.CLAIM_IDLE_MS:
                claimed = await self._redis.xclaim(
                    self.STREAM_KEY,
                    self.GROUP_NAME,
                    consumer_name,
                    min_idle_time=self.CLAIM_IDLE_MS,
                    message_ids=[entry["message_id"]],
                )
                if claimed:
                    message_id, fields = claimed[0]
                    task = PhaseTask.from_dict(fields)
                    logger.warning("Claimed stale message", task_id=task.task_id, message_id=message_id)
                    return message_id, task

        result = await self._redis.xreadgroup(
            groupname=self.GROUP_NAME,
            consumername=consumer_name,
            streams={self.STREAM_KEY: ">"},
            count=1,
            block=block_ms,
        )
        if result:
            _, messages = result[0]
            if messages:
                message_id, fields = messages[0]
                task = PhaseTask.from_dict(fields)
                logger.debug("Task dequeued from Redis Stream", task_id=task.task_id, consumer=consumer_name)
                return message_id, task
        return None

    async def ack(self, message_id: str) -> bool:
        await self._ensure_initialized()
        return await self._redis.xack(self.STREAM_KEY, self.GROUP_NAME, message_id) > 0

    async def nack(self, message_id: str, task: PhaseTask) -> bool:
        await self._ensure_initialized()
        await self._redis.xack(self.STREAM_KEY, self.GROUP_NAME, message_id)

        if task.retry_count < task.max_retries:
            task.retry_count += 1
            await self.enqueue(task)
            logger.info("Task re-enqueued for retry", task_id=task.task_id, retry=task.retry_count)
        else:
            await self._redis.xadd(
                self.DLQ_KEY,
                {
                    **task.to_dict(),
                    "failed_at": datetime.utcnow().isoformat(),
                    "original_message_id": message_id,
                },
            )
            logger.error("Task moved to DLQ", task_id=task.task_id, phase=task.phase)
        return True

    async def get_pending_count(self) -> int:
        await self._ensure_initialized()
        info = await self._redis.xinfo_stream(self.STREAM_KEY)
        return info.get("length", 0)

    async def get_dead_letters(self) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        entries = await self._redis.xrange(self.DLQ_KEY)
        return [fields for _, fields in entries]

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._group_ready = False


class TaskQueueService:
    """Queue facade; picks Redis when ``REDIS_URL`` is set, else memory."""

    def __init__(self, backend: Optional[TaskQueueBackend] = None):
        self._backend = backend

    async def _ensure_initialized(self) -> TaskQueueBackend:
        if self._backend is not None:
            return self._backend

        redis_url = get_settings().redis_url
        if redis_url:
            backend = RedisQueueBackend(redis_url)
            try:
                await backend._ensure_initialized()
                logger.info("Using Redis Stream task queue")
                self._backend = backend
            except (aioredis.RedisError, OSError) as e:
                logger.warning("Redis unavailable, falling back to memory queue", error=str(e))
                self._backend = MemoryQueueBackend()
        else:
            logger.info("Using memory task queue (REDIS_URL not configured)")
            self._backend = MemoryQueueBackend()
        return self._backend

    async def enqueue_phase(
        self,
        *,
        analysis_id: str,
        phase: str,
        ticker: str,
        user_id: str,
        api_settings: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        backend = await self._ensure_initialized()
        task = PhaseTask(
            task_id=f"{analysis_id}:{phase}:{uuid.uuid4().hex[:8]}",
            analysis_id=analysis_id,
            phase=phase,
            ticker=ticker,
            user_id=user_id,
            api_settings=api_settings or {},
            created_at=datetime.utcnow().isoformat(),
            max_retries=get_settings().phase_max_retries if max_retries is None else max_retries,
        )
        return await backend.enqueue(task)

    async def dequeue(self, consumer_name: str, block_ms: int = 5000) -> Optional[Tuple[str, PhaseTask]]:
        backend = await self._ensure_initialized()
        return await backend.dequeue(consumer_name, block_ms)

    async def ack(self, message_id: str) -> bool:
        backend = await self._ensure_initialized()
        return await backend.ack(message_id)

    async def nack(self, message_id: str, task: PhaseTask) -> bool:
        backend = await self._ensure_initialized()
        return await backend.nack(message_id, task)

    async def dead_letters(self) -> List[Dict[str, Any]]:
        backend = await self._ensure_initialized()
        return await backend.get_dead_letters()

    async def get_queue_stats(self) -> Dict[str, Any]:
        backend = await self._ensure_initialized()
        return {
            "pending_count": await backend.get_pending_count(),
            "dead_letter_count": len(await backend.get_dead_letters()),
            "backend": "redis" if isinstance(backend, RedisQueueBackend) else "memory",
        }

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()
