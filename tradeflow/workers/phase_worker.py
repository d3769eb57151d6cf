"""Phase worker

Consumes phase tasks from the task queue, runs each one under the phase
supervisor and hands the outcome to the workflow coordinator.

Usage:
    # single worker
    python -m tradeflow.workers.phase_worker

    # several workers, named for log and consumer identification
    python -m tradeflow.workers.phase_worker --name worker-1
    python -m tradeflow.workers.phase_worker --name worker-2

Each worker is an independent consumer of the same Redis Stream group, so
workers scale horizontally. SIGINT/SIGTERM stop the loop after the current
task. Timeout exhaustion dead-letters the task; every other outcome is acked.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import List, Optional

import structlog
from dotenv import load_dotenv

from ..config import get_settings
from ..core.context import analysis_log_context
from ..core.logging_config import configure_logging
from ..db.session import init_db
from ..runtime import build_runtime
from ..services.phase_supervisor import PhaseOutcome, PhaseSupervisor
from ..services.task_queue import PhaseTask, TaskQueueService
from ..services.workflow import WorkflowCoordinator

logger = structlog.get_logger(__name__)


class PhaseWorker:
    def __init__(
        self,
        queue: TaskQueueService,
        supervisor: PhaseSupervisor,
        coordinator: WorkflowCoordinator,
        name: str = "worker-default",
        block_ms: int = 5000,
    ):
        self.queue = queue
        self.supervisor = supervisor
        self.coordinator = coordinator
        self.name = name
        self.block_ms = block_ms
        self._running = False
        self._current_task: Optional[PhaseTask] = None

    async def process_task(self, message_id: str, task: PhaseTask) -> PhaseOutcome:
        """Run one phase task to an outcome and settle its queue message."""
        with analysis_log_context(task.analysis_id, phase=task.phase, worker=self.name):
            logger.info("Processing phase task", task_id=task.task_id, ticker=task.ticker)
            outcome = await self.supervisor.run(task)
            await self.coordinator.handle_phase_result(task, outcome)

            if outcome.dead_letter:
                task.retry_count = task.max_retries
                await self.queue.nack(message_id, task)
            else:
                await self.queue.ack(message_id)
            logger.info(
                "Phase task finished",
                task_id=task.task_id,
                status=outcome.status.value,
                attempts=outcome.attempts,
                dead_letter=outcome.dead_letter,
            )
        return outcome

    async def run(self) -> None:
        self._running = True
        logger.info("Phase worker starting", name=self.name)

        while self._running:
            try:
                result = await self.queue.dequeue(self.name, block_ms=self.block_ms)
                if result is None:
                    continue

                message_id, task = result
                self._current_task = task
                await self.process_task(message_id, task)
                self._current_task = None

            except asyncio.CancelledError:
                logger.info("Worker cancelled", name=self.name)
                break
            except Exception as e:
                logger.error("Worker loop error", name=self.name, error=str(e))
                await asyncio.sleep(5)

        logger.info("Phase worker stopped", name=self.name)

    def stop(self) -> None:
        self._running = False


class WorkerManager:
    """In-process worker pool started by the API lifespan."""

    def __init__(
        self,
        queue: TaskQueueService,
        supervisor: PhaseSupervisor,
        coordinator: WorkflowCoordinator,
        count: int = 2,
    ):
        self.workers = [
            PhaseWorker(queue, supervisor, coordinator, name=f"inproc-{os.getpid()}-{i}") for i in range(count)
        ]
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        self._tasks = [asyncio.create_task(worker.run()) for worker in self.workers]
        logger.info("Workers started", count=len(self.workers))

    async def stop(self) -> None:
        for worker in self.workers:
            worker.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Workers stopped")


async def main(worker_name: str) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    db = init_db(settings.database_url, echo=settings.database_echo)
    await db.create_tables()
    runtime = build_runtime(db)
    worker = PhaseWorker(runtime.queue, runtime.supervisor, runtime.coordinator, name=worker_name)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal", worker=worker_name)
        worker.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await worker.run()
    finally:
        await runtime.close()
        await db.close()


def cli() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Phase Worker")
    parser.add_argument(
        "--name",
        type=str,
        default=f"worker-{os.getpid()}",
        help="Worker name for logging and consumer identification",
    )
    args = parser.parse_args()

    asyncio.run(main(args.name))


if __name__ == "__main__":
    cli()
