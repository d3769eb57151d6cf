"""Queue consumers for workflow phases."""

from .phase_worker import PhaseWorker, WorkerManager

__all__ = ["PhaseWorker", "WorkerManager"]
