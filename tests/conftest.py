"""Pytest configuration and shared fixtures."""

from collections.abc import AsyncGenerator
from typing import Dict, List, Optional

import pytest

from tradeflow.db.session import DatabaseManager
from tradeflow.runtime import Runtime, build_runtime
from tradeflow.schemas.trigger import AnalysisTrigger, ApiSettings
from tradeflow.services.broker_adapter import SimulatedBroker
from tradeflow.services.phase_supervisor import PhaseOutcome
from tradeflow.services.task_queue import MemoryQueueBackend, TaskQueueService
from tradeflow.workers import PhaseWorker


class ScriptedAIClient:
    """Stands in for ``AICompletionClient``; answers by system-prompt role."""

    def __init__(self, responses: Optional[Dict[str, str]] = None, default: str = "Neutral outlook."):
        self.responses = responses or {}
        self.default = default
        self.calls: List[Dict[str, Optional[str]]] = []

    async def complete(self, prompt: str, system_prompt: Optional[str] = None, max_tokens: Optional[int] = None) -> str:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt})
        for role, text in self.responses.items():
            if system_prompt and role in system_prompt:
                return text
        return self.default


@pytest.fixture
async def test_db() -> AsyncGenerator[DatabaseManager, None]:
    """Create a test database with in-memory SQLite."""
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:", echo=False)

    await db_manager.create_tables()

    yield db_manager

    await db_manager.drop_tables()
    await db_manager.close()


@pytest.fixture
def api_settings() -> ApiSettings:
    return ApiSettings(
        ai_provider="openai",
        ai_api_key="sk-test",
        alpaca_paper_api_key="paper-key",
        alpaca_paper_secret_key="paper-secret",
        user_risk_level="moderate",
        default_position_size_dollars=1000,
    )


@pytest.fixture
def broker() -> SimulatedBroker:
    return SimulatedBroker(initial_cash=100000.0, prices={"AAPL": 100.0, "MSFT": 400.0})


@pytest.fixture
def scripted_ai():
    """The ``ScriptedAIClient`` class, for tests that script their own answers."""
    return ScriptedAIClient


@pytest.fixture
def ai_client() -> ScriptedAIClient:
    return ScriptedAIClient(
        responses={
            "risk manager": "The setup looks constructive.\nDECISION: BUY\nCONFIDENCE: 85",
            "portfolio manager": "BUY $6000 worth AAPL",
        }
    )


@pytest.fixture
def queue() -> TaskQueueService:
    return TaskQueueService(MemoryQueueBackend())


@pytest.fixture
def runtime(
    test_db: DatabaseManager,
    queue: TaskQueueService,
    broker: SimulatedBroker,
    ai_client: ScriptedAIClient,
) -> Runtime:
    return build_runtime(
        test_db,
        queue,
        broker_factory=lambda api_settings, stored: broker,
        ai_client_factory=lambda api_settings, max_tokens=None: ai_client,
        phase_timeout_seconds=5,
    )


@pytest.fixture
def worker(runtime: Runtime) -> PhaseWorker:
    return PhaseWorker(runtime.queue, runtime.supervisor, runtime.coordinator, name="test-worker", block_ms=50)


@pytest.fixture
def drain(runtime: Runtime, worker: PhaseWorker):
    """Process queued phase tasks until the queue stays empty."""

    async def _drain(limit: int = 20) -> List[PhaseOutcome]:
        outcomes: List[PhaseOutcome] = []
        for _ in range(limit):
            item = await runtime.queue.dequeue(worker.name, block_ms=50)
            if item is None:
                break
            outcomes.append(await worker.process_task(*item))
        return outcomes

    return _drain


@pytest.fixture
def make_trigger(api_settings: ApiSettings):
    def _make(analysis_id: str = "analysis-1", ticker: str = "AAPL", user_id: str = "user-1", **fields):
        return AnalysisTrigger(
            analysis_id=analysis_id,
            ticker=ticker,
            user_id=user_id,
            api_settings=fields.pop("api_settings", api_settings),
            **fields,
        )

    return _make
