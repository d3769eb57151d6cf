"""End-to-end workflow tests over the memory queue and in-memory SQLite."""

import asyncio

import pytest

from tradeflow.core.errors import ResourceNotFoundError, ValidationError
from tradeflow.core.resilience import RetryPolicy
from tradeflow.repositories import TradeActionRepository
from tradeflow.services.phase_supervisor import OutcomeStatus, PhaseSupervisor
from tradeflow.services.task_queue import PHASES
from tradeflow.workers import PhaseWorker


async def trade_actions(runtime):
    async with runtime.db.session_factory() as session:
        return await TradeActionRepository(session).list_where()


@pytest.mark.asyncio
class TestFullWorkflow:
    async def test_runs_every_phase_to_completion(self, runtime, make_trigger, drain):
        response = await runtime.coordinator.start_analysis(make_trigger(ticker="aapl"))

        assert response.status == "running"
        assert response.phase == "market"

        outcomes = await drain()

        assert [o.phase for o in outcomes] == list(PHASES)
        assert all(o.status is OutcomeStatus.COMPLETED for o in outcomes)

        record = await runtime.store.read_analysis("analysis-1")
        assert record.status == "completed"
        assert record.ticker == "AAPL"
        assert record.decision == "BUY"
        assert record.confidence == 85

        steps = {step.phase: step.status for step in await runtime.store.get_steps("analysis-1")}
        assert steps == {phase: "completed" for phase in PHASES}

        insights = await runtime.store.read_insights("analysis-1")
        assert insights["market"].current_price == 100
        assert insights["portfolio"].decision_line == "BUY $6000 worth AAPL"
        assert insights["portfolio"].order_recorded is True
        assert insights["execution"].order_status == "pending"

        orders = await trade_actions(runtime)
        assert len(orders) == 1
        assert orders[0].action == "BUY"
        assert orders[0].dollar_amount == pytest.approx(6000)
        assert orders[0].status == "pending"

        messages = [m.message for m in await runtime.store.read_messages("analysis-1")]
        assert messages[0] == "Analysis of AAPL queued at phase market"
        assert messages[-1] == "Analysis completed"

    async def test_auto_execution_submits_order(self, runtime, make_trigger, api_settings, broker, drain):
        settings = api_settings.model_copy(update={"auto_execute_trades": True})

        await runtime.coordinator.start_analysis(make_trigger(api_settings=settings))
        await drain()

        orders = await trade_actions(runtime)
        assert orders[0].status == "executed"
        assert orders[0].broker_order_id == "SIM000001"
        assert broker.cash == pytest.approx(94000)

        insights = await runtime.store.read_insights("analysis-1")
        assert insights["execution"].auto_executed is True

    async def test_hold_records_no_order(self, runtime, make_trigger, ai_client, drain):
        ai_client.responses["risk manager"] = "DECISION: HOLD\nCONFIDENCE: 60"
        ai_client.responses["portfolio manager"] = "HOLD AAPL"

        await runtime.coordinator.start_analysis(make_trigger())
        await drain()

        assert await trade_actions(runtime) == []
        insights = await runtime.store.read_insights("analysis-1")
        assert insights["portfolio"].decision_line == "HOLD AAPL"
        assert insights["execution"].order_status == "none"

    async def test_repeated_trigger_does_not_enqueue_twice(self, runtime, make_trigger):
        await runtime.coordinator.start_analysis(make_trigger())

        response = await runtime.coordinator.start_analysis(make_trigger())

        assert response.message_id is None
        assert (await runtime.queue.get_queue_stats())["pending_count"] == 1

    async def test_completed_analysis_is_not_restarted(self, runtime, make_trigger, drain):
        await runtime.coordinator.start_analysis(make_trigger())
        await drain()

        response = await runtime.coordinator.start_analysis(make_trigger())

        assert response.status == "completed"
        assert (await runtime.queue.get_queue_stats())["pending_count"] == 0

    async def test_unknown_phase_rejected(self, runtime, make_trigger):
        with pytest.raises(ValidationError):
            await runtime.coordinator.start_analysis(make_trigger(phase="astrology"))


@pytest.mark.asyncio
class TestPortfolioIdempotency:
    async def test_rerun_reuses_persisted_order(self, runtime, make_trigger, worker, ai_client):
        await runtime.coordinator.start_analysis(make_trigger())
        # market, research, risk, portfolio
        for _ in range(4):
            message_id, task = await runtime.queue.dequeue(worker.name, block_ms=50)
            await worker.process_task(message_id, task)
        message_id, task = await runtime.queue.dequeue(worker.name, block_ms=50)
        assert task.phase == "execution"
        await runtime.queue.ack(message_id)

        # Run the portfolio phase again, as a redelivered task would
        await runtime.coordinator.start_analysis(make_trigger(phase="portfolio"))
        message_id, task = await runtime.queue.dequeue(worker.name, block_ms=50)
        assert task.phase == "portfolio"
        consults_before = sum(1 for call in ai_client.calls if "portfolio manager" in (call["system_prompt"] or ""))

        outcome = await worker.process_task(message_id, task)

        assert outcome.status is OutcomeStatus.COMPLETED
        assert len(await trade_actions(runtime)) == 1
        consults_after = sum(1 for call in ai_client.calls if "portfolio manager" in (call["system_prompt"] or ""))
        assert consults_after == consults_before

        insights = await runtime.store.read_insights("analysis-1")
        assert insights["portfolio"].existing_order_used is True
        assert insights["portfolio"].decision_line == "BUY $6000 worth AAPL"
        assert insights["portfolio"].intent == "BUILD"
        messages = [m.message for m in await runtime.store.read_messages("analysis-1")]
        assert "Existing order reused: BUY $6000 worth AAPL" in messages


@pytest.mark.asyncio
class TestCancellation:
    async def test_canceled_before_phase_runs(self, runtime, make_trigger, worker):
        await runtime.coordinator.start_analysis(make_trigger())
        message_id, task = await runtime.queue.dequeue(worker.name, block_ms=50)

        await runtime.coordinator.cancel_analysis("analysis-1")
        outcome = await worker.process_task(message_id, task)

        assert outcome.status is OutcomeStatus.CANCELED
        record = await runtime.store.read_analysis("analysis-1")
        assert record.status == "canceled"
        steps = {step.phase: step.status for step in await runtime.store.get_steps("analysis-1")}
        assert steps["market"] == "canceled"
        assert (await runtime.queue.get_queue_stats())["pending_count"] == 0

    async def test_canceled_analysis_cannot_restart(self, runtime, make_trigger):
        await runtime.coordinator.start_analysis(make_trigger())
        await runtime.coordinator.cancel_analysis("analysis-1")

        with pytest.raises(ValidationError):
            await runtime.coordinator.start_analysis(make_trigger())

    async def test_cancel_unknown_analysis(self, runtime):
        with pytest.raises(ResourceNotFoundError):
            await runtime.coordinator.cancel_analysis("missing")

    async def test_cancel_completed_analysis_rejected(self, runtime, make_trigger, drain):
        await runtime.coordinator.start_analysis(make_trigger())
        await drain()

        with pytest.raises(ValidationError):
            await runtime.coordinator.cancel_analysis("analysis-1")


@pytest.mark.asyncio
class TestFailures:
    async def test_timeout_exhaustion_dead_letters(self, runtime, make_trigger, ai_client):
        async def hang(prompt, system_prompt=None, max_tokens=None):
            await asyncio.sleep(5)
            return ""

        ai_client.complete = hang
        supervisor = PhaseSupervisor(
            runtime.supervisor.runner,
            timeout_seconds=0.5,
            max_retries=1,
            retry_policy=RetryPolicy(initial_backoff=0, jitter=0),
        )
        worker = PhaseWorker(runtime.queue, supervisor, runtime.coordinator, name="slow-worker")

        await runtime.coordinator.start_analysis(make_trigger())
        message_id, task = await runtime.queue.dequeue(worker.name, block_ms=50)
        outcome = await worker.process_task(message_id, task)

        assert outcome.dead_letter is True
        assert outcome.attempts == 2
        dead = await runtime.queue.dead_letters()
        assert len(dead) == 1
        assert dead[0]["phase"] == "market"

        record = await runtime.store.read_analysis("analysis-1")
        assert record.status == "error"
        assert record.error_type == "timeout"

    async def test_missing_price_fails_then_manual_retry_resumes(
        self, runtime, make_trigger, api_settings, ai_client, broker, drain
    ):
        ai_client.responses["portfolio manager"] = "BUY $6000 worth NVDA"
        await runtime.coordinator.start_analysis(make_trigger(ticker="NVDA"))

        outcomes = await drain()

        assert outcomes[-1].phase == "portfolio"
        assert outcomes[-1].status is OutcomeStatus.ERROR
        record = await runtime.store.read_analysis("analysis-1")
        assert record.status == "error"
        assert record.error_type == "data_fetch"

        broker.set_price("NVDA", 50)
        response = await runtime.coordinator.retry_analysis("analysis-1", api_settings)
        assert response.phase == "portfolio"
        await drain()

        record = await runtime.store.read_analysis("analysis-1")
        assert record.status == "completed"
        orders = await trade_actions(runtime)
        assert orders[0].ticker == "NVDA"
        assert orders[0].shares == 120

    async def test_retry_requires_error_status(self, runtime, make_trigger, api_settings):
        await runtime.coordinator.start_analysis(make_trigger())

        with pytest.raises(ValidationError):
            await runtime.coordinator.retry_analysis("analysis-1", api_settings)
