"""HTTP API tests against an app built over the test runtime."""

import pytest
from httpx import ASGITransport, AsyncClient

from tradeflow.main import create_app


@pytest.fixture
async def client(runtime):
    app = create_app(runtime=runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def trigger_body(**overrides):
    body = {
        "analysisId": "analysis-1",
        "ticker": "aapl",
        "userId": "user-1",
        "apiSettings": {"ai_provider": "openai", "ai_api_key": "sk-test"},
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
class TestAnalysisEndpoints:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_trigger_missing_fields(self, client):
        body = trigger_body()
        del body["userId"]

        response = await client.post("/api/analysis/trigger", json=body)

        assert response.status_code == 400
        payload = response.json()
        assert payload["code"] == "validation_error"
        assert payload["message"] == "Missing required fields: userId"

    async def test_trigger_invalid_api_settings(self, client):
        response = await client.post("/api/analysis/trigger", json=trigger_body(apiSettings={"ai_provider": "openai"}))

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    async def test_trigger_and_read(self, client):
        response = await client.post("/api/analysis/trigger", json=trigger_body())

        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is True
        assert payload["status"] == "running"
        assert payload["phase"] == "market"
        assert payload["ticker"] == "AAPL"

        response = await client.get("/api/analysis/analysis-1")

        assert response.status_code == 200
        record = response.json()
        assert record["status"] == "running"
        assert record["steps"][0]["phase"] == "market"
        assert record["trade_order"] is None
        assert record["messages"][0]["message"] == "Analysis of AAPL queued at phase market"

        stats = (await client.get("/api/queue/stats")).json()
        assert stats["pending_count"] == 1
        assert stats["backend"] == "memory"

    async def test_completed_analysis_shows_order(self, client, drain):
        await client.post("/api/analysis/trigger", json=trigger_body())
        await drain()

        record = (await client.get("/api/analysis/analysis-1")).json()

        assert record["status"] == "completed"
        assert record["insights"]["portfolio"]["decision_line"] == "BUY $6000 worth AAPL"
        assert record["trade_order"]["action"] == "BUY"

    async def test_unknown_analysis(self, client):
        response = await client.get("/api/analysis/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "resource_not_found"

    async def test_cancel(self, client):
        await client.post("/api/analysis/trigger", json=trigger_body())

        response = await client.post("/api/analysis/analysis-1/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "canceled"

    async def test_retry_of_running_analysis_rejected(self, client):
        await client.post("/api/analysis/trigger", json=trigger_body())

        response = await client.post(
            "/api/analysis/analysis-1/retry",
            json={"apiSettings": {"ai_provider": "openai", "ai_api_key": "sk-test"}},
        )

        assert response.status_code == 400

    async def test_near_limit_scan(self, client):
        response = await client.post("/api/near-limit/scan")

        assert response.status_code == 200
        assert response.json()["users_checked"] == 0
