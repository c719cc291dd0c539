"""
Tests for the admin HTTP surface, with an injected in-memory runtime.
"""

import httpx
import pytest

from rulewatch.analyst.classifier import RelevanceClassifier
from rulewatch.common.errors import AccountNotFoundError
from rulewatch.config import settings
from rulewatch.main import build_runtime, create_app

from tests.test_helpers import (
    FakeBackend,
    FakeClock,
    FakePlatform,
    FakeTimers,
    InMemoryRuleStore,
    make_rule,
)


@pytest.fixture
def api_store():
    return InMemoryRuleStore([make_rule("rule-1"), make_rule("rule-2", is_active=False)])


@pytest.fixture
def runtime(api_store):
    clock = FakeClock()
    return build_runtime(
        store=api_store,
        timers=FakeTimers(clock),
        platform=FakePlatform(clock),
        classifier=RelevanceClassifier({"fake": FakeBackend()}, default_backend="fake"),
    )


@pytest.fixture
def headers():
    return {"X-API-Key": settings.valid_api_keys[0]}


@pytest.fixture
def make_client(runtime):
    def factory():
        app = create_app(runtime)
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return factory


class TestAuth:

    @pytest.mark.asyncio
    async def test_health_is_public(self, make_client):
        async with make_client() as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["active_rules"] == 0

    @pytest.mark.asyncio
    async def test_missing_key(self, make_client):
        async with make_client() as client:
            response = await client.get("/system/status")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_key(self, make_client):
        async with make_client() as client:
            response = await client.get("/system/status", headers={"X-API-Key": "not-a-key"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_no_runtime_is_503(self, headers):
        app = create_app()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/system/status", headers=headers)

        assert response.status_code == 503


class TestRuleEndpoints:

    @pytest.mark.asyncio
    async def test_start_rule(self, make_client, headers, runtime):
        async with make_client() as client:
            response = await client.post("/rules/rule-1/start", headers=headers)

        assert response.status_code == 200
        assert response.json()["state"] == "scheduled"
        assert runtime.registry.is_polling("rule-1")
        assert len(runtime.platform.calls) == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, make_client, headers, runtime):
        async with make_client() as client:
            await client.post("/rules/rule-1/start", headers=headers)
            response = await client.post("/rules/rule-1/start", headers=headers)

        assert response.status_code == 200
        assert len(runtime.platform.calls) == 1

    @pytest.mark.asyncio
    async def test_start_unknown_rule(self, make_client, headers):
        async with make_client() as client:
            response = await client.post("/rules/nope/start", headers=headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_start_inactive_rule(self, make_client, headers):
        async with make_client() as client:
            response = await client.post("/rules/rule-2/start", headers=headers)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_start_missing_account_deactivates(self, make_client, headers, runtime, api_store):
        runtime.platform.errors["watched"] = AccountNotFoundError("watched")

        async with make_client() as client:
            response = await client.post("/rules/rule-1/start", headers=headers)

        assert response.status_code == 422
        assert api_store.deactivated == ["rule-1"]
        assert not runtime.registry.is_polling("rule-1")

    @pytest.mark.asyncio
    async def test_force_stop(self, make_client, headers, runtime, api_store):
        async with make_client() as client:
            await client.post("/rules/rule-1/start", headers=headers)
            response = await client.post("/rules/rule-1/force-stop", headers=headers)

        body = response.json()
        assert response.status_code == 200
        assert body["state"] == "stopped"
        assert body["details"] == {"was_polling": True, "residual_timers": 0}
        assert api_store.deactivated == ["rule-1"]
        assert runtime.timers.pending() == []

    @pytest.mark.asyncio
    async def test_reset_rule_notification(self, make_client, headers, runtime, api_store):
        api_store.notified["rule-1"] = {"1", "2"}
        runtime.registry.notified.add_many(["1", "2", "3"])

        async with make_client() as client:
            response = await client.post("/rules/rule-1/reset-notification", headers=headers)

        assert response.json()["details"] == {"database_updated": 2, "memory_reset": 2}
        assert "3" in runtime.registry.notified
        assert "1" not in runtime.registry.notified


class TestSystemEndpoints:

    @pytest.mark.asyncio
    async def test_initialize_and_status(self, make_client, headers):
        async with make_client() as client:
            init = await client.post("/system/initialize", headers=headers)
            status = await client.get("/system/status", headers=headers)

        assert init.json()["started"] == ["rule-1"]
        body = status.json()
        assert list(body["active_rules"]) == ["rule-1"]
        assert body["initializing"] is False

    @pytest.mark.asyncio
    async def test_initialize_too_soon(self, make_client, headers):
        async with make_client() as client:
            await client.post("/system/initialize", headers=headers)
            again = await client.post("/system/initialize", headers=headers)
            forced = await client.post("/system/initialize", params={"force": "true"}, headers=headers)

        assert again.json()["reason"] == "too_soon"
        assert forced.json()["skipped"] is False

    @pytest.mark.asyncio
    async def test_health_check_recovers(self, make_client, headers, runtime):
        async with make_client() as client:
            response = await client.post("/system/health-check", headers=headers)

        assert response.json()["started"] == ["rule-1"]
        assert runtime.registry.is_polling("rule-1")

    @pytest.mark.asyncio
    async def test_clear_all_polling(self, make_client, headers, runtime):
        async with make_client() as client:
            await client.post("/rules/rule-1/start", headers=headers)
            response = await client.post("/system/clear-all-polling", headers=headers)

        assert response.json() == {"success": True, "stopped": 1}
        assert runtime.registry.get_active_rule_ids() == []

    @pytest.mark.asyncio
    async def test_reset_all_notifications(self, make_client, headers, runtime, api_store):
        api_store.notified["rule-1"] = {"1"}
        runtime.registry.notified.add_many(["1", "2"])

        async with make_client() as client:
            response = await client.post("/admin/reset-notifications", headers=headers)

        body = response.json()
        assert body["database_updated"] == 1
        assert body["memory_reset"] == 2
        assert len(runtime.registry.notified) == 0
