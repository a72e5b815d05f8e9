"""Tests for the webhooks API router."""

import asyncio
import time
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from hookwatch.core.settings import HookwatchSettings
from hookwatch.main import app
from hookwatch.monitoring.aggregator import MonitoringAggregator, set_aggregator
from hookwatch.monitoring.log_store import InMemoryLogStore, set_log_store
from hookwatch.monitoring.models import TimeWindow
from hookwatch.monitoring.stats import StatsAggregator
from hookwatch.webhooks.caller import WebhookCaller
from hookwatch.webhooks.dispatcher import WebhookDispatcher, set_dispatcher
from hookwatch.webhooks.exceptions import LogStoreError
from hookwatch.webhooks.registry import WebhookRegistry, set_registry
from hookwatch.webhooks.router import get_logs, get_window_stats
from hookwatch.webhooks.tester import WebhookTester, set_tester

client = TestClient(app)


async def no_sleep(delay):
    return None


def endpoint_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/broken"):
        return httpx.Response(500)
    return httpx.Response(200, json={"ok": True})


@pytest.fixture
def services():
    registry = WebhookRegistry()
    store = InMemoryLogStore()
    caller = WebhookCaller(transport=httpx.MockTransport(endpoint_handler))
    aggregator = MonitoringAggregator(registry, StatsAggregator(store), HookwatchSettings())

    set_registry(registry)
    set_log_store(store)
    set_aggregator(aggregator)
    set_tester(WebhookTester(registry, log_store=store, caller=caller, sleep=no_sleep))
    set_dispatcher(WebhookDispatcher(
        registry, store, caller=caller, sleep=no_sleep, on_delivery=aggregator.notify_execution
    ))

    yield {"registry": registry, "store": store, "aggregator": aggregator}

    set_registry(None)
    set_log_store(None)
    set_aggregator(None)
    set_tester(None)
    set_dispatcher(None)


def register(name="Orders", url="https://example.com/orders", **fields):
    response = client.post("/api/webhooks/register", json={"name": name, "url": url, **fields})
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# Registration
# ============================================================================

class TestRegistration:
    """Tests for registering and managing webhooks."""

    def test_register_hides_secret(self, services):
        """The secret is stored but never echoed."""
        data = register(secret="whsec_1", event_types=["order.created"])

        assert data["signed"] is True
        assert "secret" not in data
        assert services["registry"].get(data["id"]).secret == "whsec_1"

    def test_register_applies_defaults(self, services):
        """Timeout and retry defaults come from settings."""
        data = register()
        endpoint = services["registry"].get(data["id"])

        assert endpoint.timeout_ms == 30000
        assert endpoint.retry_attempts == 0

    def test_register_invalid_url(self, services):
        """Bad URLs are rejected with 422 before anything is stored."""
        response = client.post(
            "/api/webhooks/register", json={"name": "Bad", "url": "ftp://example.com"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "url"
        assert services["registry"].get_all() == []

    def test_register_signature_requires_secret(self, services):
        """Requiring signatures without a secret is rejected with 422."""
        response = client.post(
            "/api/webhooks/register",
            json={"name": "Signed", "url": "https://example.com/s", "require_signature": True},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "secret"
        assert services["registry"].get_all() == []

        data = register(secret="whsec_1", require_signature=True)
        assert data["require_signature"] is True
        assert services["registry"].get(data["id"]).require_signature is True

    def test_list_get_delete(self, services):
        """Registered webhooks can be listed, fetched and deleted."""
        data = register()

        listing = client.get("/api/webhooks/").json()
        assert listing["total"] == 1

        assert client.get(f"/api/webhooks/{data['id']}").json()["name"] == "Orders"
        assert client.delete(f"/api/webhooks/{data['id']}").status_code == 200
        assert client.get(f"/api/webhooks/{data['id']}").status_code == 404
        assert client.delete(f"/api/webhooks/{data['id']}").status_code == 404

    def test_enable_disable(self, services):
        """Webhooks can be toggled."""
        data = register()

        assert client.post(f"/api/webhooks/{data['id']}/disable").status_code == 200
        assert services["registry"].get(data["id"]).is_active is False
        assert client.post(f"/api/webhooks/{data['id']}/enable").status_code == 200
        assert services["registry"].get(data["id"]).is_active is True
        assert client.post("/api/webhooks/missing/enable").status_code == 404


# ============================================================================
# Testing and Dispatch
# ============================================================================

class TestCalls:
    """Tests for test calls and live dispatch."""

    def test_test_webhook(self, services):
        """A test call returns the classified result and logs it."""
        data = register(secret="whsec_1")

        response = client.post(
            f"/api/webhooks/{data['id']}/test", json={"event_type": "user.created"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["response_body"] == {"ok": True}
        assert body["request_headers"]["X-Test"] == "true"
        assert services["store"].query()[0].is_test is True

    def test_test_webhook_without_body(self, services):
        """The request body is optional."""
        data = register()

        assert client.post(f"/api/webhooks/{data['id']}/test").json()["status"] == "success"

    def test_failed_test_is_not_an_http_error(self, services):
        """A failing endpoint is reported in the body with a 200."""
        data = register(url="https://example.com/broken")

        body = client.post(f"/api/webhooks/{data['id']}/test").json()

        assert body["status"] == "failed"
        assert body["status_code"] == 500

    def test_test_unknown_webhook(self, services):
        """Testing an unknown webhook is a 404."""
        assert client.post("/api/webhooks/missing/test").status_code == 404

    def test_batch(self, services):
        """Batch tests report per-item outcomes."""
        ok = register()

        response = client.post(
            "/api/webhooks/test/batch", json={"webhook_ids": [ok["id"], "missing"]}
        )

        items = response.json()
        assert response.status_code == 200
        assert items[0]["result"]["status"] == "success"
        assert items[1]["error"] is not None

    def test_dispatch(self, services):
        """Live events reach subscribers and refresh monitoring."""
        register(event_types=["order.created"])
        register(name="Users", url="https://example.com/users", event_types=["user.created"])

        items = client.post(
            "/api/webhooks/dispatch", json={"event_type": "order.created", "data": {"id": 1}}
        ).json()

        assert len(items) == 1
        assert items[0]["error"] is None
        assert items[0]["result"]["is_test"] is False
        assert services["aggregator"].snapshot().refresh_count >= 1


# ============================================================================
# Stats, Logs and Monitoring
# ============================================================================

class TestMonitoringEndpoints:
    """Tests for stats, health, logs and monitoring routes."""

    def test_health(self, services):
        """Health is available per webhook and for all webhooks."""
        data = register()
        client.post(f"/api/webhooks/{data['id']}/test")

        single = client.get(f"/api/webhooks/{data['id']}/health").json()
        assert single["total_triggers"] == 1
        assert single["health_score"] == 100
        assert single["status"] == "healthy"

        everything = client.get("/api/webhooks/health").json()
        assert [i["id"] for i in everything] == [data["id"]]
        assert everything[0]["result"]["webhook_id"] == data["id"]
        assert everything[0]["error"] is None

        assert client.get("/api/webhooks/missing/health").status_code == 404

    def test_stats(self, services):
        """Summary and window stats are served."""
        data = register()
        client.post(f"/api/webhooks/{data['id']}/test")

        summary = client.get("/api/webhooks/stats").json()
        assert summary["total_webhooks"] == 1
        assert summary["windows"]["24h"]["total"] == 1

        window = client.get("/api/webhooks/stats/7d").json()
        assert window["success_rate"] == 100

        assert client.get("/api/webhooks/stats/2h").status_code == 422

    def test_logs_and_export(self, services):
        """Logs can be filtered and exported."""
        ok = register()
        bad = register(name="Broken", url="https://example.com/broken")
        client.post(f"/api/webhooks/{ok['id']}/test")
        client.post(f"/api/webhooks/{bad['id']}/test")

        failed = client.get("/api/webhooks/logs", params={"status": "failed"}).json()
        assert [e["webhook_id"] for e in failed] == [bad["id"]]

        export = client.get("/api/webhooks/logs/export", params={"fmt": "csv"})
        assert export.status_code == 200
        assert export.headers["content-type"].startswith("text/csv")
        assert export.text.count("\n") == 3

        assert client.get("/api/webhooks/logs/export", params={"fmt": "xml"}).status_code == 422

    def test_monitoring(self, services):
        """Snapshot and manual refresh are exposed."""
        register()

        refreshed = client.post("/api/webhooks/monitoring/refresh").json()
        assert refreshed["skipped"] is False
        assert refreshed["evaluated"] == 1

        snapshot = client.get("/api/webhooks/monitoring/snapshot").json()
        assert snapshot["total_webhooks"] == 1
        assert snapshot["active_alerts"] == 1

    def test_log_store_outage(self, services):
        """Store failures become 503 instead of zeroed stats."""
        register()
        broken = MagicMock()
        broken.count.side_effect = LogStoreError("count")
        broken.query.side_effect = LogStoreError("query")
        set_log_store(broken)

        assert client.get("/api/webhooks/stats").status_code == 503
        assert client.get("/api/webhooks/logs").status_code == 503

        # Bulk health reports the outage per webhook instead of failing outright
        health = client.get("/api/webhooks/health")
        assert health.status_code == 200
        assert health.json()[0]["result"] is None
        assert "Log store" in health.json()[0]["error"]


class SlowLogStore(InMemoryLogStore):
    """Blocks the calling thread on every read."""

    def query(self, log_filter=None, limit=None):
        time.sleep(0.2)
        return super().query(log_filter, limit=limit)


class TestEventLoop:
    """Log reads in handlers run off the event loop."""

    @pytest.mark.asyncio
    async def test_slow_log_reads_do_not_block(self, services):
        """Other coroutines keep running while a handler waits on the store."""
        set_log_store(SlowLogStore())
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            stats = await get_window_stats(TimeWindow.DAY, webhook_id=None)
            logs = await get_logs(
                webhook_id=None, status=None, event_type=None, is_test=None,
                since=None, until=None, limit=10,
            )
        finally:
            task.cancel()

        assert stats.total == 0
        assert logs == []
        # Two 200ms reads on the loop thread would leave no room to tick
        assert ticks >= 10
