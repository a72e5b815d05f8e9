"""Tests for interactive webhook testing."""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from hookwatch.monitoring.log_store import DeliveryLogFilter, InMemoryLogStore
from hookwatch.webhooks.caller import WebhookCaller
from hookwatch.webhooks.exceptions import EndpointNotFoundError, LogStoreError, WebhookValidationError
from hookwatch.webhooks.models import DeliveryStatus, WebhookEndpoint
from hookwatch.webhooks.registry import WebhookRegistry
from hookwatch.webhooks.tester import WebhookTester, create_test_payload


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class ScriptedTransport:
    """Answers requests from a list of responses or exceptions, in order."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


def connect_error():
    return httpx.ConnectError("connection refused")


def build(script, log_store=None, **endpoint_fields):
    registry = WebhookRegistry()
    endpoint = WebhookEndpoint(
        id="wh_1", name="Orders", url="https://example.com/hook", secret="s3cr3t",
        **endpoint_fields,
    )
    registry.register(endpoint)
    sleep = FakeSleep()
    tester = WebhookTester(
        registry,
        log_store=log_store,
        caller=WebhookCaller(transport=httpx.MockTransport(script)),
        sleep=sleep,
    )
    return tester, sleep


class TestCreateTestPayload:
    """Tests for sample payload construction."""

    def test_known_event_type(self):
        """Known event types get representative data."""
        payload = create_test_payload("user.created", "wh_1", organization_id="org_1")

        assert payload.data["email"] == "test@example.com"
        assert payload.data["organization_id"] == "org_1"
        assert payload.webhook_id == "wh_1"

    def test_unknown_event_type(self):
        """Anything else gets a generic test message."""
        payload = create_test_payload("custom.thing", "wh_1")

        assert payload.data["test"] is True
        assert payload.data["webhook_id"] == "wh_1"

    def test_custom_data_overrides(self):
        """Custom data is merged over the sample."""
        payload = create_test_payload("task.created", "wh_1", custom_data={"title": "Mine"})

        assert payload.data["title"] == "Mine"
        assert payload.data["task_id"] == "test-task-123"


class TestWebhookTester:
    """Tests for WebhookTester."""

    @pytest.mark.asyncio
    async def test_success_is_logged_as_test(self):
        """A passing test is returned and logged with is_test set."""
        store = InMemoryLogStore()
        tester, _ = build(ScriptedTransport(httpx.Response(200, json={"ok": True})), store)

        result = await tester.test_webhook("wh_1", event_type="user.created")

        assert result.status == DeliveryStatus.SUCCESS
        assert result.attempts == 1
        logged = store.query()
        assert len(logged) == 1
        assert logged[0].is_test is True
        assert logged[0].event_type == "user.created"
        assert logged[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_retries_network_errors(self):
        """Connection failures are retried with exponential backoff."""
        script = ScriptedTransport(connect_error(), connect_error(), httpx.Response(200))
        tester, sleep = build(script)

        result = await tester.test_webhook("wh_1", retry_attempts=3)

        assert result.status == DeliveryStatus.SUCCESS
        assert result.attempts == 3
        assert sleep.delays == [2, 4]
        assert len(script.requests) == 3

    @pytest.mark.asyncio
    async def test_non_2xx_is_not_retried(self):
        """A completed error response is final on the test path."""
        script = ScriptedTransport(httpx.Response(500))
        tester, sleep = build(script)

        result = await tester.test_webhook("wh_1", retry_attempts=3)

        assert result.status == DeliveryStatus.FAILED
        assert result.status_code == 500
        assert result.attempts == 1
        assert sleep.delays == []
        assert len(script.requests) == 1

    @pytest.mark.asyncio
    async def test_exhausted_network_retries(self):
        """Persistent connection failures end as failed with every attempt counted."""
        store = InMemoryLogStore()
        tester, _ = build(ScriptedTransport(connect_error()), store)

        result = await tester.test_webhook("wh_1", retry_attempts=2)

        assert result.status == DeliveryStatus.FAILED
        assert result.attempts == 3
        assert "connection refused" in result.error_message
        assert store.query()[0].retry_count == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        """A hanging endpoint is classified as a timeout."""
        async def hang(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        store = InMemoryLogStore()
        tester, _ = build(hang, store)

        result = await tester.test_webhook("wh_1", timeout_ms=50)

        assert result.status == DeliveryStatus.TIMEOUT
        assert result.error_message == "Request timeout after 50ms"
        assert store.count(DeliveryLogFilter(statuses=[DeliveryStatus.TIMEOUT])) == 1

    @pytest.mark.asyncio
    async def test_endpoint_retry_default(self):
        """Without an explicit value the endpoint's retry_attempts applies."""
        script = ScriptedTransport(connect_error(), httpx.Response(200))
        tester, _ = build(script, retry_attempts=1)

        result = await tester.test_webhook("wh_1")

        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_unknown_webhook(self):
        """Unknown IDs raise EndpointNotFoundError."""
        tester, _ = build(ScriptedTransport(httpx.Response(200)))

        with pytest.raises(EndpointNotFoundError):
            await tester.test_webhook("missing")

    @pytest.mark.asyncio
    async def test_log_failure_does_not_hide_result(self):
        """A failing log write is logged; the caller still gets the outcome."""
        broken = MagicMock()
        broken.append.side_effect = LogStoreError("append")
        tester, _ = build(ScriptedTransport(httpx.Response(200)), broken)

        result = await tester.test_webhook("wh_1")

        assert result.status == DeliveryStatus.SUCCESS
        broken.append.assert_called_once()

    @pytest.mark.asyncio
    async def test_required_signature_without_secret(self):
        """Endpoints that require signing are refused before any request is sent."""
        script = ScriptedTransport(httpx.Response(200))
        registry = WebhookRegistry()
        registry.register(WebhookEndpoint(
            id="wh_1", name="Orders", url="https://example.com/hook", require_signature=True
        ))
        store = InMemoryLogStore()
        tester = WebhookTester(
            registry,
            log_store=store,
            caller=WebhookCaller(transport=httpx.MockTransport(script)),
        )

        with pytest.raises(WebhookValidationError) as exc_info:
            await tester.test_webhook("wh_1")

        assert exc_info.value.field == "secret"
        assert script.requests == []
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_required_signature_with_secret(self):
        """A signing endpoint with a secret is called and signed as usual."""
        script = ScriptedTransport(httpx.Response(200))
        tester, _ = build(script, require_signature=True)

        result = await tester.test_webhook("wh_1")

        assert result.status == DeliveryStatus.SUCCESS
        assert script.requests[0].headers["X-Signature"].startswith("sha256=")


class TestTestMany:
    """Tests for bulk testing."""

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        """One bad ID does not stop the others and order is preserved."""
        registry = WebhookRegistry()
        for webhook_id in ("wh_a", "wh_b"):
            registry.register(WebhookEndpoint(
                id=webhook_id, name=webhook_id, url=f"https://example.com/{webhook_id}"
            ))

        def handler(request):
            return httpx.Response(200 if request.url.path == "/wh_a" else 503)

        tester = WebhookTester(
            registry,
            log_store=InMemoryLogStore(),
            caller=WebhookCaller(transport=httpx.MockTransport(handler)),
            concurrency=2,
        )

        results = await tester.test_many(["wh_a", "missing", "wh_b"])

        assert [r.id for r in results] == ["wh_a", "missing", "wh_b"]
        assert results[0].result.status == DeliveryStatus.SUCCESS
        assert results[1].succeeded is False
        assert "missing" in results[1].error
        assert results[2].result.status == DeliveryStatus.FAILED
        assert results[2].succeeded is True
