"""Interactive webhook testing.

Sends a signed test payload to an endpoint, retrying only connection
and timeout failures, and records the outcome in the delivery log.
Bulk tests fan out with bounded parallelism and report per-endpoint
results without letting one failure abort the rest.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .caller import WebhookCaller
from .exceptions import (
    DeliveryError,
    DeliveryTimeoutError,
    LogStoreError,
    WebhookError,
)
from .models import (
    BatchItemResult,
    CallOptions,
    DeliveryEvent,
    DeliveryStatus,
    TestResult,
    WebhookEndpoint,
    WebhookPayload,
    utcnow,
)
from .registry import WebhookRegistry, get_registry
from .retry import RetryPolicy, SleepFn
from .security import sanitize_error_message
from ..core.settings import settings_manager
from ..monitoring.log_store import LogStore, get_log_store

logger = logging.getLogger(__name__)

DEFAULT_TEST_EVENT = "webhook.test"


def create_test_payload(
    event_type: str,
    webhook_id: str,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    custom_data: Optional[Dict[str, Any]] = None,
) -> WebhookPayload:
    """Build a sample payload for an event type.

    Known event types get representative sample data; anything else gets
    a generic test message. ``custom_data`` is merged over the sample.
    """
    now = utcnow().isoformat()
    custom_data = custom_data or {}
    org = organization_id or "test-org-123"
    user = user_id or "test-user-123"

    samples: Dict[str, Dict[str, Any]] = {
        "user.created": {
            "user_id": user,
            "email": "test@example.com",
            "full_name": "Test User",
            "organization_id": org,
            "created_at": now,
        },
        "user.updated": {
            "user_id": user,
            "changes": {"full_name": "Updated Test User", "last_login_at": now},
            "organization_id": org,
            "updated_at": now,
        },
        "task.created": {
            "task_id": "test-task-123",
            "title": "Test Task",
            "status": "pending",
            "priority": "medium",
            "assigned_to": user,
            "organization_id": org,
            "created_at": now,
        },
        "task.completed": {
            "task_id": "test-task-123",
            "completed_by": user,
            "completed_at": now,
            "organization_id": org,
        },
        "feature.enabled": {
            "feature_id": "test-feature-123",
            "feature_name": "Test Feature",
            "organization_id": org,
            "enabled_by": user,
            "enabled_at": now,
        },
    }

    data = samples.get(event_type, {
        "message": "This is a test webhook call from Hookwatch",
        "test": True,
        "webhook_id": webhook_id,
        "test_timestamp": now,
        "environment": "test",
    })

    return WebhookPayload(
        event_type=event_type,
        webhook_id=webhook_id,
        timestamp=now,
        organization_id=organization_id,
        user_id=user_id,
        data={**data, **custom_data},
    )


class WebhookTester:
    """Runs test calls against endpoints.

    Example:
        tester = WebhookTester(registry, log_store)
        result = await tester.test_webhook("wh_123", retry_attempts=2)
        if result.status == DeliveryStatus.TIMEOUT:
            ...
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        log_store: Optional[LogStore] = None,
        caller: Optional[WebhookCaller] = None,
        concurrency: int = 4,
        sleep: SleepFn = asyncio.sleep,
    ):
        """Initialize tester.

        Args:
            registry: Source of endpoint configurations.
            log_store: Where test outcomes are recorded (optional).
            caller: Single-attempt caller.
            concurrency: Worker width for bulk tests.
            sleep: Backoff sleep (injectable for tests).
        """
        self.registry = registry
        self.log_store = log_store
        self.caller = caller or WebhookCaller()
        self.concurrency = max(1, concurrency)
        self._sleep = sleep

    async def test_endpoint(
        self,
        url: str,
        payload: WebhookPayload,
        secret: Optional[str] = None,
        options: Optional[CallOptions] = None,
        retry_attempts: int = 0,
        require_signature: bool = False,
    ) -> TestResult:
        """Call an endpoint with the test retry policy and classify the outcome.

        Connection failures and timeouts are retried up to
        ``retry_attempts`` times with exponential backoff. A completed
        non-2xx response is final.

        Raises:
            WebhookValidationError: Before any network call, on a bad URL
                or a missing secret when ``require_signature`` is set.
        """
        options = options or CallOptions()
        policy = RetryPolicy.for_tests(retry_attempts)
        attempts = 0

        async def attempt() -> TestResult:
            nonlocal attempts
            attempts += 1
            return await self.caller.call(
                url,
                payload,
                secret=secret,
                options=options,
                require_signature=require_signature,
            )

        try:
            result = await policy.run(attempt, sleep=self._sleep)
        except DeliveryError as e:
            status = (
                DeliveryStatus.TIMEOUT
                if isinstance(e, DeliveryTimeoutError)
                else DeliveryStatus.FAILED
            )
            message = sanitize_error_message(str(e), (secret,) if secret else ())
            logger.warning(
                f"Test call to webhook {payload.webhook_id} ended with {status.value}: {message}"
            )
            return TestResult(
                status=status,
                response_time_ms=e.response_time_ms,
                error_message=message,
                request_headers=e.request_headers,
                payload_size=e.payload_size,
                attempts=attempts,
            )

        return result.model_copy(update={"attempts": attempts})

    async def test_webhook(
        self,
        webhook_id: str,
        event_type: str = DEFAULT_TEST_EVENT,
        data: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        follow_redirects: bool = True,
    ) -> TestResult:
        """Test a registered endpoint and log the result.

        Raises:
            EndpointNotFoundError: Unknown webhook ID.
            WebhookValidationError: The stored URL is invalid, or the
                endpoint requires a signature and has no secret.
        """
        endpoint = self.registry.require(webhook_id)
        return await self._test_registered(
            endpoint,
            event_type=event_type,
            data=data,
            organization_id=organization_id,
            user_id=user_id,
            timeout_ms=timeout_ms,
            retry_attempts=retry_attempts,
            follow_redirects=follow_redirects,
        )

    async def _test_registered(
        self,
        endpoint: WebhookEndpoint,
        event_type: str = DEFAULT_TEST_EVENT,
        data: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        follow_redirects: bool = True,
    ) -> TestResult:
        payload = create_test_payload(
            event_type, endpoint.id, organization_id, user_id, data
        )
        options = CallOptions(
            timeout_ms=timeout_ms or endpoint.timeout_ms,
            follow_redirects=follow_redirects,
            is_test=True,
        )
        attempts = endpoint.retry_attempts if retry_attempts is None else retry_attempts

        triggered_at = utcnow()
        result = await self.test_endpoint(
            endpoint.url,
            payload,
            secret=endpoint.secret,
            options=options,
            retry_attempts=attempts,
            require_signature=endpoint.require_signature,
        )
        await self._record(endpoint.id, event_type, result, triggered_at)
        return result

    async def _record(self, webhook_id, event_type, result, triggered_at) -> None:
        if self.log_store is None:
            return
        event = DeliveryEvent.from_result(
            webhook_id, event_type, result, is_test=True, triggered_at=triggered_at
        )
        try:
            await asyncio.to_thread(self.log_store.append, event)
        except LogStoreError as e:
            # The caller still gets the test outcome
            logger.error(f"Failed to log webhook test for {webhook_id}: {e}")

    async def test_many(
        self,
        webhook_ids: List[str],
        event_type: str = DEFAULT_TEST_EVENT,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[BatchItemResult]:
        """Test several endpoints with bounded parallelism.

        Best-effort: each item carries either a result or an error, and
        the output order matches ``webhook_ids``.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(webhook_id: str) -> BatchItemResult:
            async with semaphore:
                try:
                    result = await self.test_webhook(webhook_id, event_type=event_type, data=data)
                    return BatchItemResult(id=webhook_id, result=result)
                except WebhookError as e:
                    return BatchItemResult(id=webhook_id, error=sanitize_error_message(str(e)))
                except Exception as e:
                    logger.exception(f"Unexpected error testing webhook {webhook_id}")
                    return BatchItemResult(
                        id=webhook_id,
                        error=sanitize_error_message(f"{type(e).__name__}: {e}"),
                    )

        results = await asyncio.gather(*(run_one(w) for w in webhook_ids))
        failed = sum(1 for r in results if not r.succeeded)
        logger.info(f"Bulk test finished: {len(results) - failed} ok, {failed} errored")
        return list(results)


# Global singleton tester instance
_tester: Optional[WebhookTester] = None


def get_tester() -> WebhookTester:
    """Get the global webhook tester instance."""
    global _tester
    if _tester is None:
        settings = settings_manager.get()
        _tester = WebhookTester(
            get_registry(),
            log_store=get_log_store(),
            caller=WebhookCaller(user_agent=settings.user_agent),
            concurrency=settings.batch_concurrency,
        )
    return _tester


def set_tester(tester: Optional[WebhookTester]) -> None:
    """Replace the global tester (None resets it)."""
    global _tester
    _tester = tester
