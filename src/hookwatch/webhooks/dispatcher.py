"""Outbound webhook dispatcher.

Sends live events to every subscribed endpoint, retrying failed
deliveries (non-2xx answers included) with exponential backoff, and
appends one delivery event per endpoint to the log.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .caller import WebhookCaller
from .exceptions import (
    ApplicationError,
    DeliveryError,
    DeliveryTimeoutError,
    LogStoreError,
    WebhookError,
)
from .models import (
    CallOptions,
    DeliveryEvent,
    DeliveryStatus,
    DispatchItemResult,
    TestResult,
    WebhookEndpoint,
    WebhookPayload,
    utcnow,
)
from .registry import WebhookRegistry, get_registry
from .retry import DELIVERY_RETRY_ON, BackoffFn, RetryPolicy, SleepFn, exponential_backoff
from .security import sanitize_error_message
from ..core.settings import settings_manager
from ..monitoring.aggregator import get_aggregator
from ..monitoring.log_store import LogStore, get_log_store

logger = logging.getLogger(__name__)

DeliveryListener = Callable[[DeliveryEvent], Union[None, Awaitable[None]]]


class WebhookDispatcher:
    """Dispatches events to registered endpoints.

    Features:
    - Async HTTP delivery with a hard per-attempt deadline
    - Exponential backoff retry on network errors, timeouts and non-2xx
    - Concurrent fan-out with bounded width
    - Delivery logging and an optional listener for each logged event

    Example:
        dispatcher = WebhookDispatcher(registry, log_store)
        items = await dispatcher.dispatch("order.created", {"order_id": "123"})
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        log_store: LogStore,
        caller: Optional[WebhookCaller] = None,
        max_retries: int = 3,
        backoff: BackoffFn = exponential_backoff,
        concurrency: int = 4,
        sleep: SleepFn = asyncio.sleep,
        on_delivery: Optional[DeliveryListener] = None,
    ):
        """Initialize dispatcher.

        Args:
            registry: Source of subscribed endpoints.
            log_store: Where delivery events are appended.
            caller: Single-attempt caller.
            max_retries: Retries per delivery when the endpoint does not
                set its own ``retry_attempts``.
            backoff: Delay function for retries.
            concurrency: Maximum simultaneous deliveries.
            sleep: Backoff sleep (injectable for tests).
            on_delivery: Called with every logged DeliveryEvent.
        """
        self.registry = registry
        self.log_store = log_store
        self.caller = caller or WebhookCaller()
        self.max_retries = max_retries
        self.backoff = backoff
        self.concurrency = max(1, concurrency)
        self.on_delivery = on_delivery
        self._sleep = sleep

    async def dispatch(
        self,
        event_type: str,
        data: Dict[str, Any],
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[DispatchItemResult]:
        """Deliver an event to all subscribed endpoints.

        Best-effort: one endpoint's failure never aborts the others.

        Returns:
            One item per subscribed endpoint, in registry order, carrying
            either the logged DeliveryEvent or an error. An error means
            the delivery could not be made or could not be logged.
        """
        endpoints = self.registry.get_for_event(event_type)

        if not endpoints:
            logger.debug(f"No webhooks registered for event: {event_type}")
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(endpoint: WebhookEndpoint) -> DispatchItemResult:
            async with semaphore:
                try:
                    event = await self.deliver(
                        endpoint, event_type, data, organization_id, user_id
                    )
                    return DispatchItemResult(id=endpoint.id, result=event)
                except WebhookError as e:
                    message = sanitize_error_message(str(e), _secrets(endpoint))
                    logger.error(f"Delivery to {endpoint.name} failed: {message}")
                    return DispatchItemResult(id=endpoint.id, error=message)
                except Exception as e:
                    logger.exception(f"Unexpected error delivering to {endpoint.name}")
                    return DispatchItemResult(
                        id=endpoint.id,
                        error=sanitize_error_message(
                            f"{type(e).__name__}: {e}", _secrets(endpoint)
                        ),
                    )

        return list(await asyncio.gather(*(run_one(e) for e in endpoints)))

    async def deliver(
        self,
        endpoint: WebhookEndpoint,
        event_type: str,
        data: Dict[str, Any],
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> DeliveryEvent:
        """Deliver one event to one endpoint with the delivery retry policy."""
        payload = WebhookPayload(
            event_type=event_type,
            webhook_id=endpoint.id,
            organization_id=organization_id,
            user_id=user_id,
            data=data,
        )
        options = CallOptions(timeout_ms=endpoint.timeout_ms, is_test=False)
        retries = endpoint.retry_attempts or self.max_retries
        policy = RetryPolicy(attempts=retries, retry_on=DELIVERY_RETRY_ON, backoff=self.backoff)
        attempts = 0

        async def attempt() -> TestResult:
            nonlocal attempts
            attempts += 1
            result = await self.caller.call(
                endpoint.url,
                payload,
                secret=endpoint.secret,
                options=options,
                require_signature=endpoint.require_signature,
            )
            if not result.ok:
                raise ApplicationError(
                    result.status_code or 0,
                    httpx.codes.get_reason_phrase(result.status_code or 0),
                    result=result,
                    response_time_ms=result.response_time_ms,
                    payload_size=result.payload_size,
                    request_headers=result.request_headers,
                )
            return result

        triggered_at = utcnow()
        try:
            result = await policy.run(attempt, sleep=self._sleep)
            logger.info(
                f"Webhook delivered: {event_type} -> {endpoint.name} (attempt {attempts})"
            )
        except ApplicationError as e:
            result = e.result.model_copy(update={"attempts": attempts})
            logger.error(
                f"Webhook delivery failed after {attempts} attempts for {endpoint.name}: {e}"
            )
        except DeliveryError as e:
            result = TestResult(
                status=(
                    DeliveryStatus.TIMEOUT
                    if isinstance(e, DeliveryTimeoutError)
                    else DeliveryStatus.FAILED
                ),
                response_time_ms=e.response_time_ms,
                error_message=sanitize_error_message(str(e), _secrets(endpoint)),
                request_headers=e.request_headers,
                payload_size=e.payload_size,
            )
            logger.error(
                f"Webhook delivery failed after {attempts} attempts for "
                f"{endpoint.name}: {result.error_message}"
            )

        result = result.model_copy(update={"attempts": attempts})
        event = DeliveryEvent.from_result(
            endpoint.id, event_type, result, is_test=False, triggered_at=triggered_at
        )
        await self._record(event)
        return event

    async def _record(self, event: DeliveryEvent) -> None:
        try:
            await asyncio.to_thread(self.log_store.append, event)
        except LogStoreError as e:
            logger.error(f"Failed to log delivery {event.id} for {event.webhook_id}: {e}")
            raise

        if self.on_delivery is not None:
            outcome = self.on_delivery(event)
            if inspect.isawaitable(outcome):
                await outcome


def _secrets(endpoint: WebhookEndpoint) -> tuple:
    return (endpoint.secret,) if endpoint.secret else ()


# Global singleton dispatcher instance
_dispatcher: Optional[WebhookDispatcher] = None


def get_dispatcher() -> WebhookDispatcher:
    """Get the global webhook dispatcher instance.

    Every logged delivery is pushed to the monitoring aggregator.
    """
    global _dispatcher
    if _dispatcher is None:
        settings = settings_manager.get()
        _dispatcher = WebhookDispatcher(
            get_registry(),
            get_log_store(),
            caller=WebhookCaller(user_agent=settings.user_agent),
            max_retries=settings.delivery_retry_attempts,
            concurrency=settings.batch_concurrency,
            on_delivery=get_aggregator().notify_execution,
        )
    return _dispatcher


def set_dispatcher(dispatcher: Optional[WebhookDispatcher]) -> None:
    """Replace the global dispatcher (None resets it)."""
    global _dispatcher
    _dispatcher = dispatcher
