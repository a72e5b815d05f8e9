"""Webhook API routes.

FastAPI router providing endpoints for webhook management, test calls,
live dispatch, delivery logs and health monitoring.
"""

from datetime import datetime
from typing import List, Optional
import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from ..core.settings import settings_manager
from ..monitoring.aggregator import get_aggregator
from ..monitoring.health import HealthEvaluator
from ..monitoring.log_store import DeliveryLogFilter, get_log_store
from ..monitoring.models import (
    HealthItemResult,
    HealthMetrics,
    MonitoringSnapshot,
    RefreshResult,
    TimeWindow,
    WebhookStats,
    WindowStats,
)
from ..monitoring.stats import StatsAggregator
from .caller import validate_webhook_url
from .dispatcher import get_dispatcher
from .exceptions import EndpointNotFoundError, LogStoreError, WebhookValidationError
from .models import (
    BatchItemResult,
    BatchTestRequest,
    DeliveryEvent,
    DeliveryStatus,
    DispatchItemResult,
    DispatchRequest,
    TestResult,
    TestWebhookRequest,
    WebhookEndpoint,
    WebhookListResponse,
    WebhookRegistrationRequest,
    WebhookView,
)
from .registry import get_registry
from .tester import get_tester

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

EXPORT_MEDIA_TYPES = {"csv": "text/csv", "json": "application/json"}


def _stats() -> StatsAggregator:
    return StatsAggregator(get_log_store())


def _not_found(e: EndpointNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _unavailable(e: LogStoreError) -> HTTPException:
    logger.error(f"Delivery log unavailable: {e}")
    return HTTPException(status_code=503, detail="Delivery log unavailable")


def _invalid(e: WebhookValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})


# ============================================================================
# Webhook Registration Endpoints
# ============================================================================

@router.post("/register", response_model=WebhookView)
async def register_webhook(request: WebhookRegistrationRequest):
    """Register a new webhook endpoint.

    The URL is validated up front; the secret is stored but never
    returned by any endpoint.
    """
    try:
        validate_webhook_url(request.url)
        if request.require_signature and not request.secret:
            raise WebhookValidationError(
                "A signing secret is required for this endpoint", field="secret"
            )
    except WebhookValidationError as e:
        raise _invalid(e)

    settings = settings_manager.get()
    endpoint = WebhookEndpoint(
        name=request.name,
        url=request.url,
        secret=request.secret,
        require_signature=request.require_signature,
        is_active=request.is_active,
        feature_id=request.feature_id,
        feature_name=request.feature_name,
        event_types=request.event_types,
        timeout_ms=request.timeout_ms or settings.default_timeout_ms,
        retry_attempts=(
            settings.default_retry_attempts
            if request.retry_attempts is None
            else request.retry_attempts
        ),
        metadata=request.metadata,
    )

    registered = get_registry().register(endpoint)
    return WebhookView.from_endpoint(registered)


@router.get("/", response_model=WebhookListResponse)
async def list_webhooks():
    """List all registered webhooks."""
    webhooks = [WebhookView.from_endpoint(e) for e in get_registry().get_all()]
    return WebhookListResponse(webhooks=webhooks, total=len(webhooks))


# ============================================================================
# Stats, Logs and Monitoring Endpoints
# ============================================================================

@router.get("/health", response_model=List[HealthItemResult])
async def get_all_health():
    """Health metrics for every registered webhook, computed fresh.

    Best-effort: each item carries either metrics or an error, so one
    endpoint's failed log read does not hide the others.
    """
    evaluator = HealthEvaluator(_stats())
    return await evaluator.evaluate_many(
        get_registry().get_all(),
        concurrency=settings_manager.get().batch_concurrency,
    )


@router.get("/stats", response_model=WebhookStats)
async def get_stats():
    """Dashboard summary across all webhooks."""
    try:
        return await asyncio.to_thread(_stats().summary, get_registry().get_all())
    except LogStoreError as e:
        raise _unavailable(e)


@router.get("/stats/{window}", response_model=WindowStats)
async def get_window_stats(window: TimeWindow, webhook_id: Optional[str] = None):
    """Totals and rates over one trailing window (1h, 6h, 24h, 7d, 30d)."""
    try:
        return await asyncio.to_thread(_stats().window_stats, window, webhook_id)
    except LogStoreError as e:
        raise _unavailable(e)


def _log_filter(
    webhook_id: Optional[str],
    status: Optional[List[DeliveryStatus]],
    event_type: Optional[str],
    is_test: Optional[bool],
    since: Optional[datetime],
    until: Optional[datetime],
) -> DeliveryLogFilter:
    return DeliveryLogFilter(
        webhook_id=webhook_id,
        statuses=status or None,
        event_type=event_type,
        is_test=is_test,
        triggered_from=since,
        triggered_before=until,
    )


@router.get("/logs", response_model=List[DeliveryEvent])
async def get_logs(
    webhook_id: Optional[str] = None,
    status: Optional[List[DeliveryStatus]] = Query(None),
    event_type: Optional[str] = None,
    is_test: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Delivery log, newest first."""
    log_filter = _log_filter(webhook_id, status, event_type, is_test, since, until)
    try:
        return await asyncio.to_thread(get_log_store().query, log_filter, limit)
    except LogStoreError as e:
        raise _unavailable(e)


@router.get("/logs/export")
async def export_logs(
    fmt: str = Query("csv", pattern="^(csv|json)$"),
    webhook_id: Optional[str] = None,
    status: Optional[List[DeliveryStatus]] = Query(None),
    event_type: Optional[str] = None,
    is_test: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
):
    """Download the delivery log as CSV or JSON."""
    log_filter = _log_filter(webhook_id, status, event_type, is_test, since, until)
    try:
        content = await asyncio.to_thread(_stats().export_events, log_filter, fmt)
    except LogStoreError as e:
        raise _unavailable(e)

    filename = f"webhook-logs-{datetime.now().strftime('%Y-%m-%d')}.{fmt}"
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/monitoring/snapshot", response_model=MonitoringSnapshot)
async def get_monitoring_snapshot():
    """Latest snapshot held by the monitoring aggregator."""
    return get_aggregator().snapshot()


@router.post("/monitoring/refresh", response_model=RefreshResult)
async def refresh_monitoring():
    """Recompute monitoring metrics now (skipped if a refresh is running)."""
    return await get_aggregator().refresh()


# ============================================================================
# Test and Dispatch Endpoints
# ============================================================================

@router.post("/test/batch", response_model=List[BatchItemResult])
async def test_webhooks_batch(request: BatchTestRequest):
    """Test several webhooks at once; each item reports its own outcome."""
    return await get_tester().test_many(
        request.webhook_ids, event_type=request.event_type, data=request.data
    )


@router.post("/dispatch", response_model=List[DispatchItemResult])
async def dispatch_event(request: DispatchRequest):
    """Deliver a live event to every subscribed webhook.

    Each item carries the logged delivery or the error for that webhook.
    """
    return await get_dispatcher().dispatch(
        request.event_type,
        request.data,
        organization_id=request.organization_id,
        user_id=request.user_id,
    )


# ============================================================================
# Per-Webhook Endpoints
# ============================================================================

@router.get("/{webhook_id}", response_model=WebhookView)
async def get_webhook(webhook_id: str):
    """Get a specific webhook by ID."""
    try:
        return WebhookView.from_endpoint(get_registry().require(webhook_id))
    except EndpointNotFoundError as e:
        raise _not_found(e)


@router.delete("/{webhook_id}")
async def delete_webhook(webhook_id: str):
    """Delete a webhook registration. Its delivery log is kept."""
    if not get_registry().unregister(webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")

    return {"status": "success", "message": "Webhook deleted"}


@router.post("/{webhook_id}/enable")
async def enable_webhook(webhook_id: str):
    """Enable a webhook."""
    if not get_registry().set_active(webhook_id, True):
        raise HTTPException(status_code=404, detail="Webhook not found")

    return {"status": "success", "message": "Webhook enabled"}


@router.post("/{webhook_id}/disable")
async def disable_webhook(webhook_id: str):
    """Disable a webhook."""
    if not get_registry().set_active(webhook_id, False):
        raise HTTPException(status_code=404, detail="Webhook not found")

    return {"status": "success", "message": "Webhook disabled"}


@router.post("/{webhook_id}/test", response_model=TestResult)
async def test_webhook(webhook_id: str, request: Optional[TestWebhookRequest] = None):
    """Send a signed test payload to a webhook.

    The outcome (success, failed or timeout) is returned in the body;
    only an unknown ID or an invalid stored URL is an HTTP error.
    """
    request = request or TestWebhookRequest()
    try:
        return await get_tester().test_webhook(
            webhook_id,
            event_type=request.event_type,
            data=request.data,
            organization_id=request.organization_id,
            user_id=request.user_id,
            timeout_ms=request.timeout_ms,
            retry_attempts=request.retry_attempts,
            follow_redirects=request.follow_redirects,
        )
    except EndpointNotFoundError as e:
        raise _not_found(e)
    except WebhookValidationError as e:
        raise _invalid(e)


@router.get("/{webhook_id}/health", response_model=HealthMetrics)
async def get_webhook_health(webhook_id: str):
    """Health metrics for one webhook over the trailing 7 days."""
    try:
        endpoint = get_registry().require(webhook_id)
        return await asyncio.to_thread(HealthEvaluator(_stats()).evaluate, endpoint)
    except EndpointNotFoundError as e:
        raise _not_found(e)
    except LogStoreError as e:
        raise _unavailable(e)
