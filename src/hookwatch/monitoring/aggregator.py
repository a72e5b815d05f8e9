"""Realtime monitoring aggregator.

Keeps the latest HealthMetrics for every registered endpoint and an
overview snapshot, refreshed on a polling interval or whenever a
delivery completes. Subscribers are notified when metrics change and
when alerts appear or clear.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from ..core.settings import HookwatchSettings, settings_manager
from ..webhooks.models import DeliveryEvent, WebhookEndpoint, ensure_utc, utcnow
from ..webhooks.registry import WebhookRegistry, get_registry
from ..webhooks.security import sanitize_error_message
from .health import HealthEvaluator
from .log_store import get_log_store
from .models import (
    HealthMetrics,
    MonitoringSnapshot,
    RefreshResult,
    TimeWindow,
    TopPerformer,
    WindowStats,
)
from .stats import StatsAggregator, percentage, round_half_up

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class MonitoringEvent(str, Enum):
    METRICS_UPDATED = "metrics_updated"
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_RESOLVED = "alert_resolved"
    EXECUTION_COMPLETED = "execution_completed"


def _alert_keys(metrics: Optional[HealthMetrics]) -> Set[Tuple[str, str]]:
    if metrics is None:
        return set()
    return {(a.type.value, a.severity.value) for a in metrics.alerts}


class MonitoringAggregator:
    """Maintains live health metrics for all registered endpoints.

    Features:
    - Periodic refresh on an asyncio task (start/stop lifecycle)
    - Push refresh when a delivery completes
    - Publish/subscribe with sync or async handlers
    - Copy-on-read snapshots

    Example:
        aggregator = MonitoringAggregator(registry, StatsAggregator(log_store))
        aggregator.on("alert_triggered", lambda payload: print(payload["alert"]))
        await aggregator.start()
        ...
        await aggregator.stop()
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        stats: StatsAggregator,
        settings: Optional[HookwatchSettings] = None,
    ):
        """Initialize aggregator.

        Args:
            registry: Source of tracked endpoints.
            stats: Stats aggregator over the delivery log.
            settings: Poll interval, concurrency and snapshot sizes.
        """
        self.registry = registry
        self.stats = stats
        self.settings = settings or settings_manager.get()
        self.evaluator = HealthEvaluator(stats)

        self._metrics: Dict[str, HealthMetrics] = {}
        self._snapshot = MonitoringSnapshot()
        self._handlers: Dict[MonitoringEvent, List[Handler]] = {e: [] for e in MonitoringEvent}
        self._task: Optional[asyncio.Task] = None
        self._refreshing = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # Subscriptions

    def on(self, event: Union[MonitoringEvent, str], handler: Handler) -> None:
        """Subscribe a handler to an event."""
        self._handlers[MonitoringEvent(event)].append(handler)

    def off(self, event: Union[MonitoringEvent, str], handler: Handler) -> bool:
        """Unsubscribe a handler. Returns False if it was not subscribed."""
        handlers = self._handlers[MonitoringEvent(event)]
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    async def _emit(self, event: MonitoringEvent, payload: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Monitoring handler for {event.value} failed")

    # Lifecycle

    async def start(self) -> None:
        """Start periodic refresh. Idempotent."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Monitoring started (every {self.settings.poll_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop periodic refresh and wait for the task to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Monitoring stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Monitoring refresh failed")
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def notify_execution(self, event: DeliveryEvent) -> RefreshResult:
        """Publish a completed delivery and refresh metrics."""
        await self._emit(MonitoringEvent.EXECUTION_COMPLETED, event)
        return await self.refresh()

    # Refresh

    async def refresh(self, now: Optional[datetime] = None) -> RefreshResult:
        """Recompute metrics and the overview snapshot.

        A refresh requested while another is running is skipped, not queued.
        """
        if self._refreshing:
            logger.debug("Monitoring refresh already in progress, skipping")
            return RefreshResult(skipped=True)

        self._refreshing = True
        try:
            return await self._refresh(ensure_utc(now) if now else utcnow())
        finally:
            self._refreshing = False

    async def _evaluate_all(
        self, endpoints: List[WebhookEndpoint], now: datetime
    ) -> List[Any]:
        semaphore = asyncio.Semaphore(self.settings.batch_concurrency)

        async def evaluate(endpoint: WebhookEndpoint) -> Tuple[HealthMetrics, WindowStats]:
            async with semaphore:
                metrics = await asyncio.to_thread(self.evaluator.evaluate, endpoint, now)
                day = await asyncio.to_thread(
                    self.stats.window_stats, TimeWindow.DAY, endpoint.id, None, now
                )
                return metrics, day

        return await asyncio.gather(
            *(evaluate(e) for e in endpoints), return_exceptions=True
        )

    async def _refresh(self, now: datetime) -> RefreshResult:
        endpoints = self.registry.get_all()
        outcomes = await self._evaluate_all(endpoints, now)

        previous = self._metrics
        metrics: Dict[str, HealthMetrics] = {}
        day_stats: Dict[str, WindowStats] = {}
        errors: Dict[str, str] = {}

        for endpoint, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                errors[endpoint.id] = sanitize_error_message(
                    str(outcome), (endpoint.secret,) if endpoint.secret else ()
                )
                logger.error(f"Health evaluation failed for {endpoint.id}: {errors[endpoint.id]}")
                # Keep the last good metrics rather than inventing zeros
                if endpoint.id in previous:
                    metrics[endpoint.id] = previous[endpoint.id]
                continue
            metrics[endpoint.id], day_stats[endpoint.id] = outcome

        trends = self._snapshot.performance_trends
        try:
            trends = await asyncio.to_thread(
                self.stats.trend,
                self.settings.trend_days,
                now,
                [e.id for e in endpoints],
            )
        except Exception as e:
            errors["trend"] = sanitize_error_message(str(e))
            logger.error(f"Trend computation failed: {errors['trend']}")

        active = [e for e in endpoints if e.is_active]
        self._metrics = metrics
        self._snapshot = MonitoringSnapshot(
            generated_at=now,
            total_webhooks=len(endpoints),
            active_webhooks=len(active),
            success_rate_24h=percentage(
                sum(s.successful for s in day_stats.values()),
                sum(s.total for s in day_stats.values()),
            ),
            avg_response_time_24h=self._union_avg_response_time(active, day_stats),
            active_alerts=sum(len(m.alerts) for m in metrics.values()),
            top_performers=self._top_performers(metrics),
            performance_trends=trends,
            metrics=[metrics[k] for k in sorted(metrics)],
            refresh_count=self._snapshot.refresh_count + 1,
            last_error="; ".join(f"{k}: {v}" for k, v in errors.items()) or None,
        )

        await self._publish_alert_changes(previous, metrics)
        await self._emit(MonitoringEvent.METRICS_UPDATED, self.snapshot())

        return RefreshResult(evaluated=len(day_stats), errors=errors)

    @staticmethod
    def _union_avg_response_time(
        active: List[WebhookEndpoint], day_stats: Dict[str, WindowStats]
    ) -> int:
        # Idle active endpoints contribute 0 and still count in the divisor
        total = sum(
            day_stats[e.id].avg_response_time_ms for e in active if e.id in day_stats
        )
        return round_half_up(total / max(len(active), 1))

    def _top_performers(self, metrics: Dict[str, HealthMetrics]) -> List[TopPerformer]:
        ranked = sorted(metrics.values(), key=lambda m: (-m.health_score, m.webhook_id))
        return [
            TopPerformer(
                webhook_id=m.webhook_id,
                webhook_name=m.webhook_name,
                health_score=m.health_score,
                status=m.status,
            )
            for m in ranked[: self.settings.top_performers]
        ]

    async def _publish_alert_changes(
        self,
        previous: Dict[str, HealthMetrics],
        current: Dict[str, HealthMetrics],
    ) -> None:
        for webhook_id in sorted(previous.keys() | current.keys()):
            before = previous.get(webhook_id)
            after = current.get(webhook_id)
            old_keys, new_keys = _alert_keys(before), _alert_keys(after)

            for alert in (after.alerts if after else []):
                if (alert.type.value, alert.severity.value) not in old_keys:
                    await self._emit(
                        MonitoringEvent.ALERT_TRIGGERED,
                        {"webhook_id": webhook_id, "alert": alert.model_copy()},
                    )
            for alert in (before.alerts if before else []):
                if (alert.type.value, alert.severity.value) not in new_keys:
                    await self._emit(
                        MonitoringEvent.ALERT_RESOLVED,
                        {"webhook_id": webhook_id, "alert": alert.model_copy()},
                    )

    # Reads

    def snapshot(self) -> MonitoringSnapshot:
        """Deep copy of the latest snapshot."""
        return self._snapshot.model_copy(deep=True)

    def metrics_for(self, webhook_id: str) -> Optional[HealthMetrics]:
        metrics = self._metrics.get(webhook_id)
        return metrics.model_copy(deep=True) if metrics else None


# Global singleton aggregator instance
_aggregator: Optional[MonitoringAggregator] = None


def get_aggregator() -> MonitoringAggregator:
    """Get the global monitoring aggregator."""
    global _aggregator
    if _aggregator is None:
        _aggregator = MonitoringAggregator(
            get_registry(), StatsAggregator(get_log_store()), settings_manager.get()
        )
    return _aggregator


def set_aggregator(aggregator: Optional[MonitoringAggregator]) -> None:
    """Replace the global aggregator (None resets it)."""
    global _aggregator
    _aggregator = aggregator
