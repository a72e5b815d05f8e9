"""Endpoint health scoring.

``score_health`` and ``status_for`` are pure functions of the trailing
7-day stats and the endpoint's active flag. ``HealthEvaluator`` wires
them to the stats aggregator and the alert generator.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..webhooks.exceptions import WebhookError
from ..webhooks.models import WebhookEndpoint, ensure_utc, utcnow
from ..webhooks.security import sanitize_error_message
from .alerts import generate_alerts
from .models import HealthItemResult, HealthMetrics, HealthStatus, TimeWindow, WindowStats
from .stats import StatsAggregator

logger = logging.getLogger(__name__)

HEALTH_WINDOW = TimeWindow.WEEK

INACTIVE_PENALTY = 50
NO_TRAFFIC_PENALTY = 20

# (threshold, deduction), highest threshold first
ERROR_RATE_PENALTIES = ((20, 30), (10, 15), (5, 5))
RESPONSE_TIME_PENALTIES = ((5000, 20), (2000, 10), (1000, 5))

HEALTHY_MIN_SCORE = 90
DEGRADED_MIN_SCORE = 70


@dataclass(frozen=True)
class HealthAssessment:
    score: int
    status: HealthStatus
    error_rate: float


def _deduction(value: float, penalties) -> int:
    for threshold, points in penalties:
        if value > threshold:
            return points
    return 0


def status_for(is_active: bool, score: int) -> HealthStatus:
    """Map an active flag and score to a health status."""
    if not is_active:
        return HealthStatus.INACTIVE
    if score >= HEALTHY_MIN_SCORE:
        return HealthStatus.HEALTHY
    if score >= DEGRADED_MIN_SCORE:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


def score_health(stats: WindowStats, is_active: bool) -> HealthAssessment:
    """Score an endpoint from 0 to 100.

    Starts at 100 and applies at most one deduction per category:
    inactive, error rate, average latency and no traffic.

    Args:
        stats: Totals over the trailing 7 days.
        is_active: Whether the endpoint is enabled.

    Returns:
        Score, derived status and the unrounded error rate.
    """
    error_rate = stats.error_rate
    score = 100

    if not is_active:
        score -= INACTIVE_PENALTY
    score -= _deduction(error_rate, ERROR_RATE_PENALTIES)
    score -= _deduction(stats.avg_response_time_ms, RESPONSE_TIME_PENALTIES)
    if stats.total == 0:
        score -= NO_TRAFFIC_PENALTY

    score = max(0, min(100, score))
    return HealthAssessment(
        score=score,
        status=status_for(is_active, score),
        error_rate=error_rate,
    )


class HealthEvaluator:
    """Builds HealthMetrics for endpoints from the delivery log.

    Example:
        evaluator = HealthEvaluator(StatsAggregator(log_store))
        metrics = evaluator.evaluate(endpoint)
        print(metrics.health_score, metrics.status)
    """

    def __init__(self, stats: StatsAggregator):
        self.stats = stats

    def evaluate(
        self,
        endpoint: WebhookEndpoint,
        now: Optional[datetime] = None,
    ) -> HealthMetrics:
        """Compute the health report for one endpoint.

        Raises:
            LogStoreError: The delivery log could not be read.
        """
        now = ensure_utc(now) if now else utcnow()
        window = self.stats.window_stats(HEALTH_WINDOW, webhook_id=endpoint.id, now=now)
        since = now - HEALTH_WINDOW.delta
        assessment = score_health(window, endpoint.is_active)
        alerts = generate_alerts(window, endpoint.is_active)

        if alerts:
            logger.debug(
                f"Webhook {endpoint.id} has {len(alerts)} alert(s): "
                f"{', '.join(a.type.value for a in alerts)}"
            )

        return HealthMetrics(
            webhook_id=endpoint.id,
            webhook_name=endpoint.name,
            feature_name=endpoint.feature_name or "Unknown Feature",
            is_active=endpoint.is_active,
            uptime_percentage=window.success_rate,
            avg_response_time=window.avg_response_time_ms,
            error_rate=assessment.error_rate,
            last_success=self.stats.last_success(endpoint.id, since),
            last_failure=self.stats.last_failure(endpoint.id, since),
            total_triggers=window.total,
            health_score=assessment.score,
            status=assessment.status,
            alerts=alerts,
        )

    async def evaluate_many(
        self,
        endpoints: List[WebhookEndpoint],
        concurrency: int = 4,
        now: Optional[datetime] = None,
    ) -> List[HealthItemResult]:
        """Evaluate several endpoints with bounded parallelism.

        Each evaluation runs in a worker thread. Best-effort: an endpoint
        whose log read fails gets an ``error`` item and the rest still
        report. Output order matches ``endpoints``.
        """
        now = ensure_utc(now) if now else utcnow()
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run_one(endpoint: WebhookEndpoint) -> HealthItemResult:
            secrets = (endpoint.secret,) if endpoint.secret else ()
            async with semaphore:
                try:
                    metrics = await asyncio.to_thread(self.evaluate, endpoint, now)
                    return HealthItemResult(id=endpoint.id, result=metrics)
                except WebhookError as e:
                    logger.error(f"Health evaluation failed for {endpoint.id}: {e}")
                    return HealthItemResult(
                        id=endpoint.id, error=sanitize_error_message(str(e), secrets)
                    )
                except Exception as e:
                    logger.exception(f"Unexpected error evaluating webhook {endpoint.id}")
                    return HealthItemResult(
                        id=endpoint.id,
                        error=sanitize_error_message(f"{type(e).__name__}: {e}", secrets),
                    )

        return list(await asyncio.gather(*(run_one(e) for e in endpoints)))
