"""Delivery statistics.

Turns the delivery log into per-window totals and rates, day-bucketed
trend series and top-N rankings. Everything is computed from the log
store on every call, so the same log contents always give the same
numbers. Log store failures propagate to the caller untouched: a failed
read must never look like an idle, healthy endpoint.
"""

import csv
import io
import json
import logging
import math
from collections import defaultdict
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from ..webhooks.models import DeliveryEvent, DeliveryStatus, WebhookEndpoint, ensure_utc, utcnow
from ..webhooks.security import sanitize_error_message
from .log_store import DeliveryLogFilter, LogStore
from .models import (
    EventTypeRanking,
    FeatureRanking,
    RecentError,
    TimeWindow,
    TrendPoint,
    WebhookStats,
    WindowStats,
)

logger = logging.getLogger(__name__)

ERROR_STATUSES = [DeliveryStatus.FAILED, DeliveryStatus.TIMEOUT]

EXPORT_COLUMNS = [
    "triggered_at",
    "webhook_id",
    "event_type",
    "status",
    "status_code",
    "response_time_ms",
    "retry_count",
    "payload_size",
    "is_test",
    "error_message",
]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def percentage(part: int, whole: int) -> int:
    """Integer percentage clamped to [0, 100]; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return max(0, min(100, round_half_up(part * 100 / whole)))


def mean_ms(values: List[int]) -> int:
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


class StatsAggregator:
    """Computes windowed delivery statistics from a log store.

    Example:
        stats = StatsAggregator(log_store)
        day = stats.window_stats(TimeWindow.DAY, webhook_id="wh_1")
        print(day.success_rate, day.avg_response_time_ms)
    """

    def __init__(self, log_store: LogStore, include_tests: bool = True):
        """Initialize aggregator.

        Args:
            log_store: Delivery log backend.
            include_tests: Count test calls alongside live deliveries.
        """
        self.log_store = log_store
        self.include_tests = include_tests

    def _filter(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        webhook_id: Optional[str] = None,
        webhook_ids: Optional[List[str]] = None,
        statuses: Optional[List[DeliveryStatus]] = None,
    ) -> DeliveryLogFilter:
        return DeliveryLogFilter(
            webhook_id=webhook_id,
            webhook_ids=webhook_ids,
            statuses=statuses,
            is_test=None if self.include_tests else False,
            triggered_from=start,
            triggered_before=end,
        )

    def stats_between(
        self,
        label: str,
        start: datetime,
        end: Optional[datetime] = None,
        webhook_id: Optional[str] = None,
        webhook_ids: Optional[List[str]] = None,
    ) -> WindowStats:
        """Totals for events with ``start <= triggered_at < end``.

        All figures are tallied from a single read of the log, so appends
        landing mid-computation cannot make the totals disagree.
        """
        events = self.log_store.query(
            self._filter(start, end, webhook_id, webhook_ids)
        )

        tally: Dict[DeliveryStatus, int] = defaultdict(int)
        latencies = []
        for event in events:
            tally[event.status] += 1
            # Latency is averaged over successful deliveries only
            if event.status == DeliveryStatus.SUCCESS:
                latencies.append(event.response_time_ms)

        total = len(events)
        successful = tally[DeliveryStatus.SUCCESS]

        return WindowStats(
            window=label,
            total=total,
            successful=successful,
            failed=tally[DeliveryStatus.FAILED],
            timeouts=tally[DeliveryStatus.TIMEOUT],
            success_rate=percentage(successful, total),
            avg_response_time_ms=mean_ms(latencies),
        )

    def window_stats(
        self,
        window: Union[TimeWindow, str],
        webhook_id: Optional[str] = None,
        webhook_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> WindowStats:
        """Totals over the trailing window ending at ``now``.

        Args:
            window: One of 1h, 6h, 24h, 7d, 30d.
            webhook_id: Restrict to one endpoint.
            webhook_ids: Restrict to a set of endpoints.
            now: Reference time (defaults to current UTC time).
        """
        window = TimeWindow(window)
        now = ensure_utc(now) if now else utcnow()
        return self.stats_between(
            window.value,
            now - window.delta,
            None,
            webhook_id=webhook_id,
            webhook_ids=webhook_ids,
        )

    def trend(
        self,
        days: int = 7,
        now: Optional[datetime] = None,
        webhook_ids: Optional[List[str]] = None,
    ) -> List[TrendPoint]:
        """Per-day totals for the last ``days`` UTC days, oldest first.

        Buckets are half-open [midnight, next midnight) so an event at
        exactly midnight lands in the later day.
        """
        now = ensure_utc(now) if now else utcnow()
        points = []
        for offset in range(days - 1, -1, -1):
            day = (now - timedelta(days=offset)).date()
            start = datetime.combine(day, time.min, tzinfo=timezone.utc)
            end = start + timedelta(days=1)
            stats = self.stats_between(day.isoformat(), start, end, webhook_ids=webhook_ids)
            points.append(TrendPoint(
                date=day.isoformat(),
                total_triggers=stats.total,
                successful_triggers=stats.successful,
                avg_response_time=stats.avg_response_time_ms,
            ))
        return points

    def last_event_at(
        self,
        webhook_id: str,
        statuses: List[DeliveryStatus],
        since: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Timestamp of the newest matching event, if any."""
        events = self.log_store.query(
            self._filter(since, None, webhook_id, None, statuses), limit=1
        )
        return events[0].triggered_at if events else None

    def last_success(
        self, webhook_id: str, since: Optional[datetime] = None
    ) -> Optional[datetime]:
        return self.last_event_at(webhook_id, [DeliveryStatus.SUCCESS], since)

    def last_failure(
        self, webhook_id: str, since: Optional[datetime] = None
    ) -> Optional[datetime]:
        return self.last_event_at(webhook_id, ERROR_STATUSES, since)

    def top_features(
        self,
        endpoints: Iterable[WebhookEndpoint],
        now: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[FeatureRanking]:
        """Rank owning features by 24h trigger count.

        Ties are broken by success rate (higher first), then by feature
        ID so the order is stable across recomputations.
        """
        features: Dict[str, List[WebhookEndpoint]] = defaultdict(list)
        for endpoint in endpoints:
            if endpoint.feature_id:
                features[endpoint.feature_id].append(endpoint)

        rankings = []
        for feature_id, members in features.items():
            stats = self.window_stats(
                TimeWindow.DAY, webhook_ids=[m.id for m in members], now=now
            )
            rankings.append(FeatureRanking(
                feature_id=feature_id,
                feature_name=members[0].feature_name or "Unknown Feature",
                webhook_count=len(members),
                trigger_count_24h=stats.total,
                success_rate=stats.success_rate,
            ))

        rankings.sort(key=lambda r: (-r.trigger_count_24h, -r.success_rate, r.feature_id))
        return rankings[:limit]

    def top_event_types(
        self,
        now: Optional[datetime] = None,
        limit: int = 10,
        webhook_ids: Optional[List[str]] = None,
    ) -> List[EventTypeRanking]:
        """Rank event types by 24h trigger count, same tie-breaking as features."""
        now = ensure_utc(now) if now else utcnow()
        events = self.log_store.query(
            self._filter(now - TimeWindow.DAY.delta, None, webhook_ids=webhook_ids)
        )

        totals: Dict[str, int] = defaultdict(int)
        successes: Dict[str, int] = defaultdict(int)
        for event in events:
            totals[event.event_type] += 1
            if event.status == DeliveryStatus.SUCCESS:
                successes[event.event_type] += 1

        rankings = [
            EventTypeRanking(
                event_type=event_type,
                trigger_count_24h=total,
                success_rate=percentage(successes[event_type], total),
            )
            for event_type, total in totals.items()
        ]
        rankings.sort(key=lambda r: (-r.trigger_count_24h, -r.success_rate, r.event_type))
        return rankings[:limit]

    def recent_errors(
        self,
        endpoints: Iterable[WebhookEndpoint],
        limit: int = 10,
    ) -> List[RecentError]:
        """Latest failed or timed-out deliveries, newest first."""
        by_id = {e.id: e for e in endpoints}
        events = self.log_store.query(self._filter(statuses=ERROR_STATUSES), limit=limit)

        errors = []
        for event in events:
            endpoint = by_id.get(event.webhook_id)
            secrets = (endpoint.secret,) if endpoint and endpoint.secret else ()
            errors.append(RecentError(
                webhook_id=event.webhook_id,
                webhook_name=endpoint.name if endpoint else "Unknown Webhook",
                feature_name=(endpoint.feature_name if endpoint else None) or "Unknown Feature",
                error_message=sanitize_error_message(
                    event.error_message or "Unknown error", secrets
                ),
                timestamp=event.triggered_at,
                retry_count=event.retry_count,
            ))
        return errors

    def summary(
        self,
        endpoints: List[WebhookEndpoint],
        now: Optional[datetime] = None,
        trend_days: int = 7,
        top_limit: int = 10,
    ) -> WebhookStats:
        """Dashboard summary across the given endpoints."""
        now = ensure_utc(now) if now else utcnow()
        ids = [e.id for e in endpoints]
        active = sum(1 for e in endpoints if e.is_active)

        windows = {
            w.value: self.window_stats(w, webhook_ids=ids, now=now)
            for w in (TimeWindow.DAY, TimeWindow.WEEK, TimeWindow.MONTH)
        }
        day = windows[TimeWindow.DAY.value]

        return WebhookStats(
            total_webhooks=len(endpoints),
            active_webhooks=active,
            inactive_webhooks=len(endpoints) - active,
            windows=windows,
            total_failures_24h=day.failed,
            total_timeouts_24h=day.timeouts,
            top_features=self.top_features(endpoints, now=now, limit=top_limit),
            top_events=self.top_event_types(now=now, limit=top_limit, webhook_ids=ids),
            recent_errors=self.recent_errors(endpoints, limit=top_limit),
            performance_trends=self.trend(trend_days, now=now, webhook_ids=ids),
        )

    def export_events(
        self,
        log_filter: Optional[DeliveryLogFilter] = None,
        fmt: str = "csv",
        limit: Optional[int] = None,
    ) -> str:
        """Serialize matching log events as CSV or JSON text."""
        events = self.log_store.query(log_filter, limit=limit)
        rows = [_export_row(e) for e in events]

        if fmt == "json":
            return json.dumps(rows, indent=2)
        if fmt != "csv":
            raise ValueError(f"Unsupported export format: {fmt}")

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()


def _export_row(event: DeliveryEvent) -> dict:
    return {
        "triggered_at": ensure_utc(event.triggered_at).isoformat(),
        "webhook_id": event.webhook_id,
        "event_type": event.event_type,
        "status": event.status.value,
        "status_code": event.status_code,
        "response_time_ms": event.response_time_ms,
        "retry_count": event.retry_count,
        "payload_size": event.payload_size,
        "is_test": event.is_test,
        "error_message": sanitize_error_message(event.error_message or ""),
    }
