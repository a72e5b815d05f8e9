"""Health and statistics models.

Derived, never persisted: everything here is recomputed from the
delivery log on demand.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TimeWindow(str, Enum):
    """Trailing windows supported by the stats aggregator."""

    HOUR = "1h"
    SIX_HOURS = "6h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def delta(self) -> timedelta:
        return {
            TimeWindow.HOUR: timedelta(hours=1),
            TimeWindow.SIX_HOURS: timedelta(hours=6),
            TimeWindow.DAY: timedelta(days=1),
            TimeWindow.WEEK: timedelta(days=7),
            TimeWindow.MONTH: timedelta(days=30),
        }[self]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    INACTIVE = "inactive"


class AlertType(str, Enum):
    HIGH_ERROR_RATE = "high_error_rate"
    SLOW_RESPONSE = "slow_response"
    FREQUENT_TIMEOUTS = "frequent_timeouts"
    NO_ACTIVITY = "no_activity"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WindowStats(BaseModel):
    """Delivery totals and rates over one trailing window."""

    window: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    timeouts: int = 0
    success_rate: int = Field(0, ge=0, le=100)
    avg_response_time_ms: int = 0

    @property
    def error_rate(self) -> float:
        """Unrounded (failed + timeouts) / total * 100, or 0 with no traffic."""
        if self.total <= 0:
            return 0.0
        return (self.failed + self.timeouts) * 100 / self.total

    @property
    def timeout_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.timeouts * 100 / self.total


class Alert(BaseModel):
    type: AlertType
    message: str
    severity: AlertSeverity


class HealthMetrics(BaseModel):
    """Health report for one endpoint over the trailing 7 days."""

    webhook_id: str
    webhook_name: str = ""
    feature_name: str = "Unknown Feature"
    is_active: bool = True
    uptime_percentage: int = 0
    avg_response_time: int = 0
    error_rate: float = 0.0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    total_triggers: int = 0
    health_score: int = Field(0, ge=0, le=100)
    status: HealthStatus
    alerts: List[Alert] = Field(default_factory=list)


class TrendPoint(BaseModel):
    """One day bucket of the performance trend."""

    date: str
    total_triggers: int = 0
    successful_triggers: int = 0
    avg_response_time: int = 0


class FeatureRanking(BaseModel):
    feature_id: str
    feature_name: str
    webhook_count: int = 0
    trigger_count_24h: int = 0
    success_rate: int = 0


class EventTypeRanking(BaseModel):
    event_type: str
    trigger_count_24h: int = 0
    success_rate: int = 0


class RecentError(BaseModel):
    webhook_id: str
    webhook_name: str = "Unknown Webhook"
    feature_name: str = "Unknown Feature"
    error_message: str = "Unknown error"
    timestamp: datetime
    retry_count: int = 0


class WebhookStats(BaseModel):
    """Dashboard-level summary across all endpoints."""

    total_webhooks: int = 0
    active_webhooks: int = 0
    inactive_webhooks: int = 0
    windows: Dict[str, WindowStats] = Field(default_factory=dict)
    total_failures_24h: int = 0
    total_timeouts_24h: int = 0
    top_features: List[FeatureRanking] = Field(default_factory=list)
    top_events: List[EventTypeRanking] = Field(default_factory=list)
    recent_errors: List[RecentError] = Field(default_factory=list)
    performance_trends: List[TrendPoint] = Field(default_factory=list)


class TopPerformer(BaseModel):
    webhook_id: str
    webhook_name: str
    health_score: int
    status: HealthStatus


class MonitoringSnapshot(BaseModel):
    """Immutable view of the monitoring aggregator's latest state."""

    generated_at: Optional[datetime] = None
    total_webhooks: int = 0
    active_webhooks: int = 0
    success_rate_24h: int = 0
    avg_response_time_24h: int = 0
    active_alerts: int = 0
    top_performers: List[TopPerformer] = Field(default_factory=list)
    performance_trends: List[TrendPoint] = Field(default_factory=list)
    metrics: List[HealthMetrics] = Field(default_factory=list)
    refresh_count: int = 0
    last_error: Optional[str] = None


class RefreshResult(BaseModel):
    """Outcome of one monitoring refresh."""

    skipped: bool = False
    evaluated: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)


class HealthItemResult(BaseModel):
    """Per-endpoint outcome of a bulk health evaluation."""

    id: str
    result: Optional[HealthMetrics] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None
