"""Delivery monitoring.

Stats over the delivery log, health scoring, threshold alerts and the
live monitoring aggregator.
"""

from .log_store import DeliveryLogFilter, LogStore, InMemoryLogStore, SQLiteLogStore, get_log_store
from .stats import StatsAggregator
from .health import HealthEvaluator, score_health, status_for
from .alerts import generate_alerts
from .aggregator import MonitoringAggregator, MonitoringEvent, get_aggregator

__all__ = [
    "DeliveryLogFilter",
    "LogStore",
    "InMemoryLogStore",
    "SQLiteLogStore",
    "get_log_store",
    "StatsAggregator",
    "HealthEvaluator",
    "score_health",
    "status_for",
    "generate_alerts",
    "MonitoringAggregator",
    "MonitoringEvent",
    "get_aggregator",
]
