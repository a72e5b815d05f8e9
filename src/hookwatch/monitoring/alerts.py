"""Threshold alerts for a single endpoint.

Alerts are recomputed from scratch on every evaluation; nothing here
remembers earlier results. Thresholds are strict, so a rate sitting
exactly on a boundary does not fire.
"""

from typing import List

from .models import Alert, AlertSeverity, AlertType, WindowStats

ERROR_RATE_HIGH = 20
ERROR_RATE_MEDIUM = 10
RESPONSE_TIME_HIGH_MS = 5000
RESPONSE_TIME_MEDIUM_MS = 2000
TIMEOUT_RATE_HIGH = 10


def _fmt(value: float) -> str:
    return f"{value:.1f}"


def generate_alerts(stats: WindowStats, is_active: bool) -> List[Alert]:
    """Build the alert list for one endpoint's trailing-window stats.

    Args:
        stats: Totals over the trailing 7 days.
        is_active: Whether the endpoint is enabled.

    Returns:
        Alerts in a fixed order: error rate, latency, timeouts, activity.
    """
    alerts: List[Alert] = []
    error_rate = stats.error_rate
    avg_ms = stats.avg_response_time_ms

    if error_rate > ERROR_RATE_HIGH:
        alerts.append(Alert(
            type=AlertType.HIGH_ERROR_RATE,
            message=f"High error rate: {_fmt(error_rate)}% of requests are failing",
            severity=AlertSeverity.HIGH,
        ))
    elif error_rate > ERROR_RATE_MEDIUM:
        alerts.append(Alert(
            type=AlertType.HIGH_ERROR_RATE,
            message=f"Elevated error rate: {_fmt(error_rate)}% of requests are failing",
            severity=AlertSeverity.MEDIUM,
        ))

    if avg_ms > RESPONSE_TIME_HIGH_MS:
        alerts.append(Alert(
            type=AlertType.SLOW_RESPONSE,
            message=f"Very slow response times: averaging {avg_ms}ms",
            severity=AlertSeverity.HIGH,
        ))
    elif avg_ms > RESPONSE_TIME_MEDIUM_MS:
        alerts.append(Alert(
            type=AlertType.SLOW_RESPONSE,
            message=f"Slow response times: averaging {avg_ms}ms",
            severity=AlertSeverity.MEDIUM,
        ))

    if stats.timeout_rate > TIMEOUT_RATE_HIGH:
        alerts.append(Alert(
            type=AlertType.FREQUENT_TIMEOUTS,
            message=f"Frequent timeouts: {_fmt(stats.timeout_rate)}% of requests are timing out",
            severity=AlertSeverity.HIGH,
        ))

    if stats.total == 0 and is_active:
        alerts.append(Alert(
            type=AlertType.NO_ACTIVITY,
            message="No webhook activity in the past 7 days",
            severity=AlertSeverity.LOW,
        ))

    return alerts
