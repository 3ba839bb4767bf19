"""
Operational alerts and decision metrics.

Alerts are CRITICAL/ERROR log records tagged with an `alert` field (picked up
by the JSON formatter for log-based alerting) plus a Prometheus counter.
"""
import logging

from prometheus_client import Counter

logger = logging.getLogger("trustgate.alerts")

OPS_ALERTS = Counter(
    "trustgate_ops_alerts_total",
    "Operational alerts raised",
    ["alert", "severity"],
)
DECISIONS = Counter(
    "trustgate_decisions_total",
    "Trust decisions by kind and outcome",
    ["decision", "outcome"],
)
DEGRADED_DECISIONS = Counter(
    "trustgate_degraded_decisions_total",
    "Decisions served fail-open because the store was unavailable",
    ["decision"],
)
HIJACK_ATTEMPTS = Counter(
    "trustgate_session_hijack_attempts_total",
    "Session context mismatches detected",
    ["mismatch_type", "action"],
)

_LEVELS = {
    "critical": logging.CRITICAL,
    "high": logging.ERROR,
    "warning": logging.WARNING,
}


def raise_ops_alert(alert: str, message: str, *, severity: str = "critical", **context) -> None:
    """Emit an operational alert. Never raises."""
    OPS_ALERTS.labels(alert=alert, severity=severity).inc()
    detail = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
    logger.log(
        _LEVELS.get(severity, logging.ERROR),
        "[ALERT %s] %s %s",
        alert,
        message,
        detail,
        extra={"alert": alert},
    )
