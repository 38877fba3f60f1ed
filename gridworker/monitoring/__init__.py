"""
Monitoring package.

Activity feed, equity history, exchange audit trail, alerts and metrics.
"""

from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder
from gridworker.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    configure_alerts,
    get_alert_manager,
)
from gridworker.monitoring.audit import AuditLog, mask_key
from gridworker.monitoring.metrics import WorkerMetrics

__all__ = [
    "ActivityRecorder",
    "EquityRecorder",
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "configure_alerts",
    "get_alert_manager",
    "AuditLog",
    "mask_key",
    "WorkerMetrics",
]
