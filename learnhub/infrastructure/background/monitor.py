# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Queue health monitoring.

Compares queue statistics against thresholds and keeps a bounded
history of raised alerts. A growing dead-letter area means jobs need
manual handling; a growing backlog means workers cannot keep up.

Example:
    monitor = QueueMonitor(broker)
    status = await monitor.check_health()
    if not status.healthy:
        for alert in status.alerts:
            logger.warning("%s", alert.message)
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from learnhub.core.exceptions import BrokerUnavailableError
from learnhub.infrastructure.background.broker import JobBroker, QueueStats
from learnhub.infrastructure.background.jobs import QueueName
from learnhub.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Severity of a queue alert."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class HealthThresholds:
    """Limits above which a queue is unhealthy.

    Attributes:
        max_waiting: Backlog of eligible jobs.
        max_dead: Dead-lettered jobs.
        max_delayed: Jobs waiting out a retry backoff.
    """

    max_waiting: int = 1000
    max_dead: int = 100
    max_delayed: int = 500


@dataclass(frozen=True)
class QueueAlert:
    """One threshold violation.

    Attributes:
        severity: Alert severity.
        queue: Queue name, or "system" for broker failures.
        message: Human-readable description.
        raised_at: When the alert was raised.
        metadata: Measured value and threshold.
    """

    severity: AlertSeverity
    queue: str
    message: str
    raised_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Result of a health check.

    Attributes:
        healthy: True if no alert was raised.
        queues: Statistics per queue.
        alerts: Alerts raised by this check.
    """

    healthy: bool
    queues: dict[str, QueueStats] = field(default_factory=dict)
    alerts: list[QueueAlert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for health endpoints."""
        return {
            "healthy": self.healthy,
            "queues": {name: stats.to_dict() for name, stats in self.queues.items()},
            "alerts": [
                {
                    "severity": alert.severity.value,
                    "queue": alert.queue,
                    "message": alert.message,
                    "raised_at": alert.raised_at.isoformat(),
                    "metadata": alert.metadata,
                }
                for alert in self.alerts
            ],
        }


class QueueMonitor:
    """Health checks and alert history for job queues."""

    def __init__(
        self,
        broker: JobBroker,
        thresholds: Optional[HealthThresholds] = None,
        history_size: int = 500,
    ) -> None:
        self._broker = broker
        self.thresholds = thresholds or HealthThresholds()
        self._alerts: deque[QueueAlert] = deque(maxlen=history_size)

    def _evaluate(self, stats: QueueStats) -> list[QueueAlert]:
        alerts: list[QueueAlert] = []
        checks = (
            ("waiting", stats.waiting, self.thresholds.max_waiting, AlertSeverity.WARNING),
            ("delayed", stats.delayed, self.thresholds.max_delayed, AlertSeverity.WARNING),
            ("dead", stats.dead, self.thresholds.max_dead, AlertSeverity.ERROR),
        )
        for metric, value, limit, severity in checks:
            if value > limit:
                alerts.append(
                    QueueAlert(
                        severity=severity,
                        queue=stats.queue,
                        message=f"Queue {stats.queue} has {value} {metric} jobs (limit {limit})",
                        metadata={"metric": metric, "value": value, "threshold": limit},
                    )
                )
        return alerts

    async def check_health(self, queues: Optional[Iterable[QueueName]] = None) -> HealthStatus:
        """Check queues against the thresholds.

        Args:
            queues: Queues to check; every known queue by default.

        Returns:
            Health status with per-queue statistics and raised alerts.
        """
        status = HealthStatus(healthy=True)

        for queue in queues or list(QueueName):
            try:
                stats = await self._broker.stats(queue)
            except BrokerUnavailableError as e:
                status.alerts.append(
                    QueueAlert(
                        severity=AlertSeverity.CRITICAL,
                        queue="system",
                        message=f"Cannot read statistics of {queue.value}",
                        metadata={"error": str(e)},
                    )
                )
                continue

            status.queues[stats.queue] = stats
            status.alerts.extend(self._evaluate(stats))

        status.healthy = not status.alerts
        for alert in status.alerts:
            self._alerts.append(alert)
            logger.warning("Queue alert [%s]: %s", alert.severity.value, alert.message)

        return status

    def get_alerts(self, limit: int = 50) -> list[QueueAlert]:
        """Get the most recent alerts, newest first."""
        return sorted(self._alerts, key=lambda a: a.raised_at, reverse=True)[:limit]

    def clear_old_alerts(self, older_than_hours: int = 24) -> int:
        """Drop alerts older than the cutoff and return how many were dropped."""
        cutoff = utc_now() - timedelta(hours=older_than_hours)
        kept = [alert for alert in self._alerts if alert.raised_at > cutoff]
        dropped = len(self._alerts) - len(kept)
        self._alerts.clear()
        self._alerts.extend(kept)
        return dropped
