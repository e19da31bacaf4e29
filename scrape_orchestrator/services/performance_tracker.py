"""
Performance tracking for scrape executions.

Each finished execution is stored as a PerformanceMetric and checked against
three independent rules:

- Slowness: duration above a fixed threshold
- Recurring failure / recovery: streak of N failures, or N successes after a
  window that contained failures
- Degradation: successful duration above mean + 2 stddev of the target's
  recent successful runs

Alerts are logged and returned to the caller. They never feed back into
retry or concurrency decisions.
"""

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scrape_orchestrator.config import PerformanceConfig, get_config
from scrape_orchestrator.core.datetime_utils import duration_ms, get_cutoff, utc_now
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.models.job import JobStatus, ScrapeExecution
from scrape_orchestrator.models.metrics import PerformanceMetric

logger = get_logger(__name__)


class AlertType(str, enum.Enum):
    SLOW_EXECUTION = "slow_execution"
    RECURRING_FAILURE = "recurring_failure"
    RECOVERED = "recovered"
    DEGRADED_PERFORMANCE = "degraded_performance"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_SEVERITY_LOG_LEVEL = {
    AlertSeverity.INFO: "INFO",
    AlertSeverity.WARNING: "WARNING",
    AlertSeverity.ERROR: "ERROR",
}


@dataclass
class Alert:
    """An observational performance alert. Not persisted."""

    type: AlertType
    severity: AlertSeverity
    message: str
    target_config_id: str
    target_label: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "target_config_id": self.target_config_id,
            "target_label": self.target_label,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TargetPerformanceStats:
    total_executions: int
    success_rate: float
    avg_duration_ms: float
    avg_result_count: float
    error_types: dict[str, int]


class PerformanceTracker:
    """Records execution metrics and evaluates alert rules."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PerformanceConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or get_config().performance

    @property
    def duration_threshold_ms(self) -> float:
        return self.config.duration_threshold_minutes * 60_000

    async def record(
        self,
        execution: ScrapeExecution,
        target_label: str | None = None,
    ) -> list[Alert]:
        """Persist a metric for a finished execution and return any alerts.

        Failures here are logged and swallowed: tracking must never affect
        the execution that is being tracked.
        """
        duration = duration_ms(execution.started_at, execution.completed_at)
        if duration is None:
            logger.bind(execution_id=execution.id).warning("performance_metric_missing_timestamps")
            return []

        error_type = (execution.error_payload or {}).get("type")
        metric = PerformanceMetric(
            target_config_id=execution.target_config_id,
            execution_id=execution.id,
            duration_ms=duration,
            success=execution.status == JobStatus.COMPLETED,
            result_count=execution.result_count or 0,
            error_type=error_type,
        )

        try:
            async with self.session_factory() as db:
                db.add(metric)
                await db.flush()
                alerts = await self.evaluate(db, metric, target_label)
                await db.commit()
        except Exception as e:
            logger.bind(execution_id=execution.id, error=str(e)).error(
                "performance_tracking_failed"
            )
            return []

        logger.bind(
            target=target_label or execution.target_config_id,
            duration_s=round(duration / 1000),
            result_count=metric.result_count,
            success=metric.success,
        ).debug("performance_metric_recorded")

        for alert in alerts:
            logger.bind(
                alert_type=alert.type.value,
                target=alert.target_label or alert.target_config_id,
                **alert.data,
            ).log(_SEVERITY_LOG_LEVEL[alert.severity], f"performance_alert: {alert.message}")

        return alerts

    async def evaluate(
        self,
        db: AsyncSession,
        metric: PerformanceMetric,
        target_label: str | None = None,
    ) -> list[Alert]:
        """Run every rule against an already-flushed metric."""
        alerts: list[Alert] = []
        slow = self._check_slowness(metric, target_label)
        if slow:
            alerts.append(slow)
        alerts.extend(await self._check_streaks(db, metric, target_label))
        degraded = await self._check_degradation(db, metric, target_label)
        if degraded:
            alerts.append(degraded)
        return alerts

    def _check_slowness(self, metric: PerformanceMetric, label: str | None) -> Alert | None:
        threshold = self.duration_threshold_ms
        if metric.duration_ms <= threshold:
            return None
        return Alert(
            type=AlertType.SLOW_EXECUTION,
            severity=AlertSeverity.WARNING,
            message=(
                f"Scrape took {round(metric.duration_ms / 60_000)} minutes "
                f"(limit: {round(threshold / 60_000)} minutes)"
            ),
            target_config_id=metric.target_config_id,
            target_label=label,
            data={
                "duration_ms": metric.duration_ms,
                "threshold_ms": threshold,
                "result_count": metric.result_count,
            },
        )

    async def _recent_metrics(
        self,
        db: AsyncSession,
        target_config_id: str,
        limit: int,
        before: PerformanceMetric | None = None,
    ) -> list[PerformanceMetric]:
        """Newest first; ``before`` pages past a metric, ordered by (created_at, id)."""
        query = select(PerformanceMetric).where(
            PerformanceMetric.target_config_id == target_config_id
        )
        if before is not None:
            query = query.where(
                or_(
                    PerformanceMetric.created_at < before.created_at,
                    and_(
                        PerformanceMetric.created_at == before.created_at,
                        PerformanceMetric.id < before.id,
                    ),
                )
            )
        query = query.order_by(
            PerformanceMetric.created_at.desc(), PerformanceMetric.id.desc()
        ).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def _check_streaks(
        self, db: AsyncSession, metric: PerformanceMetric, label: str | None
    ) -> list[Alert]:
        n = self.config.failure_threshold
        recent = await self._recent_metrics(db, metric.target_config_id, n)
        if len(recent) < n:
            return []

        if all(not m.success for m in recent):
            return [
                Alert(
                    type=AlertType.RECURRING_FAILURE,
                    severity=AlertSeverity.ERROR,
                    message=f"{n} consecutive failures detected",
                    target_config_id=metric.target_config_id,
                    target_label=label,
                    data={
                        "recent_executions": [
                            {
                                "duration_ms": m.duration_ms,
                                "success": m.success,
                                "error_type": m.error_type,
                                "created_at": m.created_at.isoformat(),
                            }
                            for m in recent
                        ]
                    },
                )
            ]

        if all(m.success for m in recent):
            older = await self._recent_metrics(
                db, metric.target_config_id, n, before=recent[-1]
            )
            if any(not m.success for m in older):
                return [
                    Alert(
                        type=AlertType.RECOVERED,
                        severity=AlertSeverity.INFO,
                        message=f"Recovered: {n} consecutive successes after failures",
                        target_config_id=metric.target_config_id,
                        target_label=label,
                        data={"streak": n},
                    )
                ]
        return []

    async def _check_degradation(
        self, db: AsyncSession, metric: PerformanceMetric, label: str | None
    ) -> Alert | None:
        if not metric.success:
            return None

        cutoff = get_cutoff(days=self.config.analysis_window_days)
        result = await db.execute(
            select(PerformanceMetric.duration_ms).where(
                PerformanceMetric.target_config_id == metric.target_config_id,
                PerformanceMetric.success.is_(True),
                PerformanceMetric.created_at >= cutoff,
                PerformanceMetric.id != metric.id,
            )
        )
        durations = list(result.scalars().all())
        if len(durations) < self.config.min_samples:
            return None

        mean = sum(durations) / len(durations)
        std_dev = math.sqrt(sum((d - mean) ** 2 for d in durations) / len(durations))
        threshold = mean + self.config.stddev_multiplier * std_dev
        if metric.duration_ms <= threshold or mean <= 0:
            return None

        slowdown = (metric.duration_ms - mean) / mean * 100
        return Alert(
            type=AlertType.DEGRADED_PERFORMANCE,
            severity=AlertSeverity.WARNING,
            message=f"Performance degraded: {slowdown:.1f}% slower than the recent average",
            target_config_id=metric.target_config_id,
            target_label=label,
            data={
                "duration_ms": metric.duration_ms,
                "mean_ms": round(mean),
                "std_dev_ms": round(std_dev),
                "threshold_ms": round(threshold),
                "samples": len(durations),
            },
        )

    async def get_target_stats(
        self, target_config_id: str, days: int = 7
    ) -> TargetPerformanceStats:
        """Aggregate metrics of one target over the last ``days`` days."""
        async with self.session_factory() as db:
            return await get_target_stats(db, target_config_id, days)


async def get_target_stats(
    db: AsyncSession, target_config_id: str, days: int = 7
) -> TargetPerformanceStats:
    result = await db.execute(
        select(PerformanceMetric).where(
            PerformanceMetric.target_config_id == target_config_id,
            PerformanceMetric.created_at >= get_cutoff(days=days),
        )
    )
    metrics = list(result.scalars().all())
    if not metrics:
        return TargetPerformanceStats(0, 0.0, 0.0, 0.0, {})

    error_types: dict[str, int] = {}
    for m in metrics:
        if m.error_type:
            error_types[m.error_type] = error_types.get(m.error_type, 0) + 1

    total = len(metrics)
    return TargetPerformanceStats(
        total_executions=total,
        success_rate=sum(1 for m in metrics if m.success) / total * 100,
        avg_duration_ms=sum(m.duration_ms for m in metrics) / total,
        avg_result_count=sum(m.result_count for m in metrics) / total,
        error_types=error_types,
    )
