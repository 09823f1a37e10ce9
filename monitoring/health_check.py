"""
Health Check for the Refund Monitor
Maps the monitor loop, the store and host resources onto healthy / degraded / unhealthy
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import psutil
from sqlalchemy import text

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


def worst_status(statuses: List[HealthStatus]) -> HealthStatus:
    return max(statuses, key=lambda status: _SEVERITY[status], default=HealthStatus.HEALTHY)


@dataclass
class ComponentHealth:
    """Health of one component"""

    component: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    status: HealthStatus
    reasons: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=get_naive_utc_now)
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reasons": list(self.reasons),
            "timestamp": self.checked_at.isoformat(),
            "checks": [
                {
                    "component": check.component,
                    "status": check.status.value,
                    "message": check.message,
                    "details": check.details,
                }
                for check in self.components
            ],
        }


def evaluate_monitor_health(*, should_run: bool, loop_alive: bool, interval_seconds: float,
                            last_cycle_at: Optional[datetime], started_at: Optional[datetime],
                            last_cycle_errored: bool, last_error: Optional[str] = None,
                            failed_records: int = 0, quota_cooldown: bool = False,
                            stopped_by_operator: bool = False,
                            now: Optional[datetime] = None) -> ComponentHealth:
    """
    Pure mapping of monitor state onto a health status.

    unhealthy: should be running but the loop is not, or no cycle finished within
               2 x interval while running
    degraded:  last cycle errored, FAILED records await an operator, the ledger API is in
               quota cooldown, or an operator stopped the monitor
    healthy:   otherwise
    """
    now = now or get_naive_utc_now()
    unhealthy: List[str] = []
    degraded: List[str] = []

    if should_run and not loop_alive:
        unhealthy.append("monitor should be running but the polling loop is not alive")

    if should_run and loop_alive:
        reference = last_cycle_at or started_at
        # Cycles from before this start do not count towards liveness
        if started_at is not None and reference is not None and reference < started_at:
            reference = started_at
        if reference is not None and now - reference > timedelta(seconds=2 * interval_seconds):
            unhealthy.append(
                f"no cycle completed in {int((now - reference).total_seconds())}s "
                f"(limit {int(2 * interval_seconds)}s)"
            )

    if last_cycle_errored:
        degraded.append(f"last cycle errored: {last_error or 'unknown error'}")
    if failed_records:
        degraded.append(f"{failed_records} refund(s) failed and need operator action")
    if quota_cooldown:
        degraded.append("ledger API quota exceeded, polling paused")
    if stopped_by_operator:
        degraded.append("monitor stopped by operator")

    if unhealthy:
        status = HealthStatus.UNHEALTHY
    elif degraded:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    reasons = unhealthy + degraded
    return ComponentHealth(
        component="monitor",
        status=status,
        message="; ".join(reasons) if reasons else "Monitor operating normally",
        details={
            "should_run": should_run,
            "loop_alive": loop_alive,
            "interval_seconds": interval_seconds,
            "last_cycle_at": last_cycle_at.isoformat() if last_cycle_at else None,
            "failed_records": failed_records,
            "quota_cooldown": quota_cooldown,
        },
    )


def check_database(session_factory) -> ComponentHealth:
    """Store connectivity; an unreachable store stops every cycle"""
    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
        return ComponentHealth("database", HealthStatus.HEALTHY, "Database reachable")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth("database", HealthStatus.UNHEALTHY, f"Database unreachable: {e}")


def check_system_resources() -> ComponentHealth:
    """Process and host memory; high usage degrades but never fails the monitor"""
    try:
        memory = psutil.virtual_memory()
        process = psutil.Process()
        details = {
            "memory_percent": memory.percent,
            "process_rss_mb": round(process.memory_info().rss / (1024 ** 2), 1),
            "cpu_percent": psutil.cpu_percent(interval=None),
        }
        if memory.percent > 90:
            return ComponentHealth(
                "system_resources", HealthStatus.DEGRADED,
                f"High memory usage: {memory.percent}%", details,
            )
        return ComponentHealth("system_resources", HealthStatus.HEALTHY, "System resources normal", details)
    except (psutil.Error, OSError) as e:
        logger.warning(f"System resource check failed: {e}")
        return ComponentHealth("system_resources", HealthStatus.HEALTHY, f"Could not check resources: {e}")


def build_report(checks: List[ComponentHealth]) -> HealthReport:
    status = worst_status([check.status for check in checks])
    reasons = [check.message for check in checks if check.status != HealthStatus.HEALTHY]
    return HealthReport(status=status, reasons=reasons, components=checks)
