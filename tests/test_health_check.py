"""
Health evaluation tests
"""

from datetime import timedelta

from monitoring.health_check import (
    ComponentHealth,
    HealthStatus,
    build_report,
    evaluate_monitor_health,
    worst_status,
)
from utils.datetime_helpers import get_naive_utc_now


def _evaluate(**overrides):
    now = get_naive_utc_now()
    options = dict(
        should_run=True, loop_alive=True, interval_seconds=30,
        last_cycle_at=now - timedelta(seconds=10), started_at=now - timedelta(minutes=5),
        last_cycle_errored=False, now=now,
    )
    options.update(overrides)
    return evaluate_monitor_health(**options)


class TestMonitorHealth:

    def test_recent_cycle_is_healthy(self):
        assert _evaluate().status == HealthStatus.HEALTHY

    def test_loop_dead_while_it_should_run(self):
        health = _evaluate(loop_alive=False)
        assert health.status == HealthStatus.UNHEALTHY

    def test_no_cycle_within_twice_the_interval(self):
        now = get_naive_utc_now()
        health = _evaluate(last_cycle_at=now - timedelta(seconds=61), now=now)
        assert health.status == HealthStatus.UNHEALTHY
        assert "no cycle completed" in health.message

    def test_fresh_start_counts_from_start_time(self):
        now = get_naive_utc_now()
        health = _evaluate(
            last_cycle_at=now - timedelta(hours=3), started_at=now - timedelta(seconds=5), now=now
        )
        assert health.status == HealthStatus.HEALTHY

    def test_stopped_monitor_is_not_judged_on_liveness(self):
        health = _evaluate(should_run=False, loop_alive=False, last_cycle_at=None)
        assert health.status == HealthStatus.HEALTHY

    def test_degraded_conditions(self):
        assert _evaluate(last_cycle_errored=True, last_error="boom").status == HealthStatus.DEGRADED
        assert _evaluate(failed_records=2).status == HealthStatus.DEGRADED
        assert _evaluate(quota_cooldown=True).status == HealthStatus.DEGRADED
        assert _evaluate(should_run=False, loop_alive=False, stopped_by_operator=True).status == HealthStatus.DEGRADED

    def test_unhealthy_wins_over_degraded(self):
        health = _evaluate(loop_alive=False, failed_records=1)
        assert health.status == HealthStatus.UNHEALTHY
        assert "1 refund(s) failed" in health.message


class TestReport:

    def test_worst_component_sets_overall_status(self):
        report = build_report([
            ComponentHealth("monitor", HealthStatus.HEALTHY, "ok"),
            ComponentHealth("database", HealthStatus.UNHEALTHY, "Database unreachable"),
            ComponentHealth("system_resources", HealthStatus.DEGRADED, "High memory usage"),
        ])
        assert report.status == HealthStatus.UNHEALTHY
        assert report.reasons == ["Database unreachable", "High memory usage"]
        assert report.to_dict()["status"] == "unhealthy"

    def test_worst_status_of_nothing_is_healthy(self):
        assert worst_status([]) == HealthStatus.HEALTHY
