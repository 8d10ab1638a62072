"""Tests for mapping and system health."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from forum_sync.health import DEGRADED, HEALTHY, UNHEALTHY, HealthMonitor
from forum_sync.models import Thread
from forum_sync.registry import MappingRegistry
from forum_sync.resilience import CircuitBreaker, CircuitStatus, ErrorHandler
from tests.conftest import build_env, make_mapping


class Now:
    def __init__(self) -> None:
        self.value = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now() -> Now:
    return Now()


def make_monitor(count: int, now: Now):
    mappings = [make_mapping(f"m{i}", 100 + i, name=f"repo{i}") for i in range(count)]
    env = build_env(mappings)
    registry: MappingRegistry = env.registry
    handler: ErrorHandler = env.error_handler
    breaker: CircuitBreaker = env.breaker
    monitor = HealthMonitor(registry, handler, breaker, now=now)
    return monitor, env


def fail(env, mapping_id: str, times: int) -> None:
    ctx = env.context(mapping_id)
    for _ in range(times):
        env.error_handler.handle_error(ctx, RuntimeError("boom"), "op")


class TestMappingHealth:
    @pytest.mark.parametrize("errors, expected", [(0, HEALTHY), (5, HEALTHY), (6, DEGRADED), (10, DEGRADED), (11, UNHEALTHY)])
    def test_escalation_by_consecutive_errors(self, now: Now, errors: int, expected: str):
        monitor, env = make_monitor(1, now)
        monitor.record_activity("m0")
        fail(env, "m0", errors)

        assert monitor.get_mapping_health("m0").status == expected

    def test_open_breaker_is_degraded(self, now: Now):
        monitor, env = make_monitor(1, now)
        env.breaker.state("m0").status = CircuitStatus.OPEN

        health = monitor.get_mapping_health("m0")
        assert health.status == DEGRADED
        assert health.circuit == "open"

    def test_inactivity_is_degraded(self, now: Now):
        monitor, _ = make_monitor(1, now)
        monitor.record_activity("m0")
        now.value += timedelta(hours=25)

        assert monitor.get_mapping_health("m0").status == DEGRADED

    def test_reports_counters(self, now: Now):
        monitor, env = make_monitor(1, now)
        env.store("m0").add_thread(Thread(id=1, title="a"))
        fail(env, "m0", 2)

        health = monitor.get_mapping_health("m0")
        assert health.thread_count == 1
        assert health.error_count == 2
        assert health.to_dict()["metrics"]["consecutive_errors"] == 2

    def test_unknown_mapping(self, now: Now):
        monitor, _ = make_monitor(1, now)
        assert monitor.get_mapping_health("missing") is None

    def test_reset_mapping_health(self, now: Now):
        monitor, env = make_monitor(1, now)
        fail(env, "m0", 11)
        env.breaker.state("m0").status = CircuitStatus.OPEN

        monitor.reset_mapping_health("m0")

        health = monitor.get_mapping_health("m0")
        assert health.status == HEALTHY
        assert health.circuit == "closed"


class TestSystemHealth:
    def test_all_healthy(self, now: Now):
        monitor, _ = make_monitor(3, now)
        assert monitor.get_system_health().status == HEALTHY

    def test_one_unhealthy_degrades_system(self, now: Now):
        monitor, env = make_monitor(3, now)
        fail(env, "m0", 11)
        assert monitor.get_system_health().status == DEGRADED

    def test_majority_unhealthy(self, now: Now):
        monitor, env = make_monitor(3, now)
        fail(env, "m0", 11)
        fail(env, "m1", 11)
        assert monitor.get_system_health().status == UNHEALTHY

    def test_degraded_share(self, now: Now):
        monitor, env = make_monitor(4, now)
        fail(env, "m0", 6)
        # 1 of 4 degraded is under 30%
        assert monitor.get_system_health().status == HEALTHY
        fail(env, "m1", 6)
        assert monitor.get_system_health().status == DEGRADED

    def test_health_check_and_metrics(self, now: Now):
        monitor, env = make_monitor(2, now)
        now.value += timedelta(seconds=90)
        fail(env, "m1", 11)

        check = monitor.get_health_check()
        assert check["status"] == DEGRADED
        assert check["timestamp"] == now.value.isoformat()

        metrics = monitor.get_metrics()
        assert metrics["system"]["uptime"] == 90
        assert metrics["system"]["mappings"] == {"total": 2, "healthy": 1, "degraded": 0, "unhealthy": 1}
        assert {m["id"] for m in metrics["mappings"]} == {"m0", "m1"}


async def test_sample_logs_transitions(now: Now, caplog: pytest.LogCaptureFixture):
    monitor, env = make_monitor(1, now)
    await monitor._sample()
    fail(env, "m0", 11)

    await monitor._sample()

    assert "Mapping m0 is now unhealthy (was healthy)" in caplog.text
