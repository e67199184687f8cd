"""
test_health.py — Tests for health probes and structured logging.

Covers:
    • Scheduler probe (disabled, stopped, fresh and stale sweeps)
    • Report status aggregation
    • In-memory backends skip network probes
    • log_context scoping and JSON log lines

Run with:
    pytest tests/test_health.py -v
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from hosla.app.core import health
from hosla.app.core.config import settings
from hosla.app.core.health import (
    ComponentHealth,
    HealthReport,
    HealthStatus,
    check_scheduler,
    run_health_check,
)
from hosla.app.core.logging_config import JSONFormatter, get_log_context, log_context
from hosla.app.emergency.escalation import SweepReport


class _StubScheduler:
    def __init__(self, running=True, last_sweep_ago=None, interval=60.0):
        self.is_running = running
        self.sweep_interval_seconds = interval
        self.last_report = None
        if last_sweep_ago is not None:
            started = datetime.now(timezone.utc) - timedelta(seconds=last_sweep_ago)
            self.last_report = SweepReport(started_at=started, examined=4)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Scheduler Probe
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerProbe:

    def test_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
        assert check_scheduler(None).status is HealthStatus.HEALTHY

    def test_stopped(self, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)
        comp = check_scheduler(_StubScheduler(running=False))
        assert comp.status is HealthStatus.DEGRADED

    def test_fresh_sweep(self, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)
        comp = check_scheduler(_StubScheduler(last_sweep_ago=30))
        assert comp.status is HealthStatus.HEALTHY
        assert comp.details["examined"] == 4

    def test_stale_sweep(self, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)
        comp = check_scheduler(_StubScheduler(last_sweep_ago=600))
        assert comp.status is HealthStatus.DEGRADED


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Report
# ═══════════════════════════════════════════════════════════════════════════

class TestReport:

    def test_worst_component_wins(self):
        report = HealthReport(components=[
            ComponentHealth(name="a"),
            ComponentHealth(name="b", status=HealthStatus.DEGRADED),
        ])
        assert report.status is HealthStatus.DEGRADED
        report.components.append(ComponentHealth(name="c", status=HealthStatus.UNHEALTHY))
        assert report.to_dict()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_memory_backends_are_healthy(self, monkeypatch):
        monkeypatch.setattr(settings, "ALERT_STORE_BACKEND", "memory")
        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "memory")
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)

        report = await run_health_check()

        assert report.status is HealthStatus.HEALTHY
        assert [c.name for c in report.components] == [
            "database", "redis", "escalation_scheduler",
        ]

    @pytest.mark.asyncio
    async def test_redis_down_degrades(self, monkeypatch):
        async def no_pong():
            return False

        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "redis")
        monkeypatch.setattr(health, "ping_redis", no_pong)

        comp = await health.check_redis()
        assert comp.status is HealthStatus.DEGRADED


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Logging
# ═══════════════════════════════════════════════════════════════════════════

class TestLogContext:

    def test_scoped_and_restored(self):
        with log_context(request_id="r1"):
            with log_context(alert_id="a1", user_id=None):
                assert get_log_context() == {"request_id": "r1", "alert_id": "a1"}
            assert get_log_context() == {"request_id": "r1"}
        assert get_log_context() == {}

    def test_json_line_carries_context_and_extras(self):
        record = logging.LogRecord(
            "hosla.test", logging.WARNING, __file__, 1, "escalated %s", ("a1",), None,
        )
        record.escalation_level = 2
        with log_context(alert_id="a1"):
            line = json.loads(JSONFormatter().format(record))

        assert line["msg"] == "escalated a1"
        assert line["level"] == "WARNING"
        assert line["ctx"] == {"alert_id": "a1"}
        assert line["escalation_level"] == 2
