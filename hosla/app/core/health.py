"""
Health probes for the emergency engine.

    Component               Unhealthy when               Degraded when
    ─────────               ──────────────               ─────────────
    database (alert store)  SELECT 1 fails               -
    redis (creation gate)   -                            PING fails (gate open)
    escalation_scheduler    -                            stopped, or last sweep
                                                         older than 3 intervals

``/health/ready`` answers 503 only when the report is UNHEALTHY: a degraded
gate or a stalled sweep still lets alerts be raised and fanned out.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text

from hosla.app.core.cache import ping_redis
from hosla.app.core.config import settings
from hosla.app.core.database import get_session_factory

if TYPE_CHECKING:
    from hosla.app.emergency.escalation import EscalationScheduler

logger = logging.getLogger(__name__)

_STALE_SWEEP_FACTOR = 3
_started = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.latency_ms is not None:
            d["latency_ms"] = round(self.latency_ms, 2)
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        statuses = {c.status for c in self.components}
        for worst in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
            if worst in statuses:
                return worst
        return HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _started, 1),
            "components": [c.to_dict() for c in self.components],
        }


async def check_database() -> ComponentHealth:
    comp = ComponentHealth(name="database")
    if settings.ALERT_STORE_BACKEND == "memory":
        comp.message = "In-memory alert store"
        return comp
    start = time.monotonic()
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        logger.warning("Alert store health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    comp = ComponentHealth(name="redis")
    if settings.RATE_LIMIT_BACKEND != "redis":
        comp.message = "In-memory rate limit counters"
        return comp
    start = time.monotonic()
    if not await ping_redis():
        comp.status = HealthStatus.DEGRADED
        comp.message = "Redis unreachable; alert creation is not rate limited"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_scheduler(scheduler: Optional["EscalationScheduler"]) -> ComponentHealth:
    """Running state and freshness of the escalation sweep."""
    comp = ComponentHealth(name="escalation_scheduler")
    if not settings.SCHEDULER_ENABLED:
        comp.message = "Disabled by configuration"
        return comp
    if scheduler is None or not scheduler.is_running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Not running; overdue alerts will not escalate"
        return comp

    last = scheduler.last_report
    if last is None:
        comp.message = "Waiting for first sweep"
        return comp

    age = (datetime.now(timezone.utc) - last.started_at).total_seconds()
    comp.details = {
        "last_sweep_age_seconds": round(age, 1),
        "examined": last.examined,
        "failed": len(last.failed),
    }
    if age > _STALE_SWEEP_FACTOR * scheduler.sweep_interval_seconds:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Sweep is overdue"
    return comp


async def run_health_check(
    scheduler: Optional["EscalationScheduler"] = None,
) -> HealthReport:
    report = HealthReport()
    report.components.append(await check_database())
    report.components.append(await check_redis())
    report.components.append(check_scheduler(scheduler))
    return report
