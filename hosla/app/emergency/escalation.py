"""
escalation.py — Periodic sweep over active alerts.

═══════════════════════════════════════════════════════════════════════════
PER-ALERT DECISION (in order)
═══════════════════════════════════════════════════════════════════════════

    1. Older than 24h                → auto-resolve, done
    2. Responses received            → nothing to do
    3. Not older than 30 min         → nothing to do
    4. Level already 3               → nothing to do
    5. Escalated less than 30 min ago → wait for the next interval
    6. Otherwise                     → escalate one level, then notify the
                                       circle (resolved fresh) as round = level

An escalated, unanswered alert with no entries for its current round gets
that round sent on the next sweep.

The escalation itself is a conditional update on (still active, level as
observed, still unanswered), so overlapping sweeps and concurrent
responses never produce a double escalation.

Priority follows ``escalated_priority`` (LOW→MEDIUM at level 1,
MEDIUM→HIGH at level 2, HIGH→CRITICAL at level 3, otherwise unchanged).

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

An exception while handling one alert is logged and counted; the sweep
continues with the next alert and the failed one is picked up on the next
tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from hosla.app.core.logging_config import log_context
from hosla.app.emergency.dispatcher import NotificationDispatcher
from hosla.app.emergency.models import (
    DEFAULT_OVERDUE_AFTER,
    MAX_ESCALATION_LEVEL,
    Alert,
    _now,
    escalated_priority,
    is_overdue,
    is_stale,
)
from hosla.app.emergency.state_machine import AlertStateMachine
from hosla.app.emergency.store import AlertStore
from hosla.app.emergency.trust_circle import TrustCircleResolver

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_INTERVAL = timedelta(minutes=30)


@dataclass
class SweepReport:
    """What one sweep did."""
    started_at: datetime
    examined: int = 0
    escalated: List[str] = field(default_factory=list)
    auto_resolved: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "examined": self.examined,
            "escalated": list(self.escalated),
            "auto_resolved": list(self.auto_resolved),
            "failed": dict(self.failed),
        }


class EscalationScheduler:
    """
    Escalates unanswered alerts and retires stale ones.

    Usage:
        scheduler = EscalationScheduler(store, machine, resolver, dispatcher)
        report = await scheduler.sweep()   # one pass, e.g. from a test

        await scheduler.start()            # background loop
        await scheduler.stop()
    """

    def __init__(
        self,
        store: AlertStore,
        state_machine: AlertStateMachine,
        resolver: TrustCircleResolver,
        dispatcher: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = _now,
        overdue_after: timedelta = DEFAULT_OVERDUE_AFTER,
        escalation_interval: timedelta = DEFAULT_ESCALATION_INTERVAL,
        max_level: int = MAX_ESCALATION_LEVEL,
        sweep_interval_seconds: float = 60.0,
    ):
        self.store = store
        self.state_machine = state_machine
        self.resolver = resolver
        self.dispatcher = dispatcher
        self._clock = clock
        self.overdue_after = overdue_after
        self.escalation_interval = escalation_interval
        self.max_level = max_level
        self.sweep_interval_seconds = sweep_interval_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ═══════════════════════════════════════════════════════════════════════
    # Sweep
    # ═══════════════════════════════════════════════════════════════════════

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Examine every active non-test alert once."""
        now = now or self._clock()
        report = SweepReport(started_at=now)

        for alert in await self.store.list_active(include_test=False):
            report.examined += 1
            with log_context(alert_id=alert.alert_id, originator_id=alert.originator_id):
                try:
                    await self._process(alert, now, report)
                except Exception as exc:
                    logger.exception(
                        "Sweep failed for alert %s: %s", alert.alert_id, exc,
                        extra={"alert_id": alert.alert_id},
                    )
                    report.failed[alert.alert_id] = str(exc)

        report.completed_at = self._clock()
        self.last_report = report
        if report.escalated or report.auto_resolved or report.failed:
            logger.info(
                "Sweep: %d examined, %d escalated, %d auto-resolved, %d failed",
                report.examined, len(report.escalated),
                len(report.auto_resolved), len(report.failed),
            )
        return report

    def _due_for_escalation(self, alert: Alert, now: datetime) -> bool:
        if not is_overdue(alert, now, after=self.overdue_after):
            return False
        if alert.escalation_level >= self.max_level:
            return False
        if alert.last_escalated_at is None:
            return True
        return now - alert.last_escalated_at > self.escalation_interval

    async def _process(self, alert: Alert, now: datetime, report: SweepReport) -> None:
        if is_stale(alert, now, ceiling=self.state_machine.auto_resolve_after):
            _, changed = await self.state_machine.try_auto_resolve(alert.alert_id, now)
            if changed:
                report.auto_resolved.append(alert.alert_id)
            return

        if not self._due_for_escalation(alert, now):
            # Current round never went out: the initial fan-out was lost after
            # the alert was stored, or a sweep failed between escalating and
            # notifying
            level = alert.escalation_level
            if not alert.responses and not alert.notified_in_round(level):
                await self._notify_round(alert, level)
            return

        escalated = await self.escalate(alert, now)
        if escalated is None:
            return
        report.escalated.append(alert.alert_id)
        await self._notify_round(escalated, escalated.escalation_level)

    async def _notify_round(self, alert: Alert, round_: int) -> None:
        contacts = await self.resolver.resolve_emergency_contacts(alert.originator_id)
        await self.dispatcher.fan_out(alert, contacts, round_)

    async def escalate(self, observed: Alert, now: datetime) -> Optional[Alert]:
        """
        Raise ``observed`` one escalation level.

        Returns the escalated alert, or None when the stored alert no longer
        matches what was observed (resolved, answered, or escalated by
        someone else).
        """
        expected_level = observed.escalation_level

        def mutator(alert: Alert) -> bool:
            if (
                not alert.is_active
                or alert.escalation_level != expected_level
                or alert.responses
                or alert.escalation_level >= self.max_level
            ):
                return False
            alert.escalation_level += 1
            alert.last_escalated_at = now
            alert.priority = escalated_priority(alert.priority, alert.escalation_level)
            return True

        alert, changed = await self.store.update(observed.alert_id, mutator)
        if not changed:
            return None

        logger.warning(
            "Emergency alert %s escalated to level %d [%s]",
            alert.alert_id, alert.escalation_level, alert.priority.value,
            extra={"alert_id": alert.alert_id, "escalation_level": alert.escalation_level,
                   "priority": alert.priority.value},
        )
        return alert

    # ═══════════════════════════════════════════════════════════════════════
    # Background loop
    # ═══════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Escalation scheduler started (every %.0fs)", self.sweep_interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Escalation scheduler stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.sweep()
                await asyncio.sleep(self.sweep_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("Escalation sweep error: %s", exc)
                await asyncio.sleep(self.sweep_interval_seconds)
