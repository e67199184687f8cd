"""
service.py — External operations of the emergency engine.

``EmergencyService`` is the one object the HTTP layer talks to. It composes
the gate, state machine, resolver, dispatcher, response aggregator and
escalation scheduler, and adds the read-side queries (circle listing,
own alerts, statistics).

═══════════════════════════════════════════════════════════════════════════
CREATE FLOW
═══════════════════════════════════════════════════════════════════════════

    validate input ─▶ creation gate ─▶ persist (ACTIVE) ─▶ resolve contacts
                                                          │
                      none eligible ◀─────────────────────┤
                      NoEmergencyContactsError            │
                      (alert kept, id in details)         ▼
                                                     fan-out round 0

Production wiring (``get_emergency_service``):
    SqlAlertStore + SqlTrustCircleDirectory + SqlNotificationRecordSink
    Redis counters for the gate, ChannelRouter for delivery,
    HTTP collaborators when their URLs are configured.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from hosla.app.core.config import Settings, get_settings
from hosla.app.core.database import get_session_factory
from hosla.app.core.errors import ForbiddenError, NoEmergencyContactsError, ValidationError
from hosla.app.emergency.channels.router import ChannelRouter
from hosla.app.emergency.collaborators import (
    CreditAwarder,
    HttpCreditAwarder,
    HttpUserNotifier,
    LoggingCreditAwarder,
    LoggingUserNotifier,
    UserNotifier,
)
from hosla.app.emergency.dispatcher import (
    DeliverFn,
    InMemoryNotificationRecordSink,
    NotificationDispatcher,
    NotificationRecordSink,
    SqlNotificationRecordSink,
)
from hosla.app.emergency.escalation import EscalationScheduler
from hosla.app.emergency.models import (
    Alert,
    AlertKind,
    AlertStatus,
    FanOutReport,
    Location,
    ResponseType,
    _now,
)
from hosla.app.emergency.rate_limit import (
    AlertCreationGate,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)
from hosla.app.emergency.responses import ResponseAggregator
from hosla.app.emergency.state_machine import AlertStateMachine
from hosla.app.emergency.store import AlertStore, InMemoryAlertStore, SqlAlertStore
from hosla.app.emergency.trust_circle import (
    InMemoryTrustCircleDirectory,
    SqlTrustCircleDirectory,
    TrustCircleDirectory,
    TrustCircleResolver,
)

logger = logging.getLogger(__name__)

STATUS_FILTERS = ("active", "resolved", "cancelled", "all")


@dataclass
class CreateAlertResult:
    alert: Alert
    report: FanOutReport

    @property
    def contacts_notified(self) -> int:
        return self.report.contacts_notified


@dataclass
class CircleAlert:
    """An alert as seen by one member of the originator's circle."""
    alert: Alert
    can_respond: bool
    has_responded: bool


@dataclass
class AlertStats:
    period_days: int
    total_alerts: int = 0
    active_alerts: int = 0
    resolved_alerts: int = 0
    cancelled_alerts: int = 0
    response_rate: int = 0
    avg_resolution_minutes: int = 0
    breakdown: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_days": self.period_days,
            "summary": {
                "total_alerts": self.total_alerts,
                "active_alerts": self.active_alerts,
                "resolved_alerts": self.resolved_alerts,
                "cancelled_alerts": self.cancelled_alerts,
                "response_rate": self.response_rate,
                "avg_resolution_minutes": self.avg_resolution_minutes,
            },
            "breakdown": self.breakdown,
        }


def parse_status_filter(value: Optional[str]) -> Optional[AlertStatus]:
    """'all' → None; otherwise the matching AlertStatus."""
    value = (value or "active").lower()
    if value not in STATUS_FILTERS:
        raise ValidationError(
            f"Unknown status filter: {value}", field="status", allowed=list(STATUS_FILTERS),
        )
    return None if value == "all" else AlertStatus(value)


class EmergencyService:
    """Facade over the emergency engine components."""

    def __init__(
        self,
        store: AlertStore,
        directory: TrustCircleDirectory,
        deliver: DeliverFn,
        *,
        counters: Optional[CounterStore] = None,
        record_sink: Optional[NotificationRecordSink] = None,
        credit_awarder: Optional[CreditAwarder] = None,
        user_notifier: Optional[UserNotifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _now,
    ):
        cfg = settings or get_settings()
        self.settings = cfg
        self._clock = clock

        self.store = store
        self.resolver = TrustCircleResolver(directory)
        self.gate = AlertCreationGate(
            counters or InMemoryCounterStore(clock=clock),
            limit=cfg.ALERT_RATE_LIMIT_MAX,
            window_seconds=cfg.ALERT_RATE_LIMIT_WINDOW_SECONDS,
            clock=clock,
        )
        self.state_machine = AlertStateMachine(
            store,
            clock=clock,
            max_message_length=cfg.EMERGENCY_MAX_MESSAGE_LENGTH,
            auto_resolve_after=timedelta(hours=cfg.AUTO_RESOLVE_HOURS),
        )
        self.dispatcher = NotificationDispatcher(
            store,
            deliver,
            record_sink or InMemoryNotificationRecordSink(),
            timeout_seconds=cfg.DELIVERY_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.responses = ResponseAggregator(
            store,
            self.resolver,
            credit_awarder or LoggingCreditAwarder(),
            user_notifier or LoggingUserNotifier(),
            reward_points=cfg.RESPONSE_REWARD_POINTS,
            max_length=cfg.RESPONSE_MAX_LENGTH,
            clock=clock,
        )
        self.scheduler = EscalationScheduler(
            store,
            self.state_machine,
            self.resolver,
            self.dispatcher,
            clock=clock,
            overdue_after=timedelta(minutes=cfg.OVERDUE_AFTER_MINUTES),
            escalation_interval=timedelta(minutes=cfg.ESCALATION_INTERVAL_MINUTES),
            max_level=cfg.MAX_ESCALATION_LEVEL,
            sweep_interval_seconds=cfg.SWEEP_INTERVAL_SECONDS,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Commands
    # ═══════════════════════════════════════════════════════════════════════

    async def create_alert(
        self,
        originator_id: str,
        kind: Union[str, AlertKind],
        message: Optional[str] = None,
        location: Optional[Union[Dict[str, Any], Location]] = None,
    ) -> CreateAlertResult:
        """
        Raise an alert and notify the originator's emergency contacts.

        Raises
        ------
        InvalidKindError, ValidationError
            Bad input; nothing stored, gate not consumed.
        RateLimitedError
            Too many alerts in the current window; nothing stored.
        NoEmergencyContactsError
            The alert was stored but nobody is eligible to hear about it.
        """
        alert_kind, text, where = self.state_machine.validate(kind, message, location)
        await self.gate.check(originator_id)

        alert = await self.state_machine.create(originator_id, alert_kind, text, where)

        contacts = await self.resolver.resolve_emergency_contacts(originator_id)
        if not contacts:
            logger.warning(
                "Alert %s from %s has no emergency contacts to notify",
                alert.alert_id, originator_id,
                extra={"alert_id": alert.alert_id, "originator_id": originator_id},
            )
            raise NoEmergencyContactsError(alert.alert_id, originator_id)

        report = await self.dispatcher.fan_out(alert, contacts, 0)
        return CreateAlertResult(alert=alert, report=report)

    async def create_test_alert(self, originator_id: str) -> Alert:
        """Store a test alert. Bypasses the gate and notifies nobody."""
        return await self.state_machine.create_test(originator_id)

    async def respond_to_alert(
        self,
        alert_id: str,
        responder_id: str,
        text: str,
        response_type: Union[str, ResponseType] = ResponseType.TEXT,
        estimated_arrival: Optional[datetime] = None,
    ) -> int:
        """Record a response; returns the alert's response count."""
        alert = await self.responses.record_response(
            alert_id, responder_id, text, response_type, estimated_arrival,
        )
        return len(alert.responses)

    async def resolve_alert(
        self,
        alert_id: str,
        requester_id: str,
        note: Optional[str] = None,
    ) -> Alert:
        return await self.state_machine.resolve(alert_id, requester_id, note)

    async def cancel_alert(self, alert_id: str, requester_id: str) -> Alert:
        return await self.state_machine.cancel(alert_id, requester_id)

    # ═══════════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════════

    async def list_alerts_for_circle(
        self,
        viewer_id: str,
        status_filter: Optional[str] = "active",
    ) -> List[CircleAlert]:
        """
        Alerts from everyone whose circle includes ``viewer_id``, plus the
        viewer's own. Test alerts are left out. Highest priority first,
        newest first within a priority.
        """
        status = parse_status_filter(status_filter)
        owners = await self.resolver.circle_owners_for(viewer_id)
        originators = list(dict.fromkeys([*owners, viewer_id]))

        alerts = await self.store.list_by_originators(originators, status=status)
        alerts.sort(key=lambda a: (a.priority.rank, a.created_at), reverse=True)

        eligible: Dict[str, bool] = {}
        views = []
        for alert in alerts:
            if alert.originator_id not in eligible:
                eligible[alert.originator_id] = (
                    alert.originator_id != viewer_id
                    and await self.resolver.is_emergency_contact(alert.originator_id, viewer_id)
                )
            views.append(CircleAlert(
                alert=alert,
                can_respond=alert.is_active and eligible[alert.originator_id],
                has_responded=alert.has_responded(viewer_id),
            ))
        return views

    async def get_alert_for_viewer(self, alert_id: str, viewer_id: str) -> Alert:
        """The alert, if the viewer raised it or belongs to the originator's circle."""
        alert = await self.state_machine.get(alert_id)
        if alert.originator_id == viewer_id:
            return alert
        if await self.resolver.is_member(alert.originator_id, viewer_id):
            return alert
        raise ForbiddenError("Not authorized to view this alert", alert_id=alert_id)

    async def list_my_alerts(
        self,
        user_id: str,
        status_filter: Optional[str] = "all",
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """The user's own non-test alerts, newest first, paginated."""
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be ≥ 1 and limit within 1..100", field="page")
        status = parse_status_filter(status_filter)
        alerts = await self.store.list_by_originators([user_id], status=status)
        start = (page - 1) * limit
        return {
            "items": alerts[start:start + limit],
            "page": page,
            "limit": limit,
            "total": len(alerts),
        }

    async def alert_stats(self, user_id: str, period_days: int = 30) -> AlertStats:
        """Counts and resolution time over the user's alerts of the last ``period_days``."""
        if period_days < 1:
            raise ValidationError("period must be at least 1 day", field="period")
        since = self._clock() - timedelta(days=period_days)
        alerts = [
            a for a in await self.store.list_by_originators([user_id])
            if a.created_at >= since
        ]

        stats = AlertStats(period_days=period_days, total_alerts=len(alerts))
        by_status = Counter(a.status for a in alerts)
        stats.active_alerts = by_status[AlertStatus.ACTIVE]
        stats.resolved_alerts = by_status[AlertStatus.RESOLVED]
        stats.cancelled_alerts = by_status[AlertStatus.CANCELLED]
        if alerts:
            stats.response_rate = round(stats.resolved_alerts / len(alerts) * 100)

        durations = [
            (a.resolved_at - a.created_at).total_seconds()
            for a in alerts
            if a.status is AlertStatus.RESOLVED and a.resolved_at
        ]
        if durations:
            stats.avg_resolution_minutes = round(sum(durations) / len(durations) / 60)

        breakdown = Counter((a.kind.value, a.status.value) for a in alerts)
        stats.breakdown = [
            {"kind": kind, "status": status, "count": count}
            for (kind, status), count in sorted(breakdown.items())
        ]
        return stats


# ═══════════════════════════════════════════════════════════════════════════
# Global Instance
# ═══════════════════════════════════════════════════════════════════════════

_service: Optional[EmergencyService] = None


def build_emergency_service(settings: Settings) -> EmergencyService:
    """Wire the engine from settings."""
    if settings.ALERT_STORE_BACKEND == "memory":
        store: AlertStore = InMemoryAlertStore(max_attempts=settings.STORE_MAX_CAS_ATTEMPTS)
        directory: TrustCircleDirectory = InMemoryTrustCircleDirectory()
        record_sink: NotificationRecordSink = InMemoryNotificationRecordSink()
    else:
        session_factory = get_session_factory()
        store = SqlAlertStore(session_factory, max_attempts=settings.STORE_MAX_CAS_ATTEMPTS)
        directory = SqlTrustCircleDirectory(session_factory)
        record_sink = SqlNotificationRecordSink(session_factory)

    counters: CounterStore = (
        RedisCounterStore() if settings.RATE_LIMIT_BACKEND == "redis" else InMemoryCounterStore()
    )

    credit_awarder: CreditAwarder = (
        HttpCreditAwarder(
            settings.POINTS_SERVICE_URL, timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
        if settings.POINTS_SERVICE_URL else LoggingCreditAwarder()
    )
    user_notifier: UserNotifier = (
        HttpUserNotifier(
            settings.NOTIFICATIONS_SERVICE_URL,
            timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
        if settings.NOTIFICATIONS_SERVICE_URL else LoggingUserNotifier()
    )

    return EmergencyService(
        store,
        directory,
        ChannelRouter.from_settings(settings).deliver,
        counters=counters,
        record_sink=record_sink,
        credit_awarder=credit_awarder,
        user_notifier=user_notifier,
        settings=settings,
    )


def get_emergency_service() -> EmergencyService:
    """Get or create the process-wide service."""
    global _service
    if _service is None:
        _service = build_emergency_service(get_settings())
        logger.info(
            "Emergency service wired (store=%s, rate limit=%s)",
            _service.settings.ALERT_STORE_BACKEND, _service.settings.RATE_LIMIT_BACKEND,
        )
    return _service
