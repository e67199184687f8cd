"""
dispatcher.py — Trust-circle notification fan-out for one alert round.

═══════════════════════════════════════════════════════════════════════════
FAN-OUT STEPS
═══════════════════════════════════════════════════════════════════════════

    1. Test alert?        → empty report, no channel is touched
    2. Claim contacts     → one conditional store update appends a PENDING
                            entry for every contact without an entry for
                            (contact_id, round); only claimed contacts are
                            sent to, so racing fan-outs never double-send
    3. Send concurrently  → asyncio.gather, each send bounded by a timeout;
                            timeouts and channel errors become FAILED outcomes
    4. Record statuses    → delivery_status written back onto the alert's
                            entries while it is still active
    5. Notification rows  → one NotificationRecord per claimed contact

Round 0 is the initial fan-out; rounds 1..3 are escalation reminders.

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    [Reminder N] Someone in your trust circle needs help: need help.
    "<free text>" Location: <address>

The reminder prefix appears on escalation rounds only; the location only
for contacts allowed to see it.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hosla.app.core.logging_config import log_context
from hosla.app.emergency.channels.router import select_method
from hosla.app.emergency.models import (
    Alert,
    AlertPriority,
    ContactRef,
    DeliveryOutcome,
    DeliveryStatus,
    FanOutReport,
    NotificationRecord,
    NotifiedContact,
    _now,
)
from hosla.app.emergency.store import AlertStore
from hosla.app.emergency.tables import NotificationRecordRow

logger = logging.getLogger(__name__)

# deliver(contact, message, urgency) → DeliveryOutcome
DeliverFn = Callable[[ContactRef, str, AlertPriority], Awaitable[DeliveryOutcome]]


# ═══════════════════════════════════════════════════════════════════════════
# Message Builder
# ═══════════════════════════════════════════════════════════════════════════

def build_alert_message(alert: Alert, contact: ContactRef, round_: int) -> str:
    """Notification text for one contact in one round."""
    parts = []
    if round_ > 0:
        parts.append(f"[Reminder {round_}]")
    parts.append(f"Someone in your trust circle needs help: {alert.kind.label}.")
    if alert.message:
        parts.append(f'"{alert.message}"')
    if contact.can_view_location and alert.location:
        where = alert.location.describe()
        if where:
            parts.append(f"Location: {where}")
    return " ".join(parts)


# ═══════════════════════════════════════════════════════════════════════════
# Notification Record Sinks
# ═══════════════════════════════════════════════════════════════════════════

class NotificationRecordSink(ABC):
    @abstractmethod
    async def write(self, records: List[NotificationRecord]) -> None:
        ...


class InMemoryNotificationRecordSink(NotificationRecordSink):
    def __init__(self) -> None:
        self.records: List[NotificationRecord] = []

    async def write(self, records: List[NotificationRecord]) -> None:
        self.records.extend(records)

    def for_alert(self, alert_id: str) -> List[NotificationRecord]:
        return [r for r in self.records if r.alert_id == alert_id]

    def clear(self) -> None:
        self.records.clear()


class SqlNotificationRecordSink(NotificationRecordSink):
    """Appends rows to ``notification_records``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def write(self, records: List[NotificationRecord]) -> None:
        if not records:
            return
        async with self._session_factory() as session:
            session.add_all([
                NotificationRecordRow(
                    alert_id=r.alert_id,
                    contact_id=r.contact_id,
                    round=r.round,
                    method=r.method.value,
                    delivery_status=r.delivery_status.value,
                    error_message=r.error_message,
                    created_at=r.created_at,
                )
                for r in records
            ])
            await session.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """
    Delivers one alert round to a set of contacts, at most once each.

    Parameters
    ----------
    store : AlertStore
        Where claims and delivery statuses are recorded.
    deliver : DeliverFn
        Transport capability, e.g. ``ChannelRouter.deliver``.
    record_sink : NotificationRecordSink | None
        Defaults to an in-memory sink.
    timeout_seconds : float
        Upper bound for one ``deliver`` call, retries included.
    """

    def __init__(
        self,
        store: AlertStore,
        deliver: DeliverFn,
        record_sink: Optional[NotificationRecordSink] = None,
        *,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.deliver = deliver
        self.record_sink = record_sink or InMemoryNotificationRecordSink()
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def fan_out(
        self,
        alert: Alert,
        contacts: List[ContactRef],
        round_: int,
    ) -> FanOutReport:
        """
        Notify ``contacts`` about ``alert`` for ``round_``.

        Returns
        -------
        FanOutReport
            One outcome per contact this call actually sent to. Contacts
            already claimed for the round (by this or another caller) are
            left out.
        """
        report = FanOutReport(alert_id=alert.alert_id, round=round_, started_at=self._clock())

        if alert.is_test_alert:
            report.skipped_test_alert = True
            report.completed_at = self._clock()
            return report

        claimed, current = await self._claim(alert.alert_id, contacts, round_)
        if not claimed:
            logger.debug(
                "Nothing to send for alert %s round %d", alert.alert_id, round_,
                extra={"alert_id": alert.alert_id, "round": round_},
            )
            report.completed_at = self._clock()
            return report

        with log_context(alert_id=alert.alert_id, round=round_):
            outcomes = await asyncio.gather(
                *(self._send(current, contact, round_) for contact in claimed)
            )
        report.outcomes = list(outcomes)

        await self._record_statuses(alert.alert_id, report.outcomes, round_)
        await self.record_sink.write([
            NotificationRecord(
                alert_id=alert.alert_id,
                contact_id=o.contact_id,
                round=round_,
                method=o.method,
                delivery_status=o.status,
                created_at=o.attempted_at,
                error_message=o.error_message,
            )
            for o in report.outcomes
        ])

        report.completed_at = self._clock()
        logger.info(
            "Fan-out for alert %s round %d: %d/%d delivered, %d failed",
            alert.alert_id, round_,
            report.delivered_count, report.contacts_notified, report.failed_count,
            extra={"alert_id": alert.alert_id, "round": round_},
        )
        return report

    # ── Steps ──

    async def _claim(
        self,
        alert_id: str,
        contacts: List[ContactRef],
        round_: int,
    ) -> Tuple[List[ContactRef], Alert]:
        claimed: List[ContactRef] = []

        def mutator(candidate: Alert) -> bool:
            claimed.clear()
            if not candidate.is_active:
                return False
            taken = set(candidate.notified_in_round(round_))
            now = self._clock()
            for contact in contacts:
                if contact.contact_id in taken:
                    continue
                taken.add(contact.contact_id)
                candidate.notified_contacts.append(NotifiedContact(
                    contact_id=contact.contact_id,
                    round=round_,
                    method=select_method(contact),
                    notified_at=now,
                    delivery_status=DeliveryStatus.PENDING,
                ))
                claimed.append(contact)
            return bool(claimed)

        current, changed = await self.store.update(alert_id, mutator)
        return (list(claimed) if changed else []), current

    async def _send(self, alert: Alert, contact: ContactRef, round_: int) -> DeliveryOutcome:
        message = build_alert_message(alert, contact, round_)
        try:
            outcome = await asyncio.wait_for(
                self.deliver(contact, message, alert.priority),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome(
                contact_id=contact.contact_id,
                method=select_method(contact),
                status=DeliveryStatus.FAILED,
                error_message=f"delivery timed out after {self.timeout_seconds:.1f}s",
            )
        except Exception as exc:
            logger.warning(
                "Delivery to %s raised: %s", contact.contact_id, exc,
                extra={"alert_id": alert.alert_id, "contact_id": contact.contact_id},
            )
            outcome = DeliveryOutcome(
                contact_id=contact.contact_id,
                method=select_method(contact),
                status=DeliveryStatus.FAILED,
                error_message=str(exc),
            )
        outcome.round = round_
        return outcome

    async def _record_statuses(
        self,
        alert_id: str,
        outcomes: List[DeliveryOutcome],
        round_: int,
    ) -> None:
        statuses: Dict[str, DeliveryStatus] = {o.contact_id: o.status for o in outcomes}

        def mutator(candidate: Alert) -> bool:
            if not candidate.is_active:
                return False
            changed = False
            for entry in candidate.notified_contacts:
                if entry.round == round_ and entry.contact_id in statuses:
                    status = statuses[entry.contact_id]
                    if entry.delivery_status is not status:
                        entry.delivery_status = status
                        changed = True
            return changed

        await self.store.update(alert_id, mutator)
