"""
state_machine.py — Alert lifecycle transitions.

    active ──resolve(originator)──────────▶ resolved
    active ──cancel(originator)───────────▶ cancelled
    active ──auto_resolve(older than 24h)─▶ resolved ("auto-resolved")

resolved / cancelled are terminal: every transition out of them fails with
InvalidTransitionError, except ``auto_resolve`` which is a silent no-op so
overlapping sweeps stay harmless.

Every write goes through ``AlertStore.update`` so it is linearised with
fan-out claims, escalations and responses on the same alert.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple, Union

from hosla.app.core.errors import (
    InvalidKindError,
    InvalidTransitionError,
    NotOriginatorError,
    ValidationError,
)
from hosla.app.emergency.models import (
    AUTO_RESOLVE_NOTE,
    DEFAULT_AUTO_RESOLVE_AFTER,
    Alert,
    AlertKind,
    AlertPriority,
    AlertStatus,
    Location,
    _now,
    initial_priority,
    is_stale,
)
from hosla.app.emergency.store import AlertStore

logger = logging.getLogger(__name__)

TEST_ALERT_MESSAGE = "This is a test alert to check the emergency system"
DEFAULT_MAX_MESSAGE_LENGTH = 500


def parse_kind(kind: Union[str, AlertKind]) -> AlertKind:
    """Validate an alert kind, raising InvalidKindError for unknown values."""
    if isinstance(kind, AlertKind):
        return kind
    try:
        return AlertKind(kind)
    except ValueError:
        raise InvalidKindError(str(kind), [k.value for k in AlertKind]) from None


def parse_location(data: Optional[Union[Dict[str, Any], Location]]) -> Optional[Location]:
    """Build a Location, checking coordinate ranges."""
    if data is None:
        return None
    location = data if isinstance(data, Location) else Location.from_dict(data)
    if location.latitude is not None and not -90 <= location.latitude <= 90:
        raise ValidationError("Latitude must be between -90 and 90", field="location.latitude")
    if location.longitude is not None and not -180 <= location.longitude <= 180:
        raise ValidationError(
            "Longitude must be between -180 and 180", field="location.longitude",
        )
    return location


class AlertStateMachine:
    """
    Owns creation and the status transitions of alerts.

    Usage:
        machine = AlertStateMachine(store)
        alert = await machine.create("u1", "need_help", message="fell down")
        await machine.resolve(alert.alert_id, "u1", note="I'm fine now")
    """

    def __init__(
        self,
        store: AlertStore,
        *,
        clock: Callable[[], datetime] = _now,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
        auto_resolve_after: timedelta = DEFAULT_AUTO_RESOLVE_AFTER,
    ):
        self.store = store
        self._clock = clock
        self.max_message_length = max_message_length
        self.auto_resolve_after = auto_resolve_after

    # ── Creation ──

    def validate(
        self,
        kind: Union[str, AlertKind],
        message: Optional[str] = None,
        location: Optional[Union[Dict[str, Any], Location]] = None,
    ) -> Tuple[AlertKind, Optional[str], Optional[Location]]:
        """Normalised (kind, message, location) or an InvalidKind/Validation error."""
        alert_kind = parse_kind(kind)
        text = message.strip() if message else None
        if text and len(text) > self.max_message_length:
            raise ValidationError(
                f"Message must be at most {self.max_message_length} characters",
                field="message",
                max_length=self.max_message_length,
            )
        return alert_kind, text or None, parse_location(location)

    async def create(
        self,
        originator_id: str,
        kind: Union[str, AlertKind],
        message: Optional[str] = None,
        location: Optional[Union[Dict[str, Any], Location]] = None,
        priority: Optional[AlertPriority] = None,
    ) -> Alert:
        """Validate and persist a new ACTIVE alert."""
        alert_kind, text, where = self.validate(kind, message, location)

        now = self._clock()
        alert = Alert(
            originator_id=originator_id,
            kind=alert_kind,
            message=text,
            location=where,
            priority=priority or initial_priority(alert_kind),
            created_at=now,
            updated_at=now,
        )
        stored = await self.store.insert(alert)
        logger.info(
            "Emergency alert %s created by %s [%s/%s]",
            stored.alert_id, originator_id, alert_kind.value, stored.priority.value,
            extra={"alert_id": stored.alert_id, "originator_id": originator_id,
                   "priority": stored.priority.value},
        )
        return stored

    async def create_test(self, originator_id: str) -> Alert:
        """Persist a low-priority test alert. It never notifies anyone."""
        now = self._clock()
        alert = Alert(
            originator_id=originator_id,
            kind=AlertKind.WANT_TO_TALK,
            message=TEST_ALERT_MESSAGE,
            priority=AlertPriority.LOW,
            is_test_alert=True,
            created_at=now,
            updated_at=now,
        )
        stored = await self.store.insert(alert)
        logger.info(
            "Test alert %s created by %s", stored.alert_id, originator_id,
            extra={"alert_id": stored.alert_id, "originator_id": originator_id},
        )
        return stored

    async def get(self, alert_id: str) -> Alert:
        return await self.store.require(alert_id)

    # ── Transitions ──

    async def resolve(
        self,
        alert_id: str,
        requester_id: str,
        note: Optional[str] = None,
    ) -> Alert:
        """Originator marks the alert resolved."""
        now = self._clock()

        def mutator(alert: Alert) -> bool:
            self._check_originator(alert, requester_id, "resolve")
            self._check_active(alert, "resolve")
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = requester_id
            alert.resolution_note = note.strip() if note and note.strip() else None
            return True

        alert, _ = await self.store.update(alert_id, mutator)
        logger.info(
            "Emergency alert %s resolved by %s", alert_id, requester_id,
            extra={"alert_id": alert_id},
        )
        return alert

    async def cancel(self, alert_id: str, requester_id: str) -> Alert:
        """Originator withdraws the alert."""

        def mutator(alert: Alert) -> bool:
            self._check_originator(alert, requester_id, "cancel")
            self._check_active(alert, "cancel")
            alert.status = AlertStatus.CANCELLED
            return True

        alert, _ = await self.store.update(alert_id, mutator)
        logger.info(
            "Emergency alert %s cancelled by %s", alert_id, requester_id,
            extra={"alert_id": alert_id},
        )
        return alert

    async def auto_resolve(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        """
        Resolve an ACTIVE alert past the auto-resolve ceiling.

        Returns the stored alert unchanged when it is already terminal or
        not yet stale.
        """
        alert, _ = await self.try_auto_resolve(alert_id, now)
        return alert

    async def try_auto_resolve(
        self,
        alert_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Alert, bool]:
        """``auto_resolve`` that also reports whether this call resolved it."""
        now = now or self._clock()

        def mutator(alert: Alert) -> bool:
            if not is_stale(alert, now, ceiling=self.auto_resolve_after):
                return False
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = None
            alert.resolution_note = AUTO_RESOLVE_NOTE
            return True

        alert, changed = await self.store.update(alert_id, mutator)
        if changed:
            logger.info(
                "Emergency alert %s auto-resolved after %s", alert_id, self.auto_resolve_after,
                extra={"alert_id": alert_id},
            )
        return alert, changed

    # ── Guards ──

    @staticmethod
    def _check_originator(alert: Alert, requester_id: str, action: str) -> None:
        if alert.originator_id != requester_id:
            raise NotOriginatorError(alert.alert_id, requester_id, action)

    @staticmethod
    def _check_active(alert: Alert, action: str) -> None:
        if not alert.is_active:
            raise InvalidTransitionError(alert.alert_id, alert.status.value, action)
