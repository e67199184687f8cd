"""
test_state_machine.py — Tests for alert creation and lifecycle transitions.

Covers:
    • Creation (priority by kind, validation of kind, message, location)
    • Test alerts
    • Resolve / cancel guards (originator only, terminal states)
    • Auto-resolve ceiling and idempotence

Run with:
    pytest tests/test_state_machine.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from hosla.app.core.errors import (
    InvalidKindError,
    InvalidTransitionError,
    NotFoundError,
    NotOriginatorError,
    ValidationError,
)
from hosla.app.emergency.models import (
    AUTO_RESOLVE_NOTE,
    AlertKind,
    AlertPriority,
    AlertStatus,
)
from hosla.app.emergency.state_machine import (
    TEST_ALERT_MESSAGE,
    AlertStateMachine,
    parse_location,
)
from tests.conftest import T0


def _make_machine(store, clock, **kwargs) -> AlertStateMachine:
    return AlertStateMachine(store, clock=clock, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind,priority", [
        ("not_feeling_well", AlertPriority.HIGH),
        ("need_help", AlertPriority.MEDIUM),
        ("want_to_talk", AlertPriority.LOW),
    ])
    async def test_priority_follows_kind(self, store, clock, kind, priority):
        alert = await _make_machine(store, clock).create("asha", kind)
        assert alert.priority is priority
        assert alert.status is AlertStatus.ACTIVE
        assert alert.escalation_level == 0
        assert alert.created_at == T0

    @pytest.mark.asyncio
    async def test_alert_is_persisted(self, store, clock):
        alert = await _make_machine(store, clock).create(
            "asha", "need_help", message="  stuck on the stairs  ",
            location={"latitude": 12.97, "longitude": 77.59},
        )
        stored = await store.get(alert.alert_id)
        assert stored.message == "stuck on the stairs"
        assert stored.location.latitude == 12.97

    @pytest.mark.asyncio
    async def test_unknown_kind(self, store, clock):
        with pytest.raises(InvalidKindError) as exc_info:
            await _make_machine(store, clock).create("asha", "panic")
        assert "need_help" in exc_info.value.details["allowed"]
        assert await store.list_active() == []

    @pytest.mark.asyncio
    async def test_message_too_long(self, store, clock):
        machine = _make_machine(store, clock, max_message_length=10)
        with pytest.raises(ValidationError) as exc_info:
            await machine.create("asha", "need_help", message="x" * 11)
        assert exc_info.value.details["field"] == "message"

    @pytest.mark.asyncio
    async def test_blank_message_dropped(self, store, clock):
        alert = await _make_machine(store, clock).create("asha", "need_help", message="   ")
        assert alert.message is None

    def test_latitude_out_of_range(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_location({"latitude": 91, "longitude": 0})
        assert exc_info.value.details["field"] == "location.latitude"

    def test_longitude_out_of_range(self):
        with pytest.raises(ValidationError):
            parse_location({"latitude": 0, "longitude": -181})

    @pytest.mark.asyncio
    async def test_test_alert(self, store, clock):
        alert = await _make_machine(store, clock).create_test("asha")
        assert alert.is_test_alert is True
        assert alert.kind is AlertKind.WANT_TO_TALK
        assert alert.priority is AlertPriority.LOW
        assert alert.message == TEST_ALERT_MESSAGE

    @pytest.mark.asyncio
    async def test_get_unknown(self, store, clock):
        with pytest.raises(NotFoundError):
            await _make_machine(store, clock).get("missing")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Resolve and Cancel
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitions:

    @pytest.mark.asyncio
    async def test_resolve(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        clock.advance(minutes=12)

        resolved = await machine.resolve(alert.alert_id, "asha", note=" all good ")

        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.resolved_at == T0 + timedelta(minutes=12)
        assert resolved.resolved_by == "asha"
        assert resolved.resolution_note == "all good"

    @pytest.mark.asyncio
    async def test_only_originator_resolves(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        with pytest.raises(NotOriginatorError):
            await machine.resolve(alert.alert_id, "ravi")
        assert (await store.get(alert.alert_id)).status is AlertStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_second_resolve_rejected(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        first = await machine.resolve(alert.alert_id, "asha")

        clock.advance(minutes=5)
        with pytest.raises(InvalidTransitionError):
            await machine.resolve(alert.alert_id, "asha")
        assert (await store.get(alert.alert_id)).resolved_at == first.resolved_at

    @pytest.mark.asyncio
    async def test_cancel(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "want_to_talk")
        cancelled = await machine.cancel(alert.alert_id, "asha")
        assert cancelled.status is AlertStatus.CANCELLED
        assert cancelled.resolved_at is None

    @pytest.mark.asyncio
    async def test_cancel_after_resolve_rejected(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        await machine.resolve(alert.alert_id, "asha")
        with pytest.raises(InvalidTransitionError):
            await machine.cancel(alert.alert_id, "asha")

    @pytest.mark.asyncio
    async def test_only_originator_cancels(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        with pytest.raises(NotOriginatorError):
            await machine.cancel(alert.alert_id, "ravi")


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Auto-resolve
# ═══════════════════════════════════════════════════════════════════════════

class TestAutoResolve:

    @pytest.mark.asyncio
    async def test_noop_before_ceiling(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        clock.advance(hours=23)

        after, changed = await machine.try_auto_resolve(alert.alert_id)

        assert changed is False
        assert after.status is AlertStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_resolves_after_ceiling(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        now = clock.advance(hours=25)

        after = await machine.auto_resolve(alert.alert_id)

        assert after.status is AlertStatus.RESOLVED
        assert after.resolution_note == AUTO_RESOLVE_NOTE
        assert after.resolved_by is None
        assert after.resolved_at == now

    @pytest.mark.asyncio
    async def test_idempotent(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        clock.advance(hours=25)
        first = await machine.auto_resolve(alert.alert_id)

        clock.advance(hours=1)
        second, changed = await machine.try_auto_resolve(alert.alert_id)

        assert changed is False
        assert second.resolved_at == first.resolved_at
        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_leaves_cancelled_alone(self, store, clock):
        machine = _make_machine(store, clock)
        alert = await machine.create("asha", "need_help")
        await machine.cancel(alert.alert_id, "asha")
        clock.advance(hours=30)

        after = await machine.auto_resolve(alert.alert_id)
        assert after.status is AlertStatus.CANCELLED
