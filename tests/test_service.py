"""
test_service.py — Tests for the EmergencyService facade.

Covers:
    • Create flow (fan-out, no contacts, rate limiting, test alerts)
    • Respond / resolve / cancel through the facade
    • Circle listing (visibility, order, can_respond, status filter)
    • Viewer access, own alerts with pagination, statistics

Run with:
    pytest tests/test_service.py -v
"""

from __future__ import annotations

import pytest

from hosla.app.core.errors import (
    ForbiddenError,
    InvalidKindError,
    NoEmergencyContactsError,
    RateLimitedError,
    ValidationError,
)
from hosla.app.emergency import collaborators
from hosla.app.emergency.collaborators import LoggingCreditAwarder, LoggingUserNotifier
from hosla.app.emergency.models import AlertPriority, AlertStatus, NotificationMethod
from hosla.app.emergency.service import EmergencyService, parse_status_filter
from hosla.app.emergency.trust_circle import TrustCircleMember


def _make_service(store, directory, channel, clock, settings) -> EmergencyService:
    return EmergencyService(store, directory, channel, settings=settings, clock=clock)


def _seed_circles(directory):
    directory.add_member("asha", TrustCircleMember(member_id="ravi"))
    directory.add_member("asha", TrustCircleMember(
        member_id="kiran", preferred_method=NotificationMethod.SMS,
        phone_number="+919800000002", is_emergency_contact=False,
    ))
    directory.add_member("meera", TrustCircleMember(member_id="ravi"))


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Create Flow
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAlert:

    @pytest.mark.asyncio
    async def test_notifies_emergency_contacts(self, store, directory, channel, clock, test_settings):
        directory.add_member("asha", TrustCircleMember(member_id="ravi"))
        directory.add_member("asha", TrustCircleMember(member_id="meera"))
        service = _make_service(store, directory, channel, clock, test_settings)

        result = await service.create_alert("asha", "need_help", message="I fell")

        assert result.contacts_notified == 2
        assert result.alert.priority is AlertPriority.MEDIUM
        assert sorted(c[0] for c in channel.calls) == ["meera", "ravi"]
        stored = await store.get(result.alert.alert_id)
        assert set(stored.notified_in_round(0)) == {"ravi", "meera"}

    @pytest.mark.asyncio
    async def test_no_contacts_keeps_alert(self, store, directory, channel, clock, test_settings):
        service = _make_service(store, directory, channel, clock, test_settings)

        with pytest.raises(NoEmergencyContactsError) as exc_info:
            await service.create_alert("asha", "not_feeling_well")

        alert_id = exc_info.value.details["alert_id"]
        stored = await store.get(alert_id)
        assert stored.status is AlertStatus.ACTIVE
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_fourth_alert_in_window_rejected(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        for _ in range(3):
            await service.create_alert("asha", "need_help")

        with pytest.raises(RateLimitedError) as exc_info:
            await service.create_alert("asha", "need_help")

        assert exc_info.value.retry_after == 300
        assert len(await store.list_by_originators(["asha"])) == 3

    @pytest.mark.asyncio
    async def test_invalid_input_does_not_use_quota(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        for _ in range(3):
            with pytest.raises(InvalidKindError):
                await service.create_alert("asha", "sos")

        for _ in range(3):
            await service.create_alert("asha", "need_help")

    @pytest.mark.asyncio
    async def test_test_alerts_bypass_gate_and_notify_nobody(
        self, store, directory, channel, clock, test_settings,
    ):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)

        alerts = [await service.create_test_alert("asha") for _ in range(5)]

        assert all(a.is_test_alert for a in alerts)
        assert channel.calls == []
        await service.create_alert("asha", "need_help")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Commands
# ═══════════════════════════════════════════════════════════════════════════

class TestCommands:

    @pytest.mark.asyncio
    async def test_respond_returns_count(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        result = await service.create_alert("asha", "need_help")

        assert await service.respond_to_alert(result.alert.alert_id, "ravi", "coming") == 1
        assert await service.respond_to_alert(result.alert.alert_id, "ravi", "here") == 2

    @pytest.mark.asyncio
    async def test_resolve_and_cancel(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        first = (await service.create_alert("asha", "need_help")).alert
        second = (await service.create_alert("asha", "want_to_talk")).alert

        resolved = await service.resolve_alert(first.alert_id, "asha", "fine now")
        cancelled = await service.cancel_alert(second.alert_id, "asha")

        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.resolution_note == "fine now"
        assert cancelled.status is AlertStatus.CANCELLED

    def test_default_collaborators_only_log(self, store, directory, channel, clock, test_settings):
        service = _make_service(store, directory, channel, clock, test_settings)

        assert isinstance(service.responses.credit_awarder, LoggingCreditAwarder)
        assert isinstance(service.responses.user_notifier, LoggingUserNotifier)
        assert not hasattr(collaborators, "RecordingCreditAwarder")
        assert not hasattr(collaborators, "RecordingUserNotifier")


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestCircleListing:

    @pytest.mark.asyncio
    async def test_visibility_and_order(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        asha_alert = (await service.create_alert("asha", "need_help")).alert
        clock.advance(minutes=1)
        meera_alert = (await service.create_alert("meera", "not_feeling_well")).alert
        clock.advance(minutes=1)
        with pytest.raises(NoEmergencyContactsError) as exc_info:
            await service.create_alert("ravi", "want_to_talk")
        ravi_alert_id = exc_info.value.details["alert_id"]
        await service.create_test_alert("asha")

        views = await service.list_alerts_for_circle("ravi")

        assert [v.alert.alert_id for v in views] == [
            meera_alert.alert_id, asha_alert.alert_id, ravi_alert_id,
        ]
        by_id = {v.alert.alert_id: v for v in views}
        assert by_id[asha_alert.alert_id].can_respond is True
        assert by_id[ravi_alert_id].can_respond is False

    @pytest.mark.asyncio
    async def test_non_emergency_member_cannot_respond(
        self, store, directory, channel, clock, test_settings,
    ):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        await service.create_alert("asha", "need_help")

        views = await service.list_alerts_for_circle("kiran")

        assert len(views) == 1
        assert views[0].can_respond is False

    @pytest.mark.asyncio
    async def test_status_filter(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        alert = (await service.create_alert("asha", "need_help")).alert
        await service.respond_to_alert(alert.alert_id, "ravi", "calling")
        await service.resolve_alert(alert.alert_id, "asha")

        assert await service.list_alerts_for_circle("ravi") == []
        resolved = await service.list_alerts_for_circle("ravi", "resolved")
        assert resolved[0].has_responded is True
        assert resolved[0].can_respond is False
        assert len(await service.list_alerts_for_circle("ravi", "all")) == 1

    def test_unknown_status_filter(self):
        with pytest.raises(ValidationError):
            parse_status_filter("pending")
        assert parse_status_filter(None) is AlertStatus.ACTIVE
        assert parse_status_filter("all") is None


class TestViewerQueries:

    @pytest.mark.asyncio
    async def test_alert_visible_to_circle_only(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        alert = (await service.create_alert("asha", "need_help")).alert

        assert (await service.get_alert_for_viewer(alert.alert_id, "asha")).alert_id == alert.alert_id
        assert (await service.get_alert_for_viewer(alert.alert_id, "kiran")).alert_id == alert.alert_id
        with pytest.raises(ForbiddenError):
            await service.get_alert_for_viewer(alert.alert_id, "stranger")

    @pytest.mark.asyncio
    async def test_my_alerts_paginated(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        created = []
        for _ in range(3):
            created.append((await service.create_alert("asha", "need_help")).alert)
            clock.advance(minutes=1)
        await service.create_test_alert("asha")

        page = await service.list_my_alerts("asha", page=2, limit=2)

        assert page["total"] == 3
        assert [a.alert_id for a in page["items"]] == [created[0].alert_id]

    @pytest.mark.asyncio
    async def test_stats(self, store, directory, channel, clock, test_settings):
        _seed_circles(directory)
        service = _make_service(store, directory, channel, clock, test_settings)
        await service.create_alert("asha", "need_help")  # outside the period
        clock.advance(days=31)

        resolved = (await service.create_alert("asha", "need_help")).alert
        cancelled = (await service.create_alert("asha", "want_to_talk")).alert
        await service.create_alert("asha", "need_help")
        await service.cancel_alert(cancelled.alert_id, "asha")
        clock.advance(minutes=10)
        await service.resolve_alert(resolved.alert_id, "asha")

        stats = await service.alert_stats("asha", period_days=30)

        assert stats.total_alerts == 3
        assert stats.active_alerts == 1
        assert stats.resolved_alerts == 1
        assert stats.cancelled_alerts == 1
        assert stats.response_rate == 33
        assert stats.avg_resolution_minutes == 10
        assert stats.to_dict()["summary"]["total_alerts"] == 3
        assert {"kind": "need_help", "status": "active", "count": 1} in stats.breakdown
