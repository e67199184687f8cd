"""
Shared fixtures for the emergency engine tests.

    clock        — FakeClock, advanced explicitly by tests
    channel      — RecordingChannel standing in for ChannelRouter.deliver
    store        — fresh InMemoryAlertStore
    directory    — fresh InMemoryTrustCircleDirectory
    test_settings — Settings with in-memory backends and the scheduler off
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from hosla.app.core.config import Settings
from hosla.app.emergency.channels.router import select_method
from hosla.app.emergency.collaborators import CreditAwarder, UserNotifier
from hosla.app.emergency.models import (
    AlertPriority,
    ContactRef,
    DeliveryOutcome,
    DeliveryStatus,
)
from hosla.app.emergency.store import InMemoryAlertStore
from hosla.app.emergency.trust_circle import InMemoryTrustCircleDirectory

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock; time only moves when a test says so."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingChannel:
    """
    Fake ``deliver(contact, message, urgency)``.

    Contacts in ``fail_for`` get a FAILED outcome, contacts in ``raise_for``
    make the call raise, and ``delay`` keeps every call busy for a while.
    """

    def __init__(
        self,
        *,
        fail_for: Iterable[str] = (),
        raise_for: Iterable[str] = (),
        delay: float = 0.0,
    ):
        self.calls: List[Tuple[str, str, AlertPriority]] = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.delay = delay

    async def __call__(
        self,
        contact: ContactRef,
        message: str,
        urgency: AlertPriority,
    ) -> DeliveryOutcome:
        self.calls.append((contact.contact_id, message, urgency))
        if self.delay:
            await asyncio.sleep(self.delay)
        if contact.contact_id in self.raise_for:
            raise RuntimeError("transport down")
        status = (
            DeliveryStatus.FAILED if contact.contact_id in self.fail_for
            else DeliveryStatus.DELIVERED
        )
        return DeliveryOutcome(
            contact_id=contact.contact_id,
            method=select_method(contact),
            status=status,
            error_message="rejected" if status is DeliveryStatus.FAILED else None,
        )

    def calls_for(self, contact_id: str) -> List[Tuple[str, str, AlertPriority]]:
        return [c for c in self.calls if c[0] == contact_id]


@dataclass
class RecordingCreditAwarder(CreditAwarder):
    awards: List[Dict[str, Any]] = field(default_factory=list)

    async def award_credit(self, user_id: str, reason: str, amount: int) -> None:
        self.awards.append({"user_id": user_id, "reason": reason, "amount": amount})


@dataclass
class RecordingUserNotifier(UserNotifier):
    notifications: List[Dict[str, Any]] = field(default_factory=list)

    async def notify_user(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.notifications.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "data": data or {},
        })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def directory() -> InMemoryTrustCircleDirectory:
    return InMemoryTrustCircleDirectory()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        ALERT_STORE_BACKEND="memory",
        RATE_LIMIT_BACKEND="memory",
        SCHEDULER_ENABLED=False,
        ENVIRONMENT="test",
    )
