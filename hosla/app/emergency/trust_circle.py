"""
trust_circle.py — Trust circle membership and emergency-contact resolution.

The engine never writes trust circles; it reads them through a
``TrustCircleDirectory``. Resolution is done fresh on every call so an
escalation round always notifies the circle as it is *now*, including
members added or removed since the alert was raised.

Eligibility:
    • member of the originator's circle, AND
    • ``is_emergency_contact`` is True

Per-member preferences (method, location visibility, contact details) ride
along in the returned ``ContactRef`` so the dispatcher can honour them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hosla.app.core.errors import ValidationError
from hosla.app.emergency.models import ContactRef, NotificationMethod
from hosla.app.emergency.tables import TrustCircleMemberRow

logger = logging.getLogger(__name__)

DEFAULT_MAX_MEMBERS = 10


class Relationship(str, Enum):
    FAMILY    = "family"
    FRIEND    = "friend"
    NEIGHBOR  = "neighbor"
    CAREGIVER = "caregiver"
    DOCTOR    = "doctor"
    OTHER     = "other"


@dataclass
class NotificationPreferences:
    emergency: bool = True
    posts: bool = True
    events: bool = False


@dataclass
class TrustCircleMember:
    """One person in somebody's trust circle."""
    member_id: str
    relationship: Relationship = Relationship.OTHER
    is_emergency_contact: bool = True
    can_view_location: bool = False
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)
    preferred_method: NotificationMethod = NotificationMethod.PUSH
    name: Optional[str] = None
    phone_number: Optional[str] = None
    push_token: Optional[str] = None
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_contact_ref(self) -> ContactRef:
        return ContactRef(
            contact_id=self.member_id,
            method=self.preferred_method,
            name=self.name,
            phone_number=self.phone_number,
            push_token=self.push_token,
            relationship=self.relationship.value,
            can_view_location=self.can_view_location,
        )


@dataclass
class TrustCircle:
    owner_id: str
    members: List[TrustCircleMember] = field(default_factory=list)
    max_members: int = DEFAULT_MAX_MEMBERS

    def get_member(self, user_id: str) -> Optional[TrustCircleMember]:
        return next((m for m in self.members if m.member_id == user_id), None)

    def is_member(self, user_id: str) -> bool:
        return self.get_member(user_id) is not None

    def emergency_contacts(self) -> List[TrustCircleMember]:
        return [m for m in self.members if m.is_emergency_contact]


# ═══════════════════════════════════════════════════════════════════════════
# Directories
# ═══════════════════════════════════════════════════════════════════════════

class TrustCircleDirectory(ABC):
    """Read access to trust circles."""

    @abstractmethod
    async def get_circle(self, owner_id: str) -> Optional[TrustCircle]:
        ...

    @abstractmethod
    async def owners_for_member(self, member_id: str) -> List[str]:
        """Owners whose circle contains ``member_id``."""


class InMemoryTrustCircleDirectory(TrustCircleDirectory):
    """Process-local circles for tests and local development."""

    def __init__(self) -> None:
        self._circles: Dict[str, TrustCircle] = {}

    async def get_circle(self, owner_id: str) -> Optional[TrustCircle]:
        return self._circles.get(owner_id)

    async def owners_for_member(self, member_id: str) -> List[str]:
        return [
            owner for owner, circle in self._circles.items()
            if circle.is_member(member_id)
        ]

    def add_member(self, owner_id: str, member: TrustCircleMember) -> TrustCircle:
        circle = self._circles.setdefault(owner_id, TrustCircle(owner_id=owner_id))
        if member.member_id == owner_id:
            raise ValidationError("Cannot add yourself to your trust circle", field="member_id")
        if circle.is_member(member.member_id):
            raise ValidationError("User is already a member", field="member_id")
        if len(circle.members) >= circle.max_members:
            raise ValidationError(
                "Trust circle is full", field="member_id", max_members=circle.max_members,
            )
        circle.members.append(member)
        return circle

    def remove_member(self, owner_id: str, member_id: str) -> None:
        circle = self._circles.get(owner_id)
        if circle:
            circle.members = [m for m in circle.members if m.member_id != member_id]

    def update_member(self, owner_id: str, member_id: str, **updates) -> TrustCircleMember:
        circle = self._circles.get(owner_id)
        member = circle.get_member(member_id) if circle else None
        if member is None:
            raise ValidationError("Member not found", field="member_id")
        for key, value in updates.items():
            setattr(member, key, value)
        return member

    def clear(self) -> None:
        self._circles.clear()


class SqlTrustCircleDirectory(TrustCircleDirectory):
    """Reads the ``trust_circle_members`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_circle(self, owner_id: str) -> Optional[TrustCircle]:
        stmt = (
            select(TrustCircleMemberRow)
            .where(TrustCircleMemberRow.owner_id == owner_id)
            .order_by(TrustCircleMemberRow.added_at, TrustCircleMemberRow.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        if not rows:
            return None
        return TrustCircle(owner_id=owner_id, members=[_member_from_row(r) for r in rows])

    async def owners_for_member(self, member_id: str) -> List[str]:
        stmt = (
            select(TrustCircleMemberRow.owner_id)
            .where(TrustCircleMemberRow.member_id == member_id)
            .distinct()
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())


def _member_from_row(row: TrustCircleMemberRow) -> TrustCircleMember:
    return TrustCircleMember(
        member_id=row.member_id,
        relationship=Relationship(row.relationship),
        is_emergency_contact=row.is_emergency_contact,
        can_view_location=row.can_view_location,
        preferences=NotificationPreferences(
            emergency=row.notify_emergency,
            posts=row.notify_posts,
            events=row.notify_events,
        ),
        preferred_method=NotificationMethod(row.preferred_method),
        name=row.name,
        phone_number=row.phone_number,
        push_token=row.push_token,
        added_at=row.added_at,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Resolver
# ═══════════════════════════════════════════════════════════════════════════

class TrustCircleResolver:
    """Answers "who should hear about this user's emergency" at call time."""

    def __init__(self, directory: TrustCircleDirectory):
        self.directory = directory

    async def resolve_emergency_contacts(self, originator_id: str) -> List[ContactRef]:
        """
        Eligible contacts in circle order. Empty (not an error) when the
        originator has no circle or nobody in it is an emergency contact.
        """
        circle = await self.directory.get_circle(originator_id)
        if circle is None:
            return []
        contacts = [m.to_contact_ref() for m in circle.emergency_contacts()]
        logger.debug(
            "Resolved %d emergency contacts for %s", len(contacts), originator_id,
            extra={"originator_id": originator_id},
        )
        return contacts

    async def is_emergency_contact(self, originator_id: str, user_id: str) -> bool:
        circle = await self.directory.get_circle(originator_id)
        member = circle.get_member(user_id) if circle else None
        return bool(member and member.is_emergency_contact)

    async def is_member(self, originator_id: str, user_id: str) -> bool:
        circle = await self.directory.get_circle(originator_id)
        return bool(circle and circle.is_member(user_id))

    async def circle_owners_for(self, member_id: str) -> List[str]:
        return await self.directory.owners_for_member(member_id)
