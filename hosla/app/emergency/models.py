"""
models.py — Shared data structures for the emergency alert engine.

Defines:
    • AlertKind / AlertStatus / AlertPriority — the alert's classification
    • ResponseType, NotificationMethod, DeliveryStatus
    • Location, AlertResponse, NotifiedContact — parts of an alert record
    • Alert           — one emergency signal, stored as a JSON document
    • ContactRef      — an eligible trust-circle contact handed to fan-out
    • DeliveryOutcome — result of one delivery attempt to one contact
    • FanOutReport    — per-round fan-out summary
    • NotificationRecord — one row per (alert, contact, round)

═══════════════════════════════════════════════════════════════════════════
PRIORITY LADDER
═══════════════════════════════════════════════════════════════════════════

    Kind                Initial priority
    ────────────────    ────────────────
    not_feeling_well    HIGH
    need_help           MEDIUM
    want_to_talk        LOW

Escalation walks the ladder LOW → MEDIUM → HIGH → CRITICAL one step at a
time, but a step to level N only happens when the alert currently sits on
the rung expected before level N:

    Level   Expected prior priority   Bumped to
    ─────   ───────────────────────   ─────────
    1       LOW                       MEDIUM
    2       MEDIUM                    HIGH
    3       HIGH                      CRITICAL

An alert whose priority was set explicitly (or started higher) keeps its
priority while its escalation level still rises.

═══════════════════════════════════════════════════════════════════════════
DERIVED VALUES
═══════════════════════════════════════════════════════════════════════════

response_count, time_elapsed and is_overdue are computed from the stored
fields on read. They are never persisted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertKind(str, Enum):
    """What the originator is signalling."""
    NOT_FEELING_WELL = "not_feeling_well"
    NEED_HELP        = "need_help"
    WANT_TO_TALK     = "want_to_talk"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class AlertStatus(str, Enum):
    """Lifecycle state. RESOLVED and CANCELLED are terminal."""
    ACTIVE    = "active"
    RESOLVED  = "resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not AlertStatus.ACTIVE


class AlertPriority(str, Enum):
    """Urgency of an alert. Ordered by ``rank``."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_LADDER.index(self)


class ResponseType(str, Enum):
    """How a trusted contact is helping."""
    TEXT  = "text"
    CALL  = "call"
    VISIT = "visit"


class NotificationMethod(str, Enum):
    """Delivery method chosen for a contact."""
    PUSH = "push"
    SMS  = "sms"
    CALL = "call"


class DeliveryStatus(str, Enum):
    """Delivery state per contact per round."""
    PENDING   = "pending"     # claimed, send not finished
    SENT      = "sent"        # handed to the transport
    DELIVERED = "delivered"   # transport confirmed delivery
    FAILED    = "failed"      # attempt failed or timed out


# ═══════════════════════════════════════════════════════════════════════════
# Priority rules
# ═══════════════════════════════════════════════════════════════════════════

PRIORITY_LADDER: List[AlertPriority] = [
    AlertPriority.LOW,
    AlertPriority.MEDIUM,
    AlertPriority.HIGH,
    AlertPriority.CRITICAL,
]

PRIORITY_BY_KIND: Dict[AlertKind, AlertPriority] = {
    AlertKind.NOT_FEELING_WELL: AlertPriority.HIGH,
    AlertKind.NEED_HELP:        AlertPriority.MEDIUM,
    AlertKind.WANT_TO_TALK:     AlertPriority.LOW,
}

# Priority an alert must hold for escalation to level N to bump it
ESCALATION_PRIORITY_GUARD: Dict[int, AlertPriority] = {
    1: AlertPriority.LOW,
    2: AlertPriority.MEDIUM,
    3: AlertPriority.HIGH,
}

MAX_ESCALATION_LEVEL = 3
DEFAULT_OVERDUE_AFTER = timedelta(minutes=30)
DEFAULT_AUTO_RESOLVE_AFTER = timedelta(hours=24)
AUTO_RESOLVE_NOTE = "auto-resolved"


def initial_priority(kind: AlertKind) -> AlertPriority:
    """Priority a new alert of this kind starts with."""
    return PRIORITY_BY_KIND[kind]


def next_priority(priority: AlertPriority) -> AlertPriority:
    """One ladder step up, saturating at CRITICAL."""
    idx = min(priority.rank + 1, len(PRIORITY_LADDER) - 1)
    return PRIORITY_LADDER[idx]


def escalated_priority(current: AlertPriority, new_level: int) -> AlertPriority:
    """
    Priority after escalating to ``new_level``.

    Only bumps when ``current`` matches the rung expected before that level.
    """
    expected = ESCALATION_PRIORITY_GUARD.get(new_level)
    if expected is not None and current == expected:
        return next_priority(current)
    return current


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ═══════════════════════════════════════════════════════════════════════════
# Alert record parts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Location:
    """Where the originator is, as far as they shared it."""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "India"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            address=data.get("address"),
            city=data.get("city"),
            state=data.get("state"),
            country=data.get("country") or "India",
        )

    def describe(self) -> str:
        """Human-readable one-liner for notification text."""
        parts = [p for p in (self.address, self.city, self.state) if p]
        if parts:
            return ", ".join(parts)
        if self.latitude is not None and self.longitude is not None:
            return f"{self.latitude:.5f}, {self.longitude:.5f}"
        return ""


@dataclass
class AlertResponse:
    """One reply from a trusted contact. A contact may reply many times."""
    responder_id: str
    text: str
    response_type: ResponseType = ResponseType.TEXT
    responded_at: datetime = field(default_factory=_now)
    estimated_arrival: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responder_id": self.responder_id,
            "text": self.text,
            "response_type": self.response_type.value,
            "responded_at": _iso(self.responded_at),
            "estimated_arrival": _iso(self.estimated_arrival),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertResponse":
        return cls(
            responder_id=data["responder_id"],
            text=data["text"],
            response_type=ResponseType(data.get("response_type", "text")),
            responded_at=_parse_dt(data["responded_at"]),
            estimated_arrival=_parse_dt(data.get("estimated_arrival")),
        )


@dataclass
class NotifiedContact:
    """A contact claimed for delivery in one fan-out round."""
    contact_id: str
    round: int
    method: NotificationMethod = NotificationMethod.PUSH
    notified_at: datetime = field(default_factory=_now)
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "round": self.round,
            "method": self.method.value,
            "notified_at": _iso(self.notified_at),
            "delivery_status": self.delivery_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotifiedContact":
        return cls(
            contact_id=data["contact_id"],
            round=int(data["round"]),
            method=NotificationMethod(data.get("method", "push")),
            notified_at=_parse_dt(data["notified_at"]),
            delivery_status=DeliveryStatus(data.get("delivery_status", "pending")),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """
    One emergency signal raised by one user.

    Attributes
    ----------
    alert_id : str
        Opaque unique identifier.
    originator_id : str
        User who raised the alert.
    kind : AlertKind
    message : str | None
        Optional free text (bounded length, validated on creation).
    location : Location | None
    status : AlertStatus
        ACTIVE until resolved or cancelled; never leaves a terminal state.
    priority : AlertPriority
    escalation_level : int
        0..3, never decreases.
    responses : list of AlertResponse
        Append-only.
    notified_contacts : list of NotifiedContact
        At most one entry per (contact_id, round); all rounds retained.
    version : int
        Optimistic concurrency counter, bumped by the store on each write.
    """
    originator_id: str
    kind: AlertKind
    alert_id: str = field(default_factory=_generate_id)
    message: Optional[str] = None
    location: Optional[Location] = None
    status: AlertStatus = AlertStatus.ACTIVE
    priority: AlertPriority = AlertPriority.MEDIUM
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    responses: List[AlertResponse] = field(default_factory=list)
    notified_contacts: List[NotifiedContact] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    is_test_alert: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is AlertStatus.ACTIVE

    def notified_in_round(self, round_: int) -> Dict[str, NotifiedContact]:
        """Entries for one round keyed by contact id."""
        return {
            n.contact_id: n for n in self.notified_contacts if n.round == round_
        }

    def has_responded(self, user_id: str) -> bool:
        return any(r.responder_id == user_id for r in self.responses)

    def copy(self) -> "Alert":
        return Alert.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "originator_id": self.originator_id,
            "kind": self.kind.value,
            "message": self.message,
            "location": self.location.to_dict() if self.location else None,
            "status": self.status.value,
            "priority": self.priority.value,
            "escalation_level": self.escalation_level,
            "last_escalated_at": _iso(self.last_escalated_at),
            "responses": [r.to_dict() for r in self.responses],
            "notified_contacts": [n.to_dict() for n in self.notified_contacts],
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "is_test_alert": self.is_test_alert,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        location = data.get("location")
        return cls(
            alert_id=data["alert_id"],
            originator_id=data["originator_id"],
            kind=AlertKind(data["kind"]),
            message=data.get("message"),
            location=Location.from_dict(location) if location else None,
            status=AlertStatus(data["status"]),
            priority=AlertPriority(data["priority"]),
            escalation_level=int(data.get("escalation_level", 0)),
            last_escalated_at=_parse_dt(data.get("last_escalated_at")),
            responses=[AlertResponse.from_dict(r) for r in data.get("responses", [])],
            notified_contacts=[
                NotifiedContact.from_dict(n) for n in data.get("notified_contacts", [])
            ],
            resolved_at=_parse_dt(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            resolution_note=data.get("resolution_note"),
            is_test_alert=bool(data.get("is_test_alert", False)),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data.get("updated_at")) or _parse_dt(data["created_at"]),
            version=int(data.get("version", 0)),
        )


# ── Derived values ──

def response_count(alert: Alert) -> int:
    return len(alert.responses)


def time_elapsed(alert: Alert, now: Optional[datetime] = None) -> timedelta:
    return (now or _now()) - alert.created_at


def is_overdue(
    alert: Alert,
    now: Optional[datetime] = None,
    *,
    after: timedelta = DEFAULT_OVERDUE_AFTER,
) -> bool:
    """Active, unanswered, and older than the overdue threshold."""
    return (
        alert.status is AlertStatus.ACTIVE
        and not alert.responses
        and time_elapsed(alert, now) > after
    )


def is_stale(
    alert: Alert,
    now: Optional[datetime] = None,
    *,
    ceiling: timedelta = DEFAULT_AUTO_RESOLVE_AFTER,
) -> bool:
    """Active and past the auto-resolve ceiling."""
    return alert.status is AlertStatus.ACTIVE and time_elapsed(alert, now) > ceiling


def alert_view(alert: Alert, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Serialised alert plus derived read-only fields."""
    data = alert.to_dict()
    data["response_count"] = response_count(alert)
    data["is_overdue"] = is_overdue(alert, now)
    data["time_elapsed_seconds"] = int(time_elapsed(alert, now).total_seconds())
    return data


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ContactRef:
    """An eligible emergency contact with delivery preferences."""
    contact_id: str
    method: NotificationMethod = NotificationMethod.PUSH
    name: Optional[str] = None
    phone_number: Optional[str] = None
    push_token: Optional[str] = None
    relationship: str = "other"
    can_view_location: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "method": self.method.value,
            "name": self.name,
            "relationship": self.relationship,
            "can_view_location": self.can_view_location,
        }


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt to one contact."""
    contact_id: str
    method: NotificationMethod
    status: DeliveryStatus
    round: int = 0
    attempted_at: datetime = field(default_factory=_now)
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "method": self.method.value,
            "status": self.status.value,
            "round": self.round,
            "attempted_at": _iso(self.attempted_at),
            "error_message": self.error_message,
        }


@dataclass
class FanOutReport:
    """Delivery summary for one fan-out round of one alert."""
    alert_id: str
    round: int
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    skipped_test_alert: bool = False
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def contacts_notified(self) -> int:
        return len(self.outcomes)

    @property
    def delivered_count(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is DeliveryStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "round": self.round,
            "contacts_notified": self.contacts_notified,
            "delivered": self.delivered_count,
            "failed": self.failed_count,
            "skipped_test_alert": self.skipped_test_alert,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class NotificationRecord:
    """One row per (alert, contact, round) for the notification store."""
    alert_id: str
    contact_id: str
    round: int
    method: NotificationMethod
    delivery_status: DeliveryStatus
    created_at: datetime = field(default_factory=_now)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "contact_id": self.contact_id,
            "round": self.round,
            "method": self.method.value,
            "delivery_status": self.delivery_status.value,
            "created_at": _iso(self.created_at),
            "error_message": self.error_message,
        }
