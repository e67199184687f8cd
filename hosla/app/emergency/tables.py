"""
tables.py — SQLAlchemy table definitions used by the emergency engine.

    emergency_alerts        one JSON document per alert + indexed columns
    trust_circle_members    read-only membership rows (written elsewhere)
    notification_records    one row per (alert, contact, round)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hosla.app.core.database import Base


class AlertRow(Base):
    """Durable alert record. ``version`` drives the conditional updates."""
    __tablename__ = "emergency_alerts"

    alert_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    originator_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    is_test_alert: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    document: Mapped[Dict[str, Any]] = mapped_column(JSON)


class TrustCircleMemberRow(Base):
    __tablename__ = "trust_circle_members"
    __table_args__ = (UniqueConstraint("owner_id", "member_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    member_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    relationship: Mapped[str] = mapped_column(String(32), default="other")
    is_emergency_contact: Mapped[bool] = mapped_column(Boolean, default=True)
    can_view_location: Mapped[bool] = mapped_column(Boolean, default=False)
    notify_emergency: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_posts: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_events: Mapped[bool] = mapped_column(Boolean, default=False)
    preferred_method: Mapped[str] = mapped_column(String(16), default="push")
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    push_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class NotificationRecordRow(Base):
    __tablename__ = "notification_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(String(64), index=True)
    contact_id: Mapped[str] = mapped_column(String(64), index=True)
    round: Mapped[int] = mapped_column(Integer)
    method: Mapped[str] = mapped_column(String(16))
    delivery_status: Mapped[str] = mapped_column(String(16))
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
