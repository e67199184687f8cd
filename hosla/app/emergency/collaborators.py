"""
collaborators.py — Side-effect services the engine calls but does not own.

    CreditAwarder  award_credit(user_id, reason, amount)
    UserNotifier   notify_user(user_id, title, message, data)

Both are best-effort from the engine's point of view: callers log failures
and move on. HTTP implementations talk to the points and notifications
services; the logging implementations are used when no URL is configured.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class CreditAwarder(ABC):
    @abstractmethod
    async def award_credit(self, user_id: str, reason: str, amount: int) -> None:
        ...


class UserNotifier(ABC):
    @abstractmethod
    async def notify_user(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# HTTP implementations
# ═══════════════════════════════════════════════════════════════════════════

class HttpCreditAwarder(CreditAwarder):
    """POSTs ``{"user_id", "reason", "amount"}`` to the points service."""

    def __init__(self, base_url: str, *, timeout_seconds: float = 5.0):
        self.url = base_url.rstrip("/") + "/credits"
        self.timeout_seconds = timeout_seconds

    async def award_credit(self, user_id: str, reason: str, amount: int) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(
                self.url, json={"user_id": user_id, "reason": reason, "amount": amount},
            )
            response.raise_for_status()


class HttpUserNotifier(UserNotifier):
    """POSTs in-app notifications to the notifications service."""

    def __init__(self, base_url: str, *, timeout_seconds: float = 5.0):
        self.url = base_url.rstrip("/") + "/notifications"
        self.timeout_seconds = timeout_seconds

    async def notify_user(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        body = {"user_id": user_id, "title": title, "message": message, "data": data or {}}
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


# ═══════════════════════════════════════════════════════════════════════════
# Local implementations
# ═══════════════════════════════════════════════════════════════════════════

class LoggingCreditAwarder(CreditAwarder):
    async def award_credit(self, user_id: str, reason: str, amount: int) -> None:
        logger.info("[CREDIT] +%d to %s (%s)", amount, user_id, reason)


class LoggingUserNotifier(UserNotifier):
    async def notify_user(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info("[NOTIFY] → %s: %s — %s", user_id, title, message)

