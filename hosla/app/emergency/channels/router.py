"""
router.py — Method selection and per-channel retry for one contact.

``ChannelRouter.deliver(contact, message, urgency)`` is the transport
capability the dispatcher calls once per contact per round. Retries happen
here, inside that single call, so the dispatcher's per-contact timeout
bounds the whole attempt including backoff.

    Method     Max Retries    Backoff Base    Backoff Type
    ──────     ───────────    ────────────    ────────────
    Push       2              0.5s            Exponential
    SMS        2              1.0s            Exponential

Method selection:
    SMS / CALL requested and a phone number on file → SMS
    (voice calls are not wired to a provider yet and go out as SMS)
    anything else                                  → PUSH
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import httpx

from hosla.app.core.config import Settings
from hosla.app.emergency.channels import push, sms
from hosla.app.emergency.models import (
    AlertPriority,
    ContactRef,
    DeliveryOutcome,
    DeliveryStatus,
    NotificationMethod,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Per-channel retry parameters."""
    max_retries: int
    backoff_base_seconds: float
    backoff_type: str = "exponential"  # "exponential" or "linear"


RETRY_CONFIGS: Dict[NotificationMethod, RetryConfig] = {
    NotificationMethod.PUSH: RetryConfig(2, 0.5),
    NotificationMethod.SMS:  RetryConfig(2, 1.0),
}


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """Delay in seconds before retry ``attempt`` (1-based)."""
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


def select_method(contact: ContactRef) -> NotificationMethod:
    """Method actually used for ``contact`` given its preference and details."""
    if contact.method in (NotificationMethod.SMS, NotificationMethod.CALL) and contact.phone_number:
        return NotificationMethod.SMS
    return NotificationMethod.PUSH


class ChannelRouter:
    """
    Routes a notification to the right channel and retries failures.

    Usage:
        router = ChannelRouter.from_settings(settings)
        outcome = await router.deliver(contact, "…", AlertPriority.HIGH)
    """

    def __init__(
        self,
        *,
        push_gateway_url: Optional[str] = None,
        sms_provider: str = "simulation",
        sms_gateway_url: Optional[str] = None,
        sms_api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_configs: Optional[Dict[NotificationMethod, RetryConfig]] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.push_gateway_url = push_gateway_url
        self.sms_provider = sms_provider
        self.sms_gateway_url = sms_gateway_url
        self.sms_api_key = sms_api_key
        self.timeout_seconds = timeout_seconds
        self.retry_configs = retry_configs or RETRY_CONFIGS
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChannelRouter":
        return cls(
            push_gateway_url=settings.PUSH_GATEWAY_URL,
            sms_provider=settings.SMS_PROVIDER,
            sms_gateway_url=settings.SMS_GATEWAY_URL,
            sms_api_key=settings.SMS_API_KEY,
            timeout_seconds=settings.DELIVERY_TIMEOUT_SECONDS,
        )

    async def _send_once(
        self,
        method: NotificationMethod,
        contact: ContactRef,
        message: str,
        urgency: AlertPriority,
    ) -> DeliveryOutcome:
        if method is NotificationMethod.SMS:
            return await sms.send(
                contact, message, urgency,
                provider=self.sms_provider,
                gateway_url=self.sms_gateway_url,
                api_key=self.sms_api_key,
                client=self._client,
                timeout_seconds=self.timeout_seconds,
            )
        return await push.send(
            contact, message, urgency,
            gateway_url=self.push_gateway_url,
            client=self._client,
            timeout_seconds=self.timeout_seconds,
        )

    async def deliver(
        self,
        contact: ContactRef,
        message: str,
        urgency: AlertPriority,
    ) -> DeliveryOutcome:
        """Deliver with retries; returns the last outcome."""
        method = select_method(contact)
        config = self.retry_configs.get(method, RetryConfig(0, 1.0))

        outcome = await self._send_once(method, contact, message, urgency)
        for attempt in range(1, config.max_retries + 1):
            if outcome.status is not DeliveryStatus.FAILED:
                break
            delay = _compute_backoff(config, attempt)
            logger.info(
                "Retry %d/%d for %s via %s in %.1fs",
                attempt, config.max_retries, contact.contact_id, method.value, delay,
                extra={"contact_id": contact.contact_id, "channel": method.value},
            )
            await self._sleep(delay)
            outcome = await self._send_once(method, contact, message, urgency)

        return outcome
