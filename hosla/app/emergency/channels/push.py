"""
push.py — Mobile push notification channel.

Delivery mechanism:
    • Production: HTTP POST to the push gateway (FCM relay) at PUSH_GATEWAY_URL
    • Development: simulation mode (no gateway configured) logs and succeeds

Gateway payload:
    {"token": ..., "title": "Emergency Alert", "body": ..., "priority": ...,
     "data": {"contact_id": ..., "urgency": ...}}

A 2xx answer means the gateway accepted the message (SENT). The gateway's
later delivery receipts are out of scope here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from hosla.app.core.errors import DeliveryFailedError
from hosla.app.emergency.models import (
    AlertPriority,
    ContactRef,
    DeliveryOutcome,
    DeliveryStatus,
    NotificationMethod,
)

logger = logging.getLogger(__name__)

# Push services treat anything below "high" as deferrable
_PUSH_PRIORITY = {
    AlertPriority.LOW: "normal",
    AlertPriority.MEDIUM: "high",
    AlertPriority.HIGH: "high",
    AlertPriority.CRITICAL: "high",
}


async def send(
    contact: ContactRef,
    message: str,
    urgency: AlertPriority,
    *,
    gateway_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 10.0,
) -> DeliveryOutcome:
    """
    Send a push notification to one contact.

    Parameters
    ----------
    contact : ContactRef
    message : str
        Notification body.
    urgency : AlertPriority
        Alert priority, mapped to the push service priority.
    gateway_url : str | None
        Push gateway endpoint. None → simulation mode.
    client : httpx.AsyncClient | None
        Shared client; a short-lived one is created when omitted.

    Returns
    -------
    DeliveryOutcome
        FAILED outcomes carry the error text; nothing is raised.
    """
    outcome = DeliveryOutcome(
        contact_id=contact.contact_id,
        method=NotificationMethod.PUSH,
        status=DeliveryStatus.PENDING,
    )

    try:
        if gateway_url is None:
            logger.info(
                "[PUSH] → %s (%s) [%s]: '%s'",
                contact.contact_id, contact.name or "-", urgency.value,
                message[:80] + ("..." if len(message) > 80 else ""),
                extra={"contact_id": contact.contact_id, "channel": "push"},
            )
            outcome.status = DeliveryStatus.DELIVERED
            outcome.provider_response = {"mode": "simulated"}
            return outcome

        if not contact.push_token:
            raise DeliveryFailedError(contact.contact_id, "push", "no push token on file")

        body = {
            "token": contact.push_token,
            "title": "Emergency Alert",
            "body": message,
            "priority": _PUSH_PRIORITY[urgency],
            "data": {"contact_id": contact.contact_id, "urgency": urgency.value},
        }
        if client is None:
            async with httpx.AsyncClient(timeout=timeout_seconds) as own_client:
                response = await own_client.post(gateway_url, json=body)
        else:
            response = await client.post(gateway_url, json=body, timeout=timeout_seconds)

        if response.status_code >= 400:
            raise DeliveryFailedError(
                contact.contact_id, "push", f"gateway answered {response.status_code}",
            )

        outcome.status = DeliveryStatus.SENT
        outcome.provider_response = {"mode": "gateway", "status_code": response.status_code}

    except (DeliveryFailedError, httpx.HTTPError) as exc:
        logger.warning(
            "[PUSH] Failed for %s: %s", contact.contact_id, exc,
            extra={"contact_id": contact.contact_id, "channel": "push"},
        )
        outcome.status = DeliveryStatus.FAILED
        outcome.error_message = str(exc)

    finally:
        outcome.attempted_at = datetime.now(timezone.utc)

    return outcome
