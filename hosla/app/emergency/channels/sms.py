"""
sms.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Production: HTTP POST to the SMS gateway at SMS_GATEWAY_URL
    • Development: simulation mode logs the formatted message and succeeds
    • Payload: ≤160 chars (GSM 7-bit single segment)

Message template:
    "[HIGH] Someone in your trust circle needs help: need help. Open Hosla to respond."
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

SMS_MAX_GSM7 = 160
_SUFFIX = " Open Hosla to respond."


def _format_sms(message: str, urgency: AlertPriority) -> str:
    """Format the SMS body within the 160-char GSM limit."""
    prefix = f"[{urgency.name}] "
    available = SMS_MAX_GSM7 - len(prefix) - len(_SUFFIX)
    body = message
    if len(body) > available:
        body = body[: available - 3] + "..."
    return f"{prefix}{body}{_SUFFIX}"


async def send(
    contact: ContactRef,
    message: str,
    urgency: AlertPriority,
    *,
    provider: str = "simulation",
    gateway_url: Optional[str] = None,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 15.0,
) -> DeliveryOutcome:
    """
    Send an SMS alert to one contact.

    Parameters
    ----------
    contact : ContactRef
        Must have ``phone_number`` set (E.164 format).
    provider : str
        "simulation" or "gateway".
    gateway_url, api_key : str | None
        Gateway endpoint and credential (gateway provider only).

    Returns
    -------
    DeliveryOutcome
    """
    outcome = DeliveryOutcome(
        contact_id=contact.contact_id,
        method=NotificationMethod.SMS,
        status=DeliveryStatus.PENDING,
    )

    try:
        if not contact.phone_number:
            raise DeliveryFailedError(contact.contact_id, "sms", "no phone number on file")

        sms_body = _format_sms(message, urgency)

        if provider == "simulation":
            logger.info(
                "[SMS] → %s (%s): %d chars → '%s'",
                contact.phone_number, contact.contact_id, len(sms_body),
                sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
                extra={"contact_id": contact.contact_id, "channel": "sms"},
            )
            outcome.status = DeliveryStatus.DELIVERED
            outcome.provider_response = {
                "mode": "simulated",
                "message_length": len(sms_body),
            }

        elif provider == "gateway":
            if not gateway_url:
                raise DeliveryFailedError(contact.contact_id, "sms", "SMS_GATEWAY_URL not set")
            headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
            body = {"to": contact.phone_number, "message": sms_body}
            if client is None:
                async with httpx.AsyncClient(timeout=timeout_seconds) as own_client:
                    response = await own_client.post(gateway_url, json=body, headers=headers)
            else:
                response = await client.post(
                    gateway_url, json=body, headers=headers, timeout=timeout_seconds,
                )
            if response.status_code >= 400:
                raise DeliveryFailedError(
                    contact.contact_id, "sms", f"gateway answered {response.status_code}",
                )
            outcome.status = DeliveryStatus.SENT
            outcome.provider_response = {"mode": "gateway", "status_code": response.status_code}

        else:
            raise DeliveryFailedError(contact.contact_id, "sms", f"unknown SMS provider: {provider}")

    except (DeliveryFailedError, httpx.HTTPError) as exc:
        logger.warning(
            "[SMS] Failed for %s: %s", contact.contact_id, exc,
            extra={"contact_id": contact.contact_id, "channel": "sms"},
        )
        outcome.status = DeliveryStatus.FAILED
        outcome.error_message = str(exc)

    outcome.attempted_at = datetime.now(timezone.utc)
    return outcome
