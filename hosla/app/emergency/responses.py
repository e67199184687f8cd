"""
responses.py — Replies from trusted contacts to an active alert.

Checks, in order:
    alert active                    → InvalidTransitionError
    responder is not the originator → SelfResponseError
    text present and ≤ 300 chars    → ValidationError
    response_type known             → ValidationError
    responder is an emergency contact of the originator right now
                                    → NotTrustCircleMemberError

A contact may reply any number of times; every reply is appended.

After the reply is stored the responder earns points and the originator
gets an in-app notification. Both are best-effort: a failure is logged and
the reply still stands.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from hosla.app.core.errors import (
    InvalidTransitionError,
    NotTrustCircleMemberError,
    SelfResponseError,
    ValidationError,
)
from hosla.app.emergency.collaborators import CreditAwarder, UserNotifier
from hosla.app.emergency.models import Alert, AlertResponse, ResponseType, _now
from hosla.app.emergency.store import AlertStore
from hosla.app.emergency.trust_circle import TrustCircleResolver

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_MAX_LENGTH = 300
DEFAULT_REWARD_POINTS = 20
REWARD_REASON = "emergency_helped"
_PREVIEW_LENGTH = 50


class ResponseAggregator:
    """Validates, stores and follows up on alert responses."""

    def __init__(
        self,
        store: AlertStore,
        resolver: TrustCircleResolver,
        credit_awarder: CreditAwarder,
        user_notifier: UserNotifier,
        *,
        reward_points: int = DEFAULT_REWARD_POINTS,
        max_length: int = DEFAULT_RESPONSE_MAX_LENGTH,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.resolver = resolver
        self.credit_awarder = credit_awarder
        self.user_notifier = user_notifier
        self.reward_points = reward_points
        self.max_length = max_length
        self._clock = clock

    async def record_response(
        self,
        alert_id: str,
        responder_id: str,
        text: str,
        response_type: Union[str, ResponseType] = ResponseType.TEXT,
        estimated_arrival: Optional[datetime] = None,
    ) -> Alert:
        """
        Append a response to an active alert.

        Returns
        -------
        Alert
            The stored alert including the new response.
        """
        current = await self.store.require(alert_id)
        self._check(current, responder_id)

        body = (text or "").strip()
        if not body:
            raise ValidationError("Response text is required", field="text")
        if len(body) > self.max_length:
            raise ValidationError(
                f"Response must be at most {self.max_length} characters",
                field="text",
                max_length=self.max_length,
            )
        try:
            kind = ResponseType(response_type)
        except ValueError:
            raise ValidationError(
                f"Unknown response type: {response_type}",
                field="response_type",
                allowed=[t.value for t in ResponseType],
            ) from None

        # Membership is read outside the conditional update; the mutator
        # re-checks the alert-local conditions against the stored record.
        if not await self.resolver.is_emergency_contact(current.originator_id, responder_id):
            raise NotTrustCircleMemberError(alert_id, responder_id)

        response = AlertResponse(
            responder_id=responder_id,
            text=body,
            response_type=kind,
            responded_at=self._clock(),
            estimated_arrival=estimated_arrival,
        )

        def mutator(alert: Alert) -> bool:
            self._check(alert, responder_id)
            alert.responses.append(response)
            return True

        alert, _ = await self.store.update(alert_id, mutator)
        logger.info(
            "Response to alert %s from %s (%s), %d total",
            alert_id, responder_id, kind.value, len(alert.responses),
            extra={"alert_id": alert_id},
        )

        await self._after_response(alert, responder_id, body)
        return alert

    @staticmethod
    def _check(alert: Alert, responder_id: str) -> None:
        if not alert.is_active:
            raise InvalidTransitionError(alert.alert_id, alert.status.value, "respond")
        if alert.originator_id == responder_id:
            raise SelfResponseError(alert.alert_id)

    async def _after_response(self, alert: Alert, responder_id: str, text: str) -> None:
        try:
            await self.credit_awarder.award_credit(responder_id, REWARD_REASON, self.reward_points)
        except Exception as exc:
            logger.warning(
                "Could not award points to %s for alert %s: %s",
                responder_id, alert.alert_id, exc,
                extra={"alert_id": alert.alert_id},
            )

        preview = text[:_PREVIEW_LENGTH]
        try:
            await self.user_notifier.notify_user(
                alert.originator_id,
                "Help is on the way",
                f'Someone responded to your emergency alert: "{preview}..."',
                {"alert_id": alert.alert_id, "responder_id": responder_id},
            )
        except Exception as exc:
            logger.warning(
                "Could not notify %s about a response to alert %s: %s",
                alert.originator_id, alert.alert_id, exc,
                extra={"alert_id": alert.alert_id},
            )
