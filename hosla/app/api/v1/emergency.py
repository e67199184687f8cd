"""
FastAPI route: Emergency alerts for trust circles.

Provides endpoints to:
    POST /api/v1/emergency/alert                 — raise an alert
    GET  /api/v1/emergency/alerts                — alerts from my trust circles
    GET  /api/v1/emergency/alerts/{id}           — one alert
    POST /api/v1/emergency/alerts/{id}/respond   — reply to an alert
    POST /api/v1/emergency/alerts/{id}/resolve   — originator resolves
    POST /api/v1/emergency/alerts/{id}/cancel    — originator cancels
    GET  /api/v1/emergency/my-alerts             — alerts I raised
    POST /api/v1/emergency/test-alert            — test alert, notifies nobody
    GET  /api/v1/emergency/stats                 — my alert statistics

The caller is identified by the ``X-User-ID`` header set by the gateway.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from hosla.app.core.errors import AuthenticationError
from hosla.app.emergency.models import Alert, alert_view
from hosla.app.emergency.service import EmergencyService, get_emergency_service

router = APIRouter(prefix="/api/v1/emergency", tags=["emergency"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90, examples=[28.6139])
    longitude: Optional[float] = Field(None, ge=-180, le=180, examples=[77.2090])
    address: Optional[str] = Field(None, max_length=200, examples=["12 MG Road"])
    city: Optional[str] = Field(None, max_length=100, examples=["Delhi"])
    state: Optional[str] = Field(None, max_length=100)
    country: str = Field("India")


class CreateAlertRequest(BaseModel):
    """Raise an emergency alert."""
    type: str = Field(
        ..., examples=["need_help"],
        description="not_feeling_well / need_help / want_to_talk",
    )
    message: Optional[str] = Field(None, examples=["I fell in the kitchen"])
    location: Optional[LocationInput] = None


class RespondRequest(BaseModel):
    """Reply from a trusted contact."""
    message: str = Field(..., examples=["On my way, 10 minutes"])
    response_type: str = Field("text", examples=["visit"], description="text / call / visit")
    estimated_arrival: Optional[datetime] = None


class ResolveRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=300, examples=["Feeling better now"])


class CreateAlertResponse(BaseModel):
    alert_id: str
    priority: str
    contacts_notified: int


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """Caller identity from the gateway-provided header."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("X-User-ID header is required")
    return x_user_id.strip()


def _alert_payload(alert: Alert, **extra: Any) -> Dict[str, Any]:
    data = alert_view(alert)
    data.update(extra)
    return data


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/alert",
    response_model=CreateAlertResponse,
    status_code=201,
    summary="Raise an emergency alert",
    description=(
        "Stores the alert and notifies every emergency contact in the "
        "caller's trust circle. Limited to a few alerts per five minutes."
    ),
)
async def create_alert(
    request: CreateAlertRequest,
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    """Create an alert and fan it out."""
    result = await service.create_alert(
        user_id,
        request.type,
        request.message,
        request.location.model_dump() if request.location else None,
    )
    return CreateAlertResponse(
        alert_id=result.alert.alert_id,
        priority=result.alert.priority.value,
        contacts_notified=result.contacts_notified,
    )


@router.get(
    "/alerts",
    summary="Alerts from my trust circles",
    description="Highest priority first. status: active / resolved / cancelled / all.",
)
async def list_circle_alerts(
    status: str = Query("active"),
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    views = await service.list_alerts_for_circle(user_id, status)
    return {
        "alerts": [
            _alert_payload(v.alert, can_respond=v.can_respond, has_responded=v.has_responded)
            for v in views
        ],
        "count": len(views),
    }


@router.get("/alerts/{alert_id}", summary="Get one alert")
async def get_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    alert = await service.get_alert_for_viewer(alert_id, user_id)
    return _alert_payload(alert)


@router.post("/alerts/{alert_id}/respond", summary="Respond to an alert")
async def respond_to_alert(
    alert_id: str,
    request: RespondRequest,
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    count = await service.respond_to_alert(
        alert_id, user_id, request.message, request.response_type, request.estimated_arrival,
    )
    return {"alert_id": alert_id, "response_count": count}


@router.post("/alerts/{alert_id}/resolve", summary="Resolve my alert")
async def resolve_alert(
    alert_id: str,
    request: Optional[ResolveRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    alert = await service.resolve_alert(alert_id, user_id, request.note if request else None)
    return {
        "alert_id": alert.alert_id,
        "status": alert.status.value,
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
    }


@router.post("/alerts/{alert_id}/cancel", summary="Cancel my alert")
async def cancel_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    alert = await service.cancel_alert(alert_id, user_id)
    return {"alert_id": alert.alert_id, "status": alert.status.value}


@router.get("/my-alerts", summary="Alerts I raised")
async def my_alerts(
    status: str = Query("all"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    result = await service.list_my_alerts(user_id, status, page=page, limit=limit)
    items: List[Alert] = result.pop("items")
    return {"alerts": [_alert_payload(a) for a in items], **result}


@router.post(
    "/test-alert",
    status_code=201,
    summary="Send a test alert",
    description="Stores a test alert. Emergency contacts are not notified.",
)
async def create_test_alert(
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    alert = await service.create_test_alert(user_id)
    return {
        "alert_id": alert.alert_id,
        "message": "Test alert created. This will not notify your emergency contacts.",
    }


@router.get("/stats", summary="My emergency alert statistics")
async def stats(
    period: int = Query(30, ge=1, le=365, description="Days to look back"),
    user_id: str = Depends(get_current_user_id),
    service: EmergencyService = Depends(get_emergency_service),
):
    result = await service.alert_stats(user_id, period)
    return result.to_dict()
