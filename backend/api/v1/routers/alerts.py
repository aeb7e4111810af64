"""
Alerts Router — Learning-engine alert listing and dismissal.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import alert_summary, dismiss_alerts
from api.deps import get_db
from db.repository import StatsRepository

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: UUID
    alert_type: str
    status: str
    order_id: str | None
    order_source: str | None
    harvest_id: str | None
    customer_key: str | None
    customer_name: str | None
    crop_key: str | None
    crop_display_name: str | None
    quantity: float | None
    expected_mean: float | None
    z_score: float | None
    expected_range: list[float] | None
    method: str | None
    confidence: str | None
    alert_metadata: dict | None
    message: str | None
    created_at: datetime
    dismissed_at: datetime | None

    model_config = {"from_attributes": True}


class AlertSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, dict[str, int]]


class DismissRequest(BaseModel):
    alert_id: UUID | None = None
    alert_ids: list[UUID] | None = None
    dismiss_all: bool = False


class DismissResponse(BaseModel):
    success: bool
    dismissed: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    status: str | None = None,
    alert_type: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List alerts, newest first."""
    return await StatsRepository(db).list_alerts(status=status, alert_type=alert_type, limit=limit)


@router.get("/summary", response_model=AlertSummary)
async def get_alert_summary(db: AsyncSession = Depends(get_db)):
    """Get alert counts by status and type."""
    return await alert_summary(db)


@router.post("/dismiss", response_model=DismissResponse)
async def dismiss(body: DismissRequest, db: AsyncSession = Depends(get_db)):
    """Dismiss one alert, a list of alerts, or every pending alert."""
    try:
        dismissed = await dismiss_alerts(
            db,
            alert_id=body.alert_id,
            alert_ids=body.alert_ids,
            dismiss_all=body.dismiss_all,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return DismissResponse(success=True, dismissed=dismissed)
