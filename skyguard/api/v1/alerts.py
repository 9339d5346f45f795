"""
FastAPI route: Alert composition, inbox and read receipts.

Provides endpoints to:
    POST /api/v1/alerts/send                — compose and fan out (admin)
    GET  /api/v1/alerts                     — every alert with counts (admin)
    GET  /api/v1/alerts/stats               — dashboard counters (admin)
    GET  /api/v1/alerts/mine                — the caller's inbox
    POST /api/v1/alerts/{id}/read           — mark read (idempotent)
    GET  /api/v1/alerts/{id}/receipts       — read / unread lists (admin)
    GET  /api/v1/alerts/{id}/receipts/summary
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skyguard.alerts import alert_service, tracker
from skyguard.alerts.models import UserRecord
from skyguard.alerts.rate_limiter import SlidingWindowRateLimiter
from skyguard.api.deps import (
    get_current_user,
    get_limiter,
    get_monitor,
    get_session_factory,
    request_meta,
    require_admin,
)
from skyguard.api.schemas import SendAlertRequest
from skyguard.audit.monitor import SecurityMonitor
from skyguard.core.database import get_db

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.post(
    "/send",
    summary="Compose and send an alert",
    description=(
        "Sanitizes and validates the alert, applies the per-sender rate "
        "limit, stores it and one recipient row per eligible user. Channel "
        "delivery continues in the background."
    ),
)
async def send_alert(
    body: SendAlertRequest,
    request: Request,
    background: BackgroundTasks,
    admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    limiter: SlidingWindowRateLimiter = Depends(get_limiter),
    monitor: SecurityMonitor = Depends(get_monitor),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Dict[str, Any]:
    result = await alert_service.send_alert(
        session,
        body.model_dump(),
        admin.user_id,
        limiter=limiter,
        monitor=monitor,
        meta=request_meta(request),
    )
    if result.recipient_count:
        background.add_task(tracker.dispatch_pending, session_factory, result.alert_id)
    return result.to_dict()


@router.get("", summary="List all alerts")
async def list_alerts(
    limit: int = Query(100, ge=1, le=500),
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    return {"alerts": await alert_service.get_all_alerts(session, limit=limit)}


@router.get("/stats", summary="Dashboard statistics")
async def stats(
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    return (await alert_service.get_stats(session)).to_dict()


@router.get("/mine", summary="Alerts delivered to the caller")
async def my_alerts(
    limit: int = Query(50, ge=1, le=200),
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    return {"alerts": await alert_service.get_user_alerts(session, user.user_id, limit=limit)}


@router.post("/{alert_id}/read", summary="Mark an alert as read")
async def mark_read(
    alert_id: str,
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    changed = await tracker.mark_alert_as_read(session, alert_id, user.user_id)
    return {"alert_id": alert_id, "updated": changed}


@router.get("/{alert_id}/receipts", summary="Read receipts for an alert")
async def receipts(
    alert_id: str,
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    return (await tracker.get_read_receipts(session, alert_id)).to_dict()


@router.get("/{alert_id}/receipts/summary", summary="Read counts for an alert")
async def receipt_summary(
    alert_id: str,
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    return await tracker.get_read_summary(session, alert_id)
