"""
FastAPI route: security audit trail.

    GET  /api/v1/audit               — newest entries, optional type filter (admin)
    POST /api/v1/audit/failed-auth   — login screen reports a rejected sign-in
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import UserRecord
from skyguard.api.deps import get_monitor, request_meta, require_admin
from skyguard.api.schemas import FailedAuthReport
from skyguard.audit.monitor import AuditEventType, SecurityMonitor
from skyguard.core.database import get_db
from skyguard.core.errors import ValidationError

router = APIRouter(prefix="/api/v1/audit", tags=["audit"])


@router.get("", summary="List audit entries")
async def list_audit_entries(
    event_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    if event_type and event_type not in {e.value for e in AuditEventType}:
        raise ValidationError(
            f"Invalid event_type: {event_type!r}",
            field="event_type",
            allowed=[e.value for e in AuditEventType],
        )
    return {"entries": await monitor.list_entries(session, event_type=event_type, limit=limit)}


@router.post("/failed-auth", status_code=202, summary="Report a failed sign-in")
async def report_failed_auth(
    body: FailedAuthReport,
    request: Request,
    monitor: SecurityMonitor = Depends(get_monitor),
):
    email = body.email.strip().lower()
    logged = await monitor.monitor_failed_auth(email, body.error, request_meta(request))
    return {"logged": logged, "attempt_count": monitor.failed_attempt_count(email)}
