"""
FastAPI route: user management.

    GET   /api/v1/users                 — directory + head counts (admin)
    GET   /api/v1/users/me              — the caller's profile
    PATCH /api/v1/users/{id}/role       — change role (admin, audited)
    PATCH /api/v1/users/{id}/phone      — set / clear phone (admin or self)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts import directory
from skyguard.alerts.models import UserRecord, UserRole
from skyguard.api.deps import get_current_user, get_monitor, request_meta, require_admin
from skyguard.api.schemas import PhoneUpdate, RoleUpdate
from skyguard.audit.monitor import SecurityMonitor
from skyguard.core.database import get_db
from skyguard.core.errors import ForbiddenError

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("", summary="List users")
async def list_users(
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[str] = Query(None),
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    role_filter = directory.parse_role(role) if role else None
    users = await directory.list_users(session, search=search, role=role_filter)
    return {
        "users": [u.to_dict() for u in users],
        "summary": await directory.directory_summary(session),
    }


@router.get("/me", summary="My profile")
async def me(user: UserRecord = Depends(get_current_user)):
    return user.to_dict()


@router.patch("/{user_id}/role", summary="Change a user's role")
async def change_role(
    user_id: str,
    body: RoleUpdate,
    request: Request,
    admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    updated = await directory.change_role(
        session, user_id, body.role,
        actor_id=admin.user_id, monitor=monitor, meta=request_meta(request),
    )
    return updated.to_dict()


@router.patch("/{user_id}/phone", summary="Set or clear a phone number")
async def update_phone(
    user_id: str,
    body: PhoneUpdate,
    request: Request,
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    if user.user_id != user_id and user.role != UserRole.ADMIN:
        await monitor.monitor_unauthorized_access(
            user.user_id, request.url.path, request.method, user.role.value,
            request_meta(request),
        )
        raise ForbiddenError("You can only change your own phone number")
    updated = await directory.update_phone_number(session, user_id, body.phone_number)
    return updated.to_dict()
