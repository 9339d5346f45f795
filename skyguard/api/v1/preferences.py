"""
FastAPI route: the caller's notification preferences.

    GET   /api/v1/preferences   — current flags (created with defaults)
    PATCH /api/v1/preferences   — partial update
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts import preferences
from skyguard.alerts.models import UserRecord
from skyguard.api.deps import get_current_user
from skyguard.api.schemas import PreferencesUpdate
from skyguard.core.database import get_db

router = APIRouter(prefix="/api/v1/preferences", tags=["preferences"])


@router.get("", summary="Get my notification preferences")
async def get_my_preferences(
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    return (await preferences.get_preferences(session, user.user_id)).to_dict()


@router.patch("", summary="Update my notification preferences")
async def update_my_preferences(
    body: PreferencesUpdate,
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    changes = body.model_dump(exclude_none=True)
    prefs = await preferences.update_preferences(session, user.user_id, changes)
    return prefs.to_dict()
