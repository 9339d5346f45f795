"""
preferences.py — Per-user opt-in flag store.

Rows are created lazily with every flag on the first time a user's
preferences are read, including during eligibility resolution, so a user
who never opened the settings screen still receives every alert type on
every channel they have contact details for.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import Preferences
from skyguard.core.config import settings
from skyguard.core.errors import ValidationError
from skyguard.core.tables import UserPreferenceRow

logger = logging.getLogger(__name__)


def _to_preferences(row: UserPreferenceRow) -> Preferences:
    return Preferences(
        user_id=row.user_id,
        **{name: bool(getattr(row, name)) for name in Preferences.field_names()},
    )


async def _load_row(session: AsyncSession, user_id: str) -> Optional[UserPreferenceRow]:
    result = await session.execute(
        select(UserPreferenceRow).where(UserPreferenceRow.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_preferences(session: AsyncSession, user_id: str) -> Preferences:
    """Return a user's preferences, creating the default row if absent."""
    row = await _load_row(session, user_id)
    if row is None:
        row = UserPreferenceRow(user_id=user_id)
        session.add(row)
        await session.flush()
        logger.info("Created default preferences for user %s", user_id)
    return _to_preferences(row)


async def _load_rows(
    session: AsyncSession, user_ids: List[str]
) -> Dict[str, UserPreferenceRow]:
    result = await session.execute(
        select(UserPreferenceRow).where(UserPreferenceRow.user_id.in_(user_ids))
    )
    return {row.user_id: row for row in result.scalars()}


async def load_preferences(
    session: AsyncSession, user_ids: Iterable[str]
) -> Dict[str, Preferences]:
    """
    Read preferences for many users without writing.

    Users with no stored row get all-on defaults in memory only.
    """
    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        return {}
    found = await _load_rows(session, wanted)
    return {
        uid: _to_preferences(found[uid]) if uid in found else Preferences(user_id=uid)
        for uid in wanted
    }


async def ensure_preferences(
    session: AsyncSession, user_ids: Iterable[str]
) -> Dict[str, Preferences]:
    """
    Load preferences for many users at once.

    Missing rows are inserted with all flags on, so the returned mapping
    always has one entry per requested user.
    """
    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        return {}

    found = await _load_rows(session, wanted)

    missing = [uid for uid in wanted if uid not in found]
    for uid in missing:
        row = UserPreferenceRow(user_id=uid)
        session.add(row)
        found[uid] = row
    if missing:
        await session.flush()
        logger.info("Created default preferences for %d users", len(missing))

    return {uid: _to_preferences(found[uid]) for uid in wanted}


async def update_preferences(
    session: AsyncSession, user_id: str, changes: Dict[str, Any]
) -> Preferences:
    """
    Apply a partial update to a user's own preferences.

    Raises
    ------
    ValidationError
        Unknown flag name, non-boolean value, or an attempt to switch off
        emergency alerts while they are mandatory.
    """
    allowed = set(Preferences.field_names())
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationError(
            f"Unknown preference field(s): {', '.join(unknown)}",
            fields=unknown,
        )
    for name, value in changes.items():
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be true or false", field=name)

    if settings.EMERGENCY_ALERTS_ALWAYS_ON and changes.get("emergency_alerts") is False:
        raise ValidationError(
            "Emergency alerts cannot be disabled",
            field="emergency_alerts",
        )

    row = await _load_row(session, user_id)
    if row is None:
        row = UserPreferenceRow(user_id=user_id)
        session.add(row)

    for name, value in changes.items():
        setattr(row, name, value)
    await session.flush()

    logger.info("Updated preferences for user %s: %s", user_id, sorted(changes))
    return _to_preferences(row)
