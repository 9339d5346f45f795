"""
directory.py — User directory accessor over the ``profiles`` table.

Identity is owned by the upstream auth gateway; this module only reads and
edits the local profile: role, username, phone and email. Role changes are
reported to the security monitor whether or not they succeed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import UserRecord, UserRole
from skyguard.alerts.sanitize import sanitize_text, validate_phone_number
from skyguard.core.errors import ForbiddenError, NotFoundError, ValidationError
from skyguard.core.tables import Profile

if TYPE_CHECKING:
    from skyguard.audit.monitor import RequestMeta, SecurityMonitor

logger = logging.getLogger(__name__)


def to_user_record(row: Profile) -> UserRecord:
    try:
        role = UserRole(row.role)
    except ValueError:
        logger.warning("Profile %s has unknown role %r, treating as employee", row.user_id, row.role)
        role = UserRole.EMPLOYEE
    return UserRecord(
        user_id=row.user_id,
        role=role,
        username=row.username,
        phone_number=row.phone_number,
        email=row.email,
    )


def parse_role(value: str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise ValidationError(
            f"Invalid role: {value!r}",
            field="role",
            allowed=[r.value for r in UserRole],
        )


async def get_profile(session: AsyncSession, user_id: str) -> Optional[Profile]:
    return await session.get(Profile, user_id)


async def get_user(session: AsyncSession, user_id: str) -> Optional[UserRecord]:
    row = await get_profile(session, user_id)
    return to_user_record(row) if row else None


async def upsert_profile(
    session: AsyncSession,
    user_id: str,
    *,
    username: Optional[str] = None,
    email: Optional[str] = None,
    role: UserRole = UserRole.EMPLOYEE,
    phone_number: Optional[str] = None,
) -> UserRecord:
    """Create the profile for a newly seen user, or return the existing one."""
    row = await get_profile(session, user_id)
    if row is None:
        row = Profile(
            user_id=user_id,
            username=username,
            email=email,
            role=role.value,
            phone_number=phone_number,
        )
        session.add(row)
        await session.flush()
        logger.info("Created profile for user %s (role=%s)", user_id, role.value)
    return to_user_record(row)


async def list_users(
    session: AsyncSession,
    *,
    search: Optional[str] = None,
    role: Optional[UserRole] = None,
) -> List[UserRecord]:
    """All users, optionally filtered by username/phone substring and role."""
    stmt = select(Profile).order_by(Profile.created_at.desc())
    if role is not None:
        stmt = stmt.where(Profile.role == role.value)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Profile.username).like(pattern),
                func.lower(Profile.phone_number).like(pattern),
            )
        )
    result = await session.execute(stmt)
    return [to_user_record(row) for row in result.scalars()]


async def directory_summary(session: AsyncSession) -> Dict[str, int]:
    """Head counts for the user management screen."""
    result = await session.execute(
        select(
            func.count(Profile.user_id),
            func.count(Profile.user_id).filter(Profile.role == UserRole.ADMIN.value),
            func.count(Profile.user_id).filter(Profile.role == UserRole.EMPLOYEE.value),
            func.count(Profile.phone_number),
        )
    )
    total, admins, employees, with_phones = result.one()
    return {
        "total": total,
        "admins": admins,
        "employees": employees,
        "with_phones": with_phones,
    }


async def change_role(
    session: AsyncSession,
    target_user_id: str,
    new_role: str,
    *,
    actor_id: str,
    monitor: "SecurityMonitor",
    meta: Optional["RequestMeta"] = None,
) -> UserRecord:
    """
    Change a user's role and audit the attempt.

    Admins may not demote themselves.
    """
    role = parse_role(new_role)
    row = await get_profile(session, target_user_id)
    if row is None:
        raise NotFoundError("User", user_id=target_user_id)

    old_role = row.role
    if target_user_id == actor_id and role != UserRole.ADMIN:
        await monitor.monitor_role_change(
            actor_id, target_user_id, old_role, role.value, success=False, meta=meta,
        )
        raise ForbiddenError("Administrators cannot remove their own admin role")

    row.role = role.value
    await session.flush()
    # The audit entry is written in its own transaction
    await session.commit()

    await monitor.monitor_role_change(
        actor_id, target_user_id, old_role, role.value, success=True, meta=meta,
    )
    logger.info("User %s role %s → %s (by %s)", target_user_id, old_role, role.value, actor_id)
    return to_user_record(row)


async def update_phone_number(
    session: AsyncSession, user_id: str, phone_number: Optional[str]
) -> UserRecord:
    """Set or clear a phone number. Empty input clears it."""
    row = await get_profile(session, user_id)
    if row is None:
        raise NotFoundError("User", user_id=user_id)

    raw = sanitize_text(phone_number)
    row.phone_number = validate_phone_number(raw) if raw else None
    await session.flush()
    logger.info("Updated phone number for user %s", user_id)
    return to_user_record(row)

