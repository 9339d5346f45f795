"""
Shared FastAPI dependencies: identity, admin gate, process-wide services.

Identity comes from the auth gateway in front of the service, which sets
``X-User-Id`` (and optionally ``X-User-Name`` / ``X-User-Email``) on every
forwarded request. A user seen for the first time gets an employee profile.

The rate limiter, security monitor, weather client and session factory are
created once in the app lifespan and stored on ``app.state``.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skyguard.alerts import directory
from skyguard.alerts.models import UserRecord, UserRole
from skyguard.alerts.rate_limiter import SlidingWindowRateLimiter
from skyguard.audit.monitor import RequestMeta, SecurityMonitor
from skyguard.core.database import get_db
from skyguard.core.errors import AuthRequiredError, ForbiddenError
from skyguard.core.middleware import client_ip_of


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=client_ip_of(request),
        user_agent=request.headers.get("User-Agent"),
    )


def get_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.limiter


def get_monitor(request: Request) -> SecurityMonitor:
    return request.app.state.monitor


def get_weather_client(request: Request) -> Any:
    return request.app.state.weather_client


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_db),
) -> UserRecord:
    if not x_user_id:
        raise AuthRequiredError()
    user = await directory.upsert_profile(
        session, x_user_id, username=x_user_name, email=x_user_email,
    )
    await session.commit()
    return user


async def require_admin(
    request: Request,
    user: UserRecord = Depends(get_current_user),
    monitor: SecurityMonitor = Depends(get_monitor),
) -> UserRecord:
    if user.role != UserRole.ADMIN:
        await monitor.monitor_unauthorized_access(
            user.user_id,
            request.url.path,
            request.method,
            user.role.value,
            request_meta(request),
        )
        raise ForbiddenError()
    return user
