"""
FastAPI route: admin system self-test.

    GET /api/v1/system/test   — pass/fail for sms, push, email, weather, database
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from skyguard.alerts.models import UserRecord
from skyguard.api.deps import get_weather_client, require_admin
from skyguard.core.health import run_system_test

router = APIRouter(prefix="/api/v1/system", tags=["system"])


@router.get("/test", summary="Run the system self-test")
async def system_test(
    request: Request,
    _admin: UserRecord = Depends(require_admin),
    client: Any = Depends(get_weather_client),
):
    return await run_system_test(request.app.state.engine, client)
