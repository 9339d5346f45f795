"""
FastAPI route: weather widget, threshold rules and the monitor trigger.

Provides endpoints to:
    GET    /api/v1/weather/current?lat=&lon=   — conditions for the widget
    GET    /api/v1/weather/rules               — list rules (admin)
    POST   /api/v1/weather/rules               — create rule (admin)
    PATCH  /api/v1/weather/rules/{id}          — edit / toggle rule (admin)
    DELETE /api/v1/weather/rules/{id}          — delete rule (admin)
    POST   /api/v1/weather/monitor/run         — run one monitoring cycle (admin)

Rule edits are recorded as admin_action audit entries.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import UserRecord
from skyguard.api.deps import (
    get_current_user,
    get_monitor,
    get_weather_client,
    request_meta,
    require_admin,
)
from skyguard.api.schemas import WeatherRuleCreate, WeatherRuleUpdate
from skyguard.audit.monitor import SecurityMonitor
from skyguard.core.config import settings
from skyguard.core.database import get_db
from skyguard.weather import rules
from skyguard.weather.monitor import WeatherMonitor

router = APIRouter(prefix="/api/v1/weather", tags=["weather"])


@router.get("/current", summary="Current conditions for a coordinate")
async def current_weather(
    lat: float = Query(..., examples=[40.7128]),
    lon: float = Query(..., examples=[-74.0060]),
    _user: UserRecord = Depends(get_current_user),
    client: Any = Depends(get_weather_client),
):
    reading = await client.fetch_current(lat, lon)
    return reading.to_widget()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@router.get("/rules", summary="List weather alert rules")
async def list_rules(
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
):
    rows = await rules.list_rule_rows(session)
    return {"rules": [rules.rule_row_to_dict(r) for r in rows]}


@router.post("/rules", status_code=201, summary="Create a weather alert rule")
async def create_rule(
    body: WeatherRuleCreate,
    request: Request,
    admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    row = await rules.create_rule(session, body.model_dump(), admin.user_id)
    data = rules.rule_row_to_dict(row)
    await session.commit()
    await monitor.monitor_admin_action(
        admin.user_id, "create_weather_rule",
        {"rule_id": row.id, "alert_type": row.alert_type, "title": row.alert_title},
        request_meta(request),
    )
    return data


@router.patch("/rules/{rule_id}", summary="Edit or toggle a weather alert rule")
async def update_rule(
    rule_id: str,
    body: WeatherRuleUpdate,
    request: Request,
    admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    changes = body.model_dump(exclude_unset=True)
    row = await rules.update_rule(session, rule_id, changes)
    data = rules.rule_row_to_dict(row)
    await session.commit()
    await monitor.monitor_admin_action(
        admin.user_id, "update_weather_rule",
        {"rule_id": rule_id, "fields": sorted(changes)},
        request_meta(request),
    )
    return data


@router.delete("/rules/{rule_id}", summary="Delete a weather alert rule")
async def delete_rule(
    rule_id: str,
    request: Request,
    admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    await rules.delete_rule(session, rule_id)
    await session.commit()
    await monitor.monitor_admin_action(
        admin.user_id, "delete_weather_rule", {"rule_id": rule_id}, request_meta(request),
    )
    return {"deleted": rule_id}


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@router.post("/monitor/run", summary="Run one weather monitoring cycle")
async def run_monitor(
    _admin: UserRecord = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    client: Any = Depends(get_weather_client),
):
    report = await WeatherMonitor(client).run_cycle(session, settings.MONITORED_LOCATIONS)
    return report.to_dict()
