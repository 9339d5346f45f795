"""
Health check aggregation — deep health probe and system self-test.

Checks:
    • Database connectivity (SELECT 1 through the async engine)
    • Weather API configuration (OpenWeatherMap key present)
    • Delivery channels (SMS provider, web push keys)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - The admin "test system" screen (``run_system_test``)

A channel running in simulation mode is reported healthy: simulated sinks
are the supported configuration when no provider is set up. An SMS
provider name the gateway does not implement is unhealthy, since every
message sent through it fails.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from skyguard.alerts.channels import sms_gateway
from skyguard.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != HealthStatus.UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def component(self, name: str) -> Optional[ComponentHealth]:
        return next((c for c in self.components if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database(engine: AsyncEngine) -> ComponentHealth:
    """Round-trip a trivial query through the connection pool."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "Connection pool available"
        comp.details = {"backend": engine.dialect.name}
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_weather_api(weather_client: Any = None) -> ComponentHealth:
    """The weather monitor needs an API key; without one every cycle fails."""
    comp = ComponentHealth(name="weather")
    start = time.monotonic()
    configured = (
        weather_client.is_configured if weather_client is not None
        else bool(settings.OPENWEATHERMAP_API_KEY)
    )
    comp.details = {"base_url": settings.OPENWEATHERMAP_BASE_URL}
    if configured:
        comp.message = "OpenWeatherMap configured"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "OPENWEATHERMAP_API_KEY not set"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_channels() -> List[ComponentHealth]:
    """Report each delivery channel's provider; all sinks are simulated today."""
    sms = ComponentHealth(name="sms")
    if settings.SMS_PROVIDER not in sms_gateway.SUPPORTED_PROVIDERS:
        sms.status = HealthStatus.UNHEALTHY
        sms.message = f"Provider '{settings.SMS_PROVIDER}' is not supported"
    else:
        sms.message = "Simulation mode"

    push = ComponentHealth(name="push")
    push.message = "Simulation mode (VAPID key set)" if settings.VAPID_PRIVATE_KEY else "Simulation mode"

    email = ComponentHealth(name="email", message="Simulation mode")

    return [sms, push, email]


def _aggregate(report: HealthReport) -> None:
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY


async def run_health_check(engine: AsyncEngine, weather_client: Any = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )
    report.components.append(await check_database(engine))
    report.components.append(await check_weather_api(weather_client))
    report.components.extend(check_channels())
    _aggregate(report)
    return report


async def run_system_test(engine: AsyncEngine, weather_client: Any = None) -> Dict[str, Any]:
    """
    Pass/fail per subsystem for the admin test screen.

    A degraded component still passes; only an unhealthy one fails.
    """
    report = await run_health_check(engine, weather_client)
    results = {
        name: bool(report.component(name) and report.component(name).ok)
        for name in ("sms", "push", "email", "weather", "database")
    }
    logger.info("System self-test: %s", results)
    return {"results": results, "report": report.to_dict()}
