"""
monitor.py — Weather rule evaluation cycle.

For every monitored location, in order:

    1. Official advisories   one alert per advisory, keyed
                             "{location}-{event}-{start}"; an advisory is
                             never announced twice
    2. Air quality           AQI ≥ threshold (4 = "Poor") → one alert per
                             location per cooldown window
    3. Custom rules          every active rule that fires → one alert per
                             rule per cooldown window

Each alert goes through the regular fan-out (``send_system_alert``, type
weather, recipients all) and is recorded in ``weather_alert_logs``. That
log is the only de-duplication guard: two overlapping cycles can both pass
the lookup before either writes, so delivery is at-least-once.

A location that fails (fetch error, store error) is logged and skipped;
the remaining locations are still evaluated.

Run one cycle from the command line:

    python -m skyguard.weather.monitor
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.alert_service import send_system_alert
from skyguard.alerts.models import AlertPriority, AlertType, RecipientTarget, utcnow
from skyguard.core.config import MonitoredLocation, settings
from skyguard.core.tables import WeatherAlertLogRow
from skyguard.weather.client import OfficialAdvisory, WeatherReading, aqi_level_name
from skyguard.weather.rules import WeatherRule, evaluate, list_rules

logger = logging.getLogger(__name__)


@dataclass
class TriggeredAlert:
    location: str
    kind: str          # "official" | "air_quality" | "custom"
    label: str
    trigger_key: str
    alert_id: str
    recipient_count: int
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "type": self.kind,
            "alert": self.label,
            "trigger_key": self.trigger_key,
            "alert_id": self.alert_id,
            "recipients": self.recipient_count,
            "rule_id": self.rule_id,
        }


@dataclass
class CycleReport:
    locations_checked: int = 0
    rules_checked: int = 0
    triggered: List[TriggeredAlert] = field(default_factory=list)
    suppressed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": "Weather monitoring completed",
            "locations_checked": self.locations_checked,
            "rules_checked": self.rules_checked,
            "triggered": [t.to_dict() for t in self.triggered],
            "suppressed": self.suppressed,
            "errors": list(self.errors),
        }


def _fmt_ts(unix_seconds: int) -> str:
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _fmt_component(components: Dict[str, float], key: str) -> str:
    value = components.get(key)
    return f"{value:.1f}" if value is not None else "N/A"


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

def official_alert_text(location: str, advisory: OfficialAdvisory) -> Dict[str, str]:
    return {
        "title": f"🚨 Weather Warning: {advisory.event}",
        "message": (
            "⚠️ OFFICIAL WEATHER ALERT\n\n"
            f"Event: {advisory.event}\n"
            f"Issued by: {advisory.sender_name}\n\n"
            f"Description: {advisory.description}\n\n"
            f"Location: {location}\n"
            f"Start: {_fmt_ts(advisory.start)}\n"
            f"End: {_fmt_ts(advisory.end)}"
        ),
    }


def air_quality_alert_text(location: str, reading: WeatherReading) -> Dict[str, str]:
    aq = reading.air_quality
    assert aq is not None
    level = aqi_level_name(aq.aqi)
    advice = "Avoid outdoor activities" if aq.aqi >= 5 else "Limit prolonged outdoor exertion"
    return {
        "title": f"Air Quality Alert: {level}",
        "message": (
            "🌫️ AIR QUALITY ALERT\n\n"
            f"Air Quality Index: {aq.aqi} ({level})\n"
            f"Location: {location}\n\n"
            f"PM2.5: {_fmt_component(aq.components, 'pm2_5')} μg/m³\n"
            f"PM10: {_fmt_component(aq.components, 'pm10')} μg/m³\n\n"
            f"Recommendation: {advice}"
        ),
    }


def custom_alert_text(rule: WeatherRule, reading: WeatherReading) -> Dict[str, str]:
    conditions = (
        f"Current conditions in {reading.location}:\n"
        f"Temperature: {reading.temperature}°F\n"
        f"Wind: {reading.wind_speed} mph\n"
        f"Humidity: {reading.humidity}%"
    )
    if reading.air_quality:
        conditions += f"\nAir Quality: {reading.air_quality.aqi}"
    return {
        "title": f"Weather Alert: {rule.alert_title}",
        "message": f"{rule.alert_message}\n\n{conditions}",
    }


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class WeatherMonitor:
    """
    Evaluates advisories, air quality and custom rules per location.

    Parameters
    ----------
    source
        Anything with ``async fetch_reading(lat, lon, name) -> WeatherReading``;
        normally an ``OpenWeatherClient``.
    cooldown_minutes : int
        Minimum spacing between two alerts for the same trigger.
    aqi_threshold : int
        AQI (1–5) at or above which an air-quality alert fires.
    clock : callable
        Returns the current UTC datetime.
    """

    def __init__(
        self,
        source: Any,
        *,
        cooldown_minutes: Optional[int] = None,
        aqi_threshold: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.cooldown = timedelta(
            minutes=cooldown_minutes if cooldown_minutes is not None
            else settings.WEATHER_COOLDOWN_MINUTES
        )
        self.aqi_threshold = aqi_threshold if aqi_threshold is not None else settings.AQI_ALERT_THRESHOLD
        self._clock = clock

    # ── log lookups ──

    async def _key_logged(
        self, session: AsyncSession, trigger_key: str, since: Optional[datetime] = None
    ) -> bool:
        stmt = select(WeatherAlertLogRow.id).where(WeatherAlertLogRow.trigger_key == trigger_key)
        if since is not None:
            stmt = stmt.where(WeatherAlertLogRow.created_at >= since)
        return (await session.execute(stmt.limit(1))).first() is not None

    async def _rule_logged(self, session: AsyncSession, rule_id: str, since: datetime) -> bool:
        stmt = (
            select(WeatherAlertLogRow.id)
            .where(
                WeatherAlertLogRow.weather_alert_id == rule_id,
                WeatherAlertLogRow.created_at >= since,
            )
            .limit(1)
        )
        return (await session.execute(stmt)).first() is not None

    # ── alert + log ──

    async def _raise_alert(
        self,
        session: AsyncSession,
        *,
        text: Dict[str, str],
        priority: AlertPriority,
        trigger_key: str,
        weather_data: Dict[str, Any],
        rule_id: Optional[str] = None,
    ) -> Any:
        result = await send_system_alert(
            session,
            title=text["title"],
            message=text["message"],
            alert_type=AlertType.WEATHER,
            priority=priority,
            recipients=RecipientTarget.ALL,
        )
        session.add(
            WeatherAlertLogRow(
                weather_alert_id=rule_id,
                alert_id=result.alert_id,
                trigger_key=trigger_key,
                weather_data=weather_data,
                affected_users_count=result.recipient_count,
                created_at=self._clock(),
            )
        )
        await session.commit()
        return result

    async def _check_advisories(
        self, session: AsyncSession, reading: WeatherReading, report: CycleReport
    ) -> None:
        for advisory in reading.alerts:
            key = f"{reading.location}-{advisory.event}-{advisory.start}"
            if await self._key_logged(session, key):
                logger.info("Official weather alert already processed: %s", advisory.event,
                            extra={"location": reading.location})
                report.suppressed += 1
                continue

            result = await self._raise_alert(
                session,
                text=official_alert_text(reading.location, advisory),
                priority=AlertPriority.CRITICAL,
                trigger_key=key,
                weather_data={**reading.to_dict(), "alert_key": key},
            )
            report.triggered.append(TriggeredAlert(
                location=reading.location, kind="official",
                label=f"Official: {advisory.event}", trigger_key=key,
                alert_id=result.alert_id, recipient_count=result.recipient_count,
            ))

    async def _check_air_quality(
        self, session: AsyncSession, reading: WeatherReading, report: CycleReport, since: datetime
    ) -> None:
        aq = reading.air_quality
        if aq is None or aq.aqi < self.aqi_threshold:
            return

        key = f"{reading.location}-air_quality"
        if await self._key_logged(session, key, since):
            logger.info("Air quality alert for %s already sent within cooldown", reading.location,
                        extra={"location": reading.location})
            report.suppressed += 1
            return

        result = await self._raise_alert(
            session,
            text=air_quality_alert_text(reading.location, reading),
            priority=AlertPriority.CRITICAL if aq.aqi >= 5 else AlertPriority.HIGH,
            trigger_key=key,
            weather_data={**reading.to_dict(), "air_quality_alert": reading.location},
        )
        report.triggered.append(TriggeredAlert(
            location=reading.location, kind="air_quality",
            label=f"Air Quality: {aq.level}", trigger_key=key,
            alert_id=result.alert_id, recipient_count=result.recipient_count,
        ))

    async def _check_rules(
        self,
        session: AsyncSession,
        reading: WeatherReading,
        rules: Sequence[WeatherRule],
        report: CycleReport,
        since: datetime,
    ) -> None:
        for rule in rules:
            if not evaluate(rule, reading):
                continue

            logger.info("Custom weather alert triggered for %s: %s",
                        reading.location, rule.alert_title,
                        extra={"location": reading.location, "rule_id": rule.id})
            if await self._rule_logged(session, rule.id, since):
                logger.info("Custom alert already sent recently for %s", rule.alert_title,
                            extra={"rule_id": rule.id})
                report.suppressed += 1
                continue

            key = f"rule-{rule.id}-{reading.location}"
            result = await self._raise_alert(
                session,
                text=custom_alert_text(rule, reading),
                priority=AlertPriority.HIGH,
                trigger_key=key,
                weather_data=reading.to_dict(),
                rule_id=rule.id,
            )
            report.triggered.append(TriggeredAlert(
                location=reading.location, kind="custom",
                label=rule.alert_title, trigger_key=key,
                alert_id=result.alert_id, recipient_count=result.recipient_count,
                rule_id=rule.id,
            ))

    # ── cycle ──

    async def run_cycle(
        self, session: AsyncSession, locations: Sequence[MonitoredLocation]
    ) -> CycleReport:
        """
        Evaluate every location once.

        Returns
        -------
        CycleReport
            Alerts raised, triggers suppressed by the cooldown, and the
            locations that failed.
        """
        report = CycleReport(locations_checked=len(locations))
        rules = await list_rules(session, active_only=True)
        report.rules_checked = len(rules)

        for location in locations:
            try:
                reading = await self.source.fetch_reading(location.lat, location.lon, location.name)
                since = self._clock() - self.cooldown
                await self._check_advisories(session, reading, report)
                await self._check_air_quality(session, reading, report, since)
                await self._check_rules(session, reading, rules, report, since)
            except Exception as exc:
                await session.rollback()
                logger.exception("Error processing weather for %s", location.name,
                                 extra={"location": location.name})
                report.errors.append({"location": location.name, "error": str(exc)})

        logger.info(
            "Weather cycle: %d locations, %d rules, %d alerts, %d suppressed, %d errors",
            report.locations_checked, report.rules_checked,
            len(report.triggered), report.suppressed, len(report.errors),
        )
        return report


async def _main() -> None:
    from skyguard.core.database import async_session_factory, close_db, init_db
    from skyguard.core.logging_config import setup_logging
    from skyguard.weather.client import OpenWeatherClient

    setup_logging()
    await init_db()
    client = OpenWeatherClient()
    try:
        async with async_session_factory() as session:
            report = await WeatherMonitor(client).run_cycle(session, settings.MONITORED_LOCATIONS)
        logger.info("Cycle report: %s", json.dumps(report.to_dict()))
    finally:
        await client.close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(_main())
