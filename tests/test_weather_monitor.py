"""
test_weather_monitor.py — Rule evaluation and the monitoring cycle.

Covers:
    • Rule operators and reading fields (storm skipped, equals tolerance)
    • Rule CRUD validation
    • Custom rule trigger + cooldown
    • Official advisory de-duplication
    • Air-quality threshold and priority
    • Per-location failure isolation

Run with:
    pytest tests/test_weather_monitor.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from skyguard.alerts.models import utcnow
from skyguard.core.config import MonitoredLocation
from skyguard.core.errors import NotFoundError, ValidationError
from skyguard.core.tables import AlertRecipientRow, AlertRow, WeatherAlertLogRow
from skyguard.weather.client import OfficialAdvisory
from skyguard.weather.monitor import WeatherMonitor, custom_alert_text, official_alert_text
from skyguard.weather.rules import (
    ConditionOperator,
    RuleType,
    WeatherRule,
    create_rule,
    delete_rule,
    evaluate,
    list_rules,
    update_rule,
)

from conftest import FakeWeatherSource, make_reading, make_user

NEW_YORK = MonitoredLocation(name="New York", lat=40.7128, lon=-74.0060)
CHICAGO = MonitoredLocation(name="Chicago", lat=41.8781, lon=-87.6298)


def _rule(rule_type=RuleType.WIND, op=ConditionOperator.GREATER_THAN, threshold=20.0, **kw):
    return WeatherRule(
        id=kw.pop("id", "r1"),
        alert_type=rule_type,
        condition_operator=op,
        threshold_value=threshold,
        alert_title=kw.pop("alert_title", "High Wind"),
        alert_message=kw.pop("alert_message", "Secure loose materials."),
        **kw,
    )


def _rule_data(**overrides):
    data = {
        "alert_type": "wind",
        "condition_operator": "greater_than",
        "threshold_value": 20,
        "alert_title": "High Wind",
        "alert_message": "Secure loose materials.",
    }
    data.update(overrides)
    return data


class _Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


async def _alerts(session):
    return (await session.execute(select(AlertRow).order_by(AlertRow.created_at))).scalars().all()


async def _log_count(session):
    return await session.scalar(select(func.count()).select_from(WeatherAlertLogRow))


# ═══════════════════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════════════════

class TestEvaluate:

    def test_greater_than(self):
        assert evaluate(_rule(threshold=20), make_reading(wind_speed=25))
        assert not evaluate(_rule(threshold=20), make_reading(wind_speed=20))

    def test_less_than(self):
        rule = _rule(RuleType.TEMPERATURE, ConditionOperator.LESS_THAN, 32)
        assert evaluate(rule, make_reading(temperature=20))
        assert not evaluate(rule, make_reading(temperature=40))

    def test_equals_tolerance(self):
        rule = _rule(RuleType.HUMIDITY, ConditionOperator.EQUALS, 80)
        assert evaluate(rule, make_reading(humidity=80))
        assert not evaluate(rule, make_reading(humidity=81))

    def test_air_quality_missing_reads_zero(self):
        rule = _rule(RuleType.AIR_QUALITY, ConditionOperator.LESS_THAN, 1)
        assert evaluate(rule, make_reading(aqi=None))

    def test_storm_never_fires(self):
        rule = _rule(RuleType.STORM, ConditionOperator.GREATER_THAN, -1000)
        assert not evaluate(rule, make_reading())

    def test_location_filter_case_insensitive(self):
        rule = _rule(location_filter="new york")
        assert evaluate(rule, make_reading("New York", wind_speed=30))
        assert not evaluate(rule, make_reading("Chicago", wind_speed=30))


# ═══════════════════════════════════════════════════════════════════════════
# Rule management
# ═══════════════════════════════════════════════════════════════════════════

class TestRuleCrud:

    async def test_create_and_list(self, session):
        row = await create_rule(session, _rule_data(location_filter="<b>Chicago</b>"), "admin1")
        await session.commit()
        assert row.location_filter == "Chicago"
        assert row.threshold_value == 20.0
        rules = await list_rules(session, active_only=True)
        assert [r.id for r in rules] == [row.id]

    async def test_invalid_operator(self, session):
        with pytest.raises(ValidationError):
            await create_rule(session, _rule_data(condition_operator="at_least"), "admin1")

    async def test_title_bounds(self, session):
        with pytest.raises(ValidationError):
            await create_rule(session, _rule_data(alert_title="t" * 101), "admin1")

    async def test_toggle_inactive(self, session):
        row = await create_rule(session, _rule_data(), "admin1")
        await update_rule(session, row.id, {"is_active": False})
        await session.commit()
        assert await list_rules(session, active_only=True) == []
        assert len(await list_rules(session)) == 1

    async def test_delete(self, session):
        row = await create_rule(session, _rule_data(), "admin1")
        await delete_rule(session, row.id)
        with pytest.raises(NotFoundError):
            await delete_rule(session, row.id)


# ═══════════════════════════════════════════════════════════════════════════
# Custom rules in the cycle
# ═══════════════════════════════════════════════════════════════════════════

class TestCustomRuleCycle:

    async def test_wind_rule_fires_once_within_cooldown(self, session):
        await make_user(session, "emp1")
        rule = await create_rule(session, _rule_data(), "admin1")
        await session.commit()

        source = FakeWeatherSource({"New York": make_reading(wind_speed=25)})
        monitor = WeatherMonitor(source, cooldown_minutes=60, aqi_threshold=4)

        first = await monitor.run_cycle(session, [NEW_YORK])
        assert len(first.triggered) == 1
        assert first.triggered[0].rule_id == rule.id

        alerts = await _alerts(session)
        assert len(alerts) == 1
        assert alerts[0].priority == "high"
        assert alerts[0].alert_type == "weather"
        assert alerts[0].sent_by is None
        assert alerts[0].title == "Weather Alert: High Wind"

        log = await session.scalar(select(WeatherAlertLogRow))
        assert log.weather_alert_id == rule.id
        assert log.alert_id == alerts[0].id
        assert log.affected_users_count == 1
        assert log.weather_data["wind_speed"] == 25

        second = await monitor.run_cycle(session, [NEW_YORK])
        assert second.triggered == []
        assert second.suppressed == 1
        assert len(await _alerts(session)) == 1

    async def test_fires_again_after_cooldown(self, session):
        await create_rule(session, _rule_data(), "admin1")
        await session.commit()
        clock = _Clock()
        source = FakeWeatherSource({"New York": make_reading(wind_speed=25)})
        monitor = WeatherMonitor(source, cooldown_minutes=60, clock=clock)

        await monitor.run_cycle(session, [NEW_YORK])
        clock.now += timedelta(minutes=61)
        report = await monitor.run_cycle(session, [NEW_YORK])

        assert len(report.triggered) == 1
        assert len(await _alerts(session)) == 2

    async def test_inactive_rule_ignored(self, session):
        row = await create_rule(session, _rule_data(is_active=False), "admin1")
        await session.commit()
        assert row.is_active is False
        source = FakeWeatherSource({"New York": make_reading(wind_speed=50)})

        report = await WeatherMonitor(source).run_cycle(session, [NEW_YORK])
        assert report.rules_checked == 0
        assert report.triggered == []

    async def test_message_includes_conditions(self):
        text = custom_alert_text(_rule(), make_reading(temperature=71, wind_speed=25, humidity=40, aqi=2))
        assert text["message"].startswith("Secure loose materials.\n\nCurrent conditions in New York:")
        assert "Temperature: 71°F" in text["message"]
        assert "Wind: 25 mph" in text["message"]
        assert "Air Quality: 2" in text["message"]


# ═══════════════════════════════════════════════════════════════════════════
# Official advisories and air quality
# ═══════════════════════════════════════════════════════════════════════════

class TestOfficialAdvisories:

    ADVISORY = OfficialAdvisory(
        sender_name="NWS New York",
        event="Tornado Warning",
        start=1_760_000_000,
        end=1_760_010_000,
        description="Take shelter now.",
    )

    async def test_advisory_announced_once(self, session):
        await make_user(session, "emp1")
        source = FakeWeatherSource({"New York": make_reading(advisories=[self.ADVISORY])})
        clock = _Clock()
        monitor = WeatherMonitor(source, clock=clock)

        first = await monitor.run_cycle(session, [NEW_YORK])
        assert len(first.triggered) == 1
        assert first.triggered[0].trigger_key == "New York-Tornado Warning-1760000000"

        alert = (await _alerts(session))[0]
        assert alert.priority == "critical"
        assert alert.title == "🚨 Weather Warning: Tornado Warning"

        # well past any cooldown: advisories are never repeated
        clock.now += timedelta(days=2)
        second = await monitor.run_cycle(session, [NEW_YORK])
        assert second.triggered == []
        assert second.suppressed == 1

    def test_message_layout(self):
        text = official_alert_text("New York", self.ADVISORY)
        assert text["message"].startswith("⚠️ OFFICIAL WEATHER ALERT\n\nEvent: Tornado Warning")
        assert "Issued by: NWS New York" in text["message"]
        assert "Location: New York" in text["message"]


class TestAirQuality:

    async def test_below_threshold_ignored(self, session):
        source = FakeWeatherSource({"New York": make_reading(aqi=3)})
        report = await WeatherMonitor(source, aqi_threshold=4).run_cycle(session, [NEW_YORK])
        assert report.triggered == []

    async def test_poor_is_high_very_poor_is_critical(self, session):
        source = FakeWeatherSource({
            "New York": make_reading("New York", aqi=4),
            "Chicago": make_reading("Chicago", aqi=5),
        })
        report = await WeatherMonitor(source, aqi_threshold=4).run_cycle(session, [NEW_YORK, CHICAGO])

        assert len(report.triggered) == 2
        by_title = {a.title: a.priority for a in await _alerts(session)}
        assert by_title == {
            "Air Quality Alert: Poor": "high",
            "Air Quality Alert: Very Poor": "critical",
        }

    async def test_cooldown(self, session):
        source = FakeWeatherSource({"New York": make_reading(aqi=5)})
        monitor = WeatherMonitor(source, aqi_threshold=4)
        await monitor.run_cycle(session, [NEW_YORK])
        report = await monitor.run_cycle(session, [NEW_YORK])
        assert report.suppressed == 1
        assert await _log_count(session) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Failure isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureIsolation:

    async def test_failing_location_does_not_stop_cycle(self, session):
        await make_user(session, "emp1")
        await create_rule(session, _rule_data(), "admin1")
        await session.commit()
        source = FakeWeatherSource(
            {"Chicago": make_reading("Chicago", wind_speed=30)},
            failing=["New York"],
        )

        report = await WeatherMonitor(source).run_cycle(session, [NEW_YORK, CHICAGO])

        assert source.calls == ["New York", "Chicago"]
        assert [e["location"] for e in report.errors] == ["New York"]
        assert [t.location for t in report.triggered] == ["Chicago"]
        assert await session.scalar(select(func.count()).select_from(AlertRecipientRow)) == 1

    async def test_report_dict(self, session):
        source = FakeWeatherSource({}, failing=["New York"])
        data = (await WeatherMonitor(source).run_cycle(session, [NEW_YORK])).to_dict()
        assert data["locations_checked"] == 1
        assert data["triggered"] == []
        assert len(data["errors"]) == 1
