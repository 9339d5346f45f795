"""
rules.py — Admin-defined weather threshold rules.

A rule names a reading field, a comparison and a threshold:

    Rule type     Reading field            Units
    ───────────   ──────────────────────   ─────────
    temperature   WeatherReading.temperature   °F
    wind          WeatherReading.wind_speed    mph
    humidity      WeatherReading.humidity      %
    air_quality   AirQuality.aqi               1–5 (0 when unavailable)
    storm         —                            not evaluated

    Operator       Fires when
    ────────────   ─────────────────────────────
    greater_than   value > threshold
    less_than      value < threshold
    equals         |value − threshold| < 1.0

Edits go through the same markup stripping and length bounds as manually
composed alerts, since a rule's title and message become alert text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import isoformat
from skyguard.alerts.sanitize import sanitize_text, validate_message, validate_title
from skyguard.core.errors import NotFoundError, ValidationError
from skyguard.core.tables import WeatherRuleRow
from skyguard.weather.client import WeatherReading

logger = logging.getLogger(__name__)

EQUALS_TOLERANCE = 1.0


class RuleType(str, Enum):
    TEMPERATURE = "temperature"
    WIND        = "wind"
    HUMIDITY    = "humidity"
    AIR_QUALITY = "air_quality"
    STORM       = "storm"


class ConditionOperator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN    = "less_than"
    EQUALS       = "equals"


@dataclass
class WeatherRule:
    id: str
    alert_type: RuleType
    condition_operator: ConditionOperator
    threshold_value: float
    alert_title: str
    alert_message: str
    location_filter: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None

    def applies_to(self, location: str) -> bool:
        if not self.location_filter:
            return True
        return self.location_filter.strip().lower() == location.strip().lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_type": self.alert_type.value,
            "condition_operator": self.condition_operator.value,
            "threshold_value": self.threshold_value,
            "location_filter": self.location_filter,
            "is_active": self.is_active,
            "alert_title": self.alert_title,
            "alert_message": self.alert_message,
            "created_by": self.created_by,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════════════════

def reading_value(rule_type: RuleType, reading: WeatherReading) -> Optional[float]:
    """The number a rule type compares, or None if the type has none."""
    if rule_type == RuleType.TEMPERATURE:
        return float(reading.temperature)
    if rule_type == RuleType.WIND:
        return float(reading.wind_speed)
    if rule_type == RuleType.HUMIDITY:
        return float(reading.humidity)
    if rule_type == RuleType.AIR_QUALITY:
        return float(reading.air_quality.aqi) if reading.air_quality else 0.0
    return None


def condition_met(operator: ConditionOperator, value: float, threshold: float) -> bool:
    if operator == ConditionOperator.GREATER_THAN:
        return value > threshold
    if operator == ConditionOperator.LESS_THAN:
        return value < threshold
    return abs(value - threshold) < EQUALS_TOLERANCE


def evaluate(rule: WeatherRule, reading: WeatherReading) -> bool:
    """True when the rule fires for this reading."""
    if not rule.applies_to(reading.location):
        return False
    value = reading_value(rule.alert_type, reading)
    if value is None:
        logger.debug("Rule %s (%s) has no numeric reading, skipped",
                     rule.id, rule.alert_type.value, extra={"rule_id": rule.id})
        return False
    return condition_met(rule.condition_operator, value, rule.threshold_value)


# ═══════════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════════

def _to_rule(row: WeatherRuleRow) -> WeatherRule:
    return WeatherRule(
        id=row.id,
        alert_type=RuleType(row.alert_type),
        condition_operator=ConditionOperator(row.condition_operator),
        threshold_value=row.threshold_value,
        alert_title=row.alert_title,
        alert_message=row.alert_message,
        location_filter=row.location_filter,
        is_active=row.is_active,
        created_by=row.created_by,
    )


def rule_row_to_dict(row: WeatherRuleRow) -> Dict[str, Any]:
    d = _to_rule(row).to_dict()
    d["created_at"] = isoformat(row.created_at)
    d["updated_at"] = isoformat(row.updated_at)
    return d


def _clean_fields(data: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
    """Validate rule fields; with ``partial`` only the keys present are checked."""
    out: Dict[str, Any] = {}

    def present(key: str) -> bool:
        return key in data if partial else True

    if present("alert_type"):
        try:
            out["alert_type"] = RuleType(data.get("alert_type")).value
        except ValueError:
            raise ValidationError("Invalid alert_type", field="alert_type",
                                  allowed=[t.value for t in RuleType])
    if present("condition_operator"):
        try:
            out["condition_operator"] = ConditionOperator(data.get("condition_operator")).value
        except ValueError:
            raise ValidationError("Invalid condition_operator", field="condition_operator",
                                  allowed=[o.value for o in ConditionOperator])
    if present("threshold_value"):
        raw = data.get("threshold_value")
        try:
            out["threshold_value"] = float(raw)
        except (TypeError, ValueError):
            raise ValidationError("threshold_value must be a number", field="threshold_value")
    if present("alert_title"):
        out["alert_title"] = validate_title(data.get("alert_title"))
    if present("alert_message"):
        out["alert_message"] = validate_message(data.get("alert_message"))
    if "location_filter" in data:
        out["location_filter"] = sanitize_text(data.get("location_filter")) or None
    if "is_active" in data:
        out["is_active"] = bool(data.get("is_active"))
    return out


async def list_rules(session: AsyncSession, *, active_only: bool = False) -> List[WeatherRule]:
    stmt = select(WeatherRuleRow).order_by(WeatherRuleRow.created_at.desc())
    if active_only:
        stmt = stmt.where(WeatherRuleRow.is_active.is_(True))
    result = await session.execute(stmt)
    return [_to_rule(row) for row in result.scalars()]


async def list_rule_rows(session: AsyncSession) -> List[WeatherRuleRow]:
    result = await session.execute(
        select(WeatherRuleRow).order_by(WeatherRuleRow.created_at.desc())
    )
    return list(result.scalars())


async def create_rule(
    session: AsyncSession, data: Mapping[str, Any], created_by: Optional[str]
) -> WeatherRuleRow:
    fields = _clean_fields(data, partial=False)
    row = WeatherRuleRow(created_by=created_by, **fields)
    session.add(row)
    await session.flush()
    logger.info("Created weather rule %s: %s %s %s",
                row.id, row.alert_type, row.condition_operator, row.threshold_value,
                extra={"rule_id": row.id})
    return row


async def _get_row(session: AsyncSession, rule_id: str) -> WeatherRuleRow:
    row = await session.get(WeatherRuleRow, rule_id)
    if row is None:
        raise NotFoundError("Weather rule", rule_id=rule_id)
    return row


async def update_rule(
    session: AsyncSession, rule_id: str, data: Mapping[str, Any]
) -> WeatherRuleRow:
    """Partial update; also used to toggle ``is_active``."""
    row = await _get_row(session, rule_id)
    for key, value in _clean_fields(data, partial=True).items():
        setattr(row, key, value)
    await session.flush()
    logger.info("Updated weather rule %s", rule_id, extra={"rule_id": rule_id})
    return row


async def delete_rule(session: AsyncSession, rule_id: str) -> None:
    row = await _get_row(session, rule_id)
    await session.delete(row)
    await session.flush()
    logger.info("Deleted weather rule %s", rule_id, extra={"rule_id": rule_id})
