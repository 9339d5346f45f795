"""
Pydantic request schemas shared by the v1 routers.

Only structural checks live here (types, presence, coarse sizes). Markup
stripping, length bounds and enum membership are enforced by the service
layer so that non-HTTP callers get the same validation.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, StrictBool


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class SendAlertRequest(BaseModel):
    """Request body for POST /api/v1/alerts/send."""
    title: str = Field(..., examples=["Severe Weather Warning"])
    message: str = Field(..., examples=["Tornado warning in effect until 6 PM."])
    alert_type: str = Field(
        "company", examples=["emergency"],
        description="emergency / weather / company / system",
    )
    priority: str = Field(
        "medium", examples=["critical"],
        description="low / medium / high / critical",
    )
    recipients: str = Field(
        "all", examples=["all"],
        description="all / emergency / staff / management",
    )
    delivery_method: Optional[str] = Field(
        None, examples=["sms"],
        description="sms / push / email / system; omit for automatic selection",
    )


# ---------------------------------------------------------------------------
# Preferences & users
# ---------------------------------------------------------------------------

class PreferencesUpdate(BaseModel):
    """Partial update; omitted flags are left unchanged."""
    emergency_alerts: Optional[StrictBool] = None
    weather_alerts: Optional[StrictBool] = None
    company_alerts: Optional[StrictBool] = None
    system_alerts: Optional[StrictBool] = None
    sms_enabled: Optional[StrictBool] = None
    push_enabled: Optional[StrictBool] = None
    email_enabled: Optional[StrictBool] = None


class RoleUpdate(BaseModel):
    role: str = Field(..., examples=["admin"])


class PhoneUpdate(BaseModel):
    phone_number: Optional[str] = Field(
        None, examples=["(555) 234-5678"],
        description="Empty or null clears the number",
    )


class FailedAuthReport(BaseModel):
    """Reported by the login screen after a rejected sign-in."""
    email: str = Field(..., max_length=255, examples=["user@example.com"])
    error: str = Field("Invalid login credentials", max_length=500)


# ---------------------------------------------------------------------------
# Weather rules
# ---------------------------------------------------------------------------

class WeatherRuleCreate(BaseModel):
    alert_type: str = Field(..., examples=["temperature"])
    condition_operator: str = Field(..., examples=["greater_than"])
    threshold_value: float = Field(..., examples=[95])
    location_filter: Optional[str] = Field(None, examples=["New York"])
    is_active: bool = True
    alert_title: str = Field(..., examples=["Extreme Heat"])
    alert_message: str = Field(..., examples=["Take frequent water breaks."])


class WeatherRuleUpdate(BaseModel):
    alert_type: Optional[str] = None
    condition_operator: Optional[str] = None
    threshold_value: Optional[float] = None
    location_filter: Optional[str] = None
    is_active: Optional[bool] = None
    alert_title: Optional[str] = None
    alert_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Q&A
# ---------------------------------------------------------------------------

class QuestionCreate(BaseModel):
    title: str = Field(..., examples=["Scaffold inspection schedule"])
    question: str = Field(..., examples=["Who signs off on the scaffold at site 4?"])
    category: str = Field("general", examples=["safety"])
    priority: str = Field("medium", examples=["high"])
    job_site: Optional[str] = Field(None, examples=["Riverside Tower"])
    job_number: Optional[str] = Field(None, examples=["J-2291"])


class AnswerCreate(BaseModel):
    answer: str = Field(..., examples=["The site supervisor signs off every Monday."])
