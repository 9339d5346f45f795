"""
client.py — OpenWeatherMap ingestion for the weather monitor and widget.

Fetches, for one coordinate, everything the rule evaluator looks at:

    Endpoint                  Used for                         Required
    ───────────────────────   ──────────────────────────────   ────────
    data/2.5/weather          temperature, wind, humidity      yes
    data/3.0/onecall          official advisories (alerts[])   no
    data/2.5/air_pollution    AQI (1–5) + pollutant components no
    data/2.5/forecast         next 24 h in 3 h steps           no

All requests use imperial units (°F, mph). Only the current-conditions call
is required: if it fails the location is skipped for this cycle, while the
optional calls degrade to "no advisories" / "no air quality" / "no forecast".

Error Handling Strategy
========================
    Network errors (timeout, DNS, connection refused)
        → retry with exponential backoff (1s, 2s)
    429 Too Many Requests, 5xx
        → retry
    Other 4xx
        → fail immediately (bad key, bad coordinates)
    Exhaustion
        → ExternalFetchError
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from skyguard.core.config import settings
from skyguard.core.errors import ExternalFetchError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SERVICE_NAME = "openweathermap"
MAX_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds; actual wait = base * 2^(attempt-1)
FORECAST_POINTS = 8       # 8 × 3 h = next 24 h

AQI_LEVELS = ["Good", "Fair", "Moderate", "Poor", "Very Poor"]


def aqi_level_name(aqi: int) -> str:
    if 1 <= aqi <= len(AQI_LEVELS):
        return AQI_LEVELS[aqi - 1]
    return "Unknown"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class OfficialAdvisory:
    """A government-issued warning relayed by the One Call API."""
    sender_name: str
    event: str
    start: int   # unix seconds
    end: int
    description: str = ""
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender_name": self.sender_name,
            "event": self.event,
            "start": self.start,
            "end": self.end,
            "description": self.description,
            "tags": list(self.tags),
        }


@dataclass
class AirQuality:
    aqi: int
    components: Dict[str, float] = field(default_factory=dict)

    @property
    def level(self) -> str:
        return aqi_level_name(self.aqi)

    def to_dict(self) -> Dict[str, Any]:
        return {"aqi": self.aqi, "level": self.level, "components": dict(self.components)}


@dataclass
class ForecastPoint:
    dt: int
    temperature: int
    wind_speed: int
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dt": self.dt,
            "temperature": self.temperature,
            "wind_speed": self.wind_speed,
            "description": self.description,
        }


@dataclass
class WeatherReading:
    """
    Structured conditions for one location.

    temperature / feels_like are °F, wind_speed is mph (both rounded to the
    nearest integer), humidity is %, visibility is km.
    """
    location: str
    latitude: float
    longitude: float
    temperature: int
    humidity: int
    wind_speed: int
    description: str = ""
    icon: str = ""
    feels_like: int = 0
    visibility: int = 0
    station_name: str = ""
    country: str = ""
    alerts: List[OfficialAdvisory] = field(default_factory=list)
    air_quality: Optional[AirQuality] = None
    forecast: List[ForecastPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot stored in weather_alert_logs.weather_data."""
        return {
            "location": self.location,
            "coordinates": {"lat": self.latitude, "lon": self.longitude},
            "temperature": self.temperature,
            "humidity": self.humidity,
            "wind_speed": self.wind_speed,
            "conditions": self.description,
            "alerts": [a.to_dict() for a in self.alerts],
            "air_quality": self.air_quality.to_dict() if self.air_quality else None,
            "forecast": [f.to_dict() for f in self.forecast],
        }

    def to_widget(self) -> Dict[str, Any]:
        """Shape returned by GET /weather/current."""
        place = self.station_name or self.location
        return {
            "location": f"{place}, {self.country}" if self.country else place,
            "temperature": self.temperature,
            "description": self.description,
            "humidity": self.humidity,
            "wind_speed": self.wind_speed,
            "icon": self.icon,
            "feels_like": self.feels_like,
            "visibility": self.visibility,
        }


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _round(value: Any) -> int:
    try:
        return int(round(float(value or 0)))
    except (TypeError, ValueError):
        return 0


def parse_current(data: Dict[str, Any], name: str, lat: float, lon: float) -> WeatherReading:
    main = data.get("main") or {}
    weather = (data.get("weather") or [{}])[0]
    return WeatherReading(
        location=name,
        latitude=lat,
        longitude=lon,
        temperature=_round(main.get("temp")),
        humidity=_round(main.get("humidity")),
        wind_speed=_round((data.get("wind") or {}).get("speed")),
        description=weather.get("description", ""),
        icon=weather.get("icon", ""),
        feels_like=_round(main.get("feels_like")),
        visibility=_round((data.get("visibility") or 0) / 1000),
        station_name=data.get("name", ""),
        country=(data.get("sys") or {}).get("country", ""),
    )


def parse_advisories(data: Dict[str, Any]) -> List[OfficialAdvisory]:
    return [
        OfficialAdvisory(
            sender_name=a.get("sender_name", ""),
            event=a.get("event", "Weather Alert"),
            start=int(a.get("start", 0)),
            end=int(a.get("end", 0)),
            description=a.get("description", ""),
            tags=list(a.get("tags") or []),
        )
        for a in data.get("alerts") or []
    ]


def parse_air_quality(data: Dict[str, Any]) -> Optional[AirQuality]:
    entries = data.get("list") or []
    if not entries:
        return None
    first = entries[0]
    return AirQuality(
        aqi=int((first.get("main") or {}).get("aqi", 0)),
        components={k: float(v) for k, v in (first.get("components") or {}).items()},
    )


def parse_forecast(data: Dict[str, Any]) -> List[ForecastPoint]:
    points = []
    for item in (data.get("list") or [])[:FORECAST_POINTS]:
        weather = (item.get("weather") or [{}])[0]
        points.append(
            ForecastPoint(
                dt=int(item.get("dt", 0)),
                temperature=_round((item.get("main") or {}).get("temp")),
                wind_speed=_round((item.get("wind") or {}).get("speed")),
                description=weather.get("description", ""),
            )
        )
    return points


def validate_coordinates(lat: float, lon: float) -> None:
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        raise ValidationError(
            "Invalid coordinates provided", latitude=lat, longitude=lon,
        )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OpenWeatherClient:
    """
    Async OpenWeatherMap client.

    One instance is created in the app lifespan and shared; the underlying
    ``httpx.AsyncClient`` is created lazily and closed by ``close()``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENWEATHERMAP_API_KEY
        self.base_url = (base_url or settings.OPENWEATHERMAP_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.WEATHER_FETCH_TIMEOUT
        self._transport = transport
        self._sleep = sleep
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET with retry on transport errors, 429 and 5xx."""
        if not self.api_key:
            raise ExternalFetchError(SERVICE_NAME, "Weather API not configured")

        client = await self._get_client()
        query = {**params, "appid": self.api_key}
        last_error = ""

        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                wait = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
                logger.warning("Retry %d/%d for %s after %.1fs: %s",
                               attempt, MAX_RETRIES, path, wait, last_error)
                await self._sleep(wait)

            try:
                response = await client.get(path, params=query)
            except httpx.TransportError as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
                continue

            if response.status_code == 200:
                return response.json()
            if response.status_code == 429 or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                continue
            raise ExternalFetchError(
                SERVICE_NAME,
                f"HTTP {response.status_code}",
                path=path,
                body=response.text[:200],
            )

        raise ExternalFetchError(
            SERVICE_NAME,
            f"failed after {MAX_RETRIES + 1} attempts ({last_error})",
            path=path,
        )

    async def _optional(self, path: str, params: Dict[str, Any], what: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._get_json(path, params)
        except ExternalFetchError as exc:
            logger.info("%s not available for %s: %s", what, name, exc.message,
                        extra={"location": name})
            return None

    async def fetch_current(self, lat: float, lon: float, name: str = "") -> WeatherReading:
        """Current conditions only (the dashboard widget)."""
        validate_coordinates(lat, lon)
        data = await self._get_json(
            "/data/2.5/weather", {"lat": lat, "lon": lon, "units": "imperial"},
        )
        return parse_current(data, name or data.get("name", ""), lat, lon)

    async def fetch_reading(self, lat: float, lon: float, name: str) -> WeatherReading:
        """
        Everything the monitor evaluates for one location.

        Raises
        ------
        ExternalFetchError
            When current conditions cannot be fetched.
        """
        reading = await self.fetch_current(lat, lon, name)
        reading.location = name
        coords = {"lat": lat, "lon": lon}

        onecall = await self._optional(
            "/data/3.0/onecall",
            {**coords, "exclude": "minutely,hourly,daily"},
            "Advisories", name,
        )
        if onecall:
            reading.alerts = parse_advisories(onecall)

        pollution = await self._optional("/data/2.5/air_pollution", coords, "Air quality", name)
        if pollution:
            reading.air_quality = parse_air_quality(pollution)

        forecast = await self._optional(
            "/data/2.5/forecast", {**coords, "units": "imperial"}, "Forecast", name,
        )
        if forecast:
            reading.forecast = parse_forecast(forecast)

        logger.debug(
            "Weather for %s: %d°F wind %d mph humidity %d%% aqi=%s advisories=%d",
            name, reading.temperature, reading.wind_speed, reading.humidity,
            reading.air_quality.aqi if reading.air_quality else None,
            len(reading.alerts),
            extra={"location": name},
        )
        return reading
