"""
Shared fixtures: in-memory SQLite database, services, and an API client.

Every test gets a fresh database. StaticPool keeps the single in-memory
connection alive for the duration of the test so that all sessions (the
test's own, the security monitor's and the API's) see the same data.
"""

from __future__ import annotations

from typing import AsyncGenerator, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from skyguard.alerts.models import UserRole
from skyguard.alerts.rate_limiter import SlidingWindowRateLimiter
from skyguard.audit.monitor import SecurityMonitor
from skyguard.core import tables  # noqa: F401  (registers the tables)
from skyguard.core.database import Base, get_db
from skyguard.core.tables import Profile, UserPreferenceRow
from skyguard.weather.client import AirQuality, OfficialAdvisory, WeatherReading

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWeatherSource:
    """Stands in for OpenWeatherClient: canned readings per location name."""

    def __init__(self, readings: Optional[Dict[str, WeatherReading]] = None,
                 failing: Optional[List[str]] = None):
        self.readings = readings or {}
        self.failing = set(failing or [])
        self.calls: List[str] = []
        self.is_configured = True

    async def fetch_reading(self, lat: float, lon: float, name: str) -> WeatherReading:
        from skyguard.core.errors import ExternalFetchError

        self.calls.append(name)
        if name in self.failing:
            raise ExternalFetchError("openweathermap", "HTTP 503")
        return self.readings[name]

    async def fetch_current(self, lat: float, lon: float, name: str = "") -> WeatherReading:
        return next(iter(self.readings.values()))

    async def close(self) -> None:
        pass


def make_reading(
    location: str = "New York",
    *,
    temperature: int = 70,
    humidity: int = 50,
    wind_speed: int = 5,
    aqi: Optional[int] = None,
    advisories: Optional[List[OfficialAdvisory]] = None,
) -> WeatherReading:
    return WeatherReading(
        location=location,
        latitude=40.7128,
        longitude=-74.0060,
        temperature=temperature,
        humidity=humidity,
        wind_speed=wind_speed,
        description="clear sky",
        icon="01d",
        alerts=list(advisories or []),
        air_quality=(
            AirQuality(aqi=aqi, components={"pm2_5": 55.2, "pm10": 80.0})
            if aqi is not None else None
        ),
    )


async def make_user(
    session: AsyncSession,
    user_id: str,
    *,
    role: UserRole = UserRole.EMPLOYEE,
    username: Optional[str] = None,
    phone_number: Optional[str] = None,
    email: Optional[str] = None,
    **flags: bool,
) -> Profile:
    """Insert a profile; any preference flags given also create its preference row."""
    profile = Profile(
        user_id=user_id,
        username=username or user_id,
        role=role.value,
        phone_number=phone_number,
        email=email,
    )
    session.add(profile)
    if flags:
        session.add(UserPreferenceRow(user_id=user_id, **flags))
    await session.commit()
    return profile


# ═══════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
async def engine():
    eng = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


# ═══════════════════════════════════════════════════════════════════════════
# Services
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_requests=5, window_seconds=60.0, clock=clock)


@pytest.fixture
def monitor(session_factory) -> SecurityMonitor:
    return SecurityMonitor(session_factory, max_entries=100)


# ═══════════════════════════════════════════════════════════════════════════
# API
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def weather_source() -> FakeWeatherSource:
    return FakeWeatherSource({"New York": make_reading("New York")})


@pytest.fixture
async def client(engine, session_factory, limiter, monitor, weather_source):
    from skyguard.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.limiter = limiter
    app.state.monitor = monitor
    app.state.weather_client = weather_source

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def as_user(user_id: str, **extra: str) -> Dict[str, str]:
    headers = {"X-User-Id": user_id}
    for key, value in extra.items():
        headers[f"X-User-{key.capitalize()}"] = value
    return headers
