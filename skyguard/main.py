"""
FastAPI application entry point.

Run with:
    uvicorn skyguard.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn skyguard.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from skyguard.core.config import settings
from skyguard.core.logging_config import setup_logging
from skyguard.core.errors import register_error_handlers
from skyguard.core.middleware import RequestLoggingMiddleware
from skyguard.core.health import HealthStatus, run_health_check
from skyguard.core.database import async_session_factory, close_db, engine, init_db

# ── Services shared across requests ──
from skyguard.alerts.rate_limiter import SlidingWindowRateLimiter
from skyguard.audit.monitor import SecurityMonitor
from skyguard.weather.client import OpenWeatherClient

# ── API routers ──
from skyguard.api.v1.alerts import router as alert_router
from skyguard.api.v1.preferences import router as preferences_router
from skyguard.api.v1.users import router as users_router
from skyguard.api.v1.weather import router as weather_router
from skyguard.api.v1.audit import router as audit_router
from skyguard.api.v1.qa import router as qa_router
from skyguard.api.v1.system import router as system_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the process-wide services; close them on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await init_db()
    app.state.engine = engine
    app.state.session_factory = async_session_factory
    app.state.limiter = SlidingWindowRateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_SENDS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    app.state.monitor = SecurityMonitor(
        async_session_factory, max_entries=settings.AUDIT_LOG_MAX_ENTRIES,
    )
    app.state.weather_client = OpenWeatherClient()
    if not app.state.weather_client.is_configured:
        logger.warning("OPENWEATHERMAP_API_KEY not set; weather monitoring is disabled")

    yield

    await app.state.weather_client.close()
    await close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Role-based emergency alert broadcasting. "
        "Administrators compose alerts that fan out to employees according "
        "to role targeting and each user's stored preferences, with read "
        "receipts, SMS / push / email / in-app delivery tracking, a "
        "weather-threshold monitor, a Q&A board and a security audit trail."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(alert_router)
app.include_router(preferences_router)
app.include_router(users_router)
app.include_router(weather_router)
app.include_router(audit_router)
app.include_router(qa_router)
app.include_router(system_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "alert-fanout",
            "read-receipts",
            "notification-preferences",
            "user-management",
            "weather-monitoring",
            "qa-board",
            "security-audit",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — database, weather API, delivery channels."""
    report = await run_health_check(app.state.engine, app.state.weather_client)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(app.state.engine, app.state.weather_client)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
