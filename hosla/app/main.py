"""
FastAPI application entry point.

Run with:
    uvicorn hosla.app.main:app --reload --port 8000

Startup wires the emergency service (store, gate, channels) and starts the
escalation sweep; shutdown stops the sweep before the Redis client and the
database pool are closed, so no sweep is cut off mid-write.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hosla.app.api.v1.emergency import router as emergency_router
from hosla.app.core.cache import close_redis
from hosla.app.core.config import settings
from hosla.app.core.database import close_db, init_db
from hosla.app.core.errors import register_error_handlers
from hosla.app.core.health import HealthStatus, run_health_check
from hosla.app.core.logging_config import get_logger, setup_logging
from hosla.app.core.middleware import RequestLoggingMiddleware
from hosla.app.emergency.service import EmergencyService, get_emergency_service

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting %s v%s [%s, store=%s, rate limit=%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.ALERT_STORE_BACKEND, settings.RATE_LIMIT_BACKEND,
    )
    # Production schemas come from migrations
    if settings.ALERT_STORE_BACKEND == "database" and not settings.is_production:
        await init_db()

    service = get_emergency_service()
    if settings.SCHEDULER_ENABLED:
        await service.scheduler.start()

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await service.scheduler.stop()
    await close_redis()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Emergency alerts for trust circles: raise an alert, notify each "
        "emergency contact once per round, escalate unanswered alerts every "
        "30 minutes, collect responses, auto-resolve after 24 hours."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

register_error_handlers(app)
app.include_router(emergency_router)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(service: EmergencyService = Depends(get_emergency_service)):
    """Alert store, rate-limit counters and escalation sweep."""
    report = await run_health_check(service.scheduler)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(service: EmergencyService = Depends(get_emergency_service)):
    """503 only when alerts cannot be stored."""
    report = await run_health_check(service.scheduler)
    if report.status is HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
