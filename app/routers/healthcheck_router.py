import time
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base_model import utcnow
from app.core.config import settings
from app.core.database import check_db_health, get_connection_state, get_db
from app.core.db_utils import healthcheck_database
from app.log.logging import logger
from app.models.subscription_credit import SubscriptionCredit, SubscriptionCreditStatus
from app.schemas.health_schemas import (
    HealthCheckResponse, HealthStatus, ComponentHealth, ServiceStatus,
    ReadinessResponse, LivenessResponse
)

# Lapsed periods older than this mean the expiry cron is not running
EXPIRY_SWEEP_MAX_LAG = timedelta(hours=24)

_is_shutting_down = False
_service_start_time = time.time()

router = APIRouter(tags=["Health"])


def set_shutdown_state(shutting_down: bool):
    """Mark the service as draining so the readiness probe fails."""
    global _is_shutting_down
    _is_shutting_down = shutting_down


def _uptime() -> float:
    return round(time.time() - _service_start_time, 2)


@router.get("/healthcheck/db", description="Database connectivity and degraded-mode state")
async def db_health_check():
    start_time = time.time()
    try:
        db_health = await check_db_health()
    except Exception as e:
        logger.error(f"Database health check failed: {e}", event_type="db_healthcheck_error", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Database health check failed: {e}")

    connection_state = get_connection_state()
    if db_health.get("status") != "healthy":
        logger.warning(
            "Database health check returned degraded status",
            event_type="db_healthcheck_degraded",
            status=db_health.get("status"),
            error=db_health.get("error", "Unknown error")
        )
    return {
        **db_health,
        "check_time_ms": round((time.time() - start_time) * 1000, 2),
        "service_state": "degraded" if connection_state["in_degraded_mode"] else "normal",
        "recent_connection_errors": connection_state["error_count"],
    }


@router.get(
    "/healthcheck/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    responses={503: {"description": "Database unreachable, configuration missing or shutting down"}}
)
async def readiness_probe():
    checks = {"not_shutting_down": not _is_shutting_down}

    try:
        db_health = await check_db_health()
        checks["database"] = db_health.get("status") == "healthy"
    except Exception:
        checks["database"] = False

    # Without the JWT secret no user request can be authenticated
    checks["configuration"] = bool(settings.AUTH_JWT_SECRET and settings.database_url)

    if not all(checks.values()):
        logger.warning("Readiness check failed", event_type="readiness_check_failed", checks=checks)
        raise HTTPException(status_code=503, detail=ReadinessResponse(ready=False, checks=checks).model_dump())

    return ReadinessResponse(ready=True, checks=checks)


@router.get("/healthcheck/live", response_model=LivenessResponse, summary="Liveness probe")
async def liveness_probe():
    """Process is up; dependencies are not checked."""
    return LivenessResponse(alive=True, uptime_seconds=_uptime())


async def ledger_component(db: AsyncSession) -> ComponentHealth:
    """
    Report active periods whose end date has passed but still hold credits.

    Consumption expires them lazily per user, so a backlog is harmless for
    spending, but balances shown to users stay overstated until the sweep runs.
    """
    now = utcnow()
    result = await db.execute(
        select(func.count(SubscriptionCredit.id), func.min(SubscriptionCredit.end_date)).where(
            SubscriptionCredit.status == SubscriptionCreditStatus.ACTIVE.value,
            SubscriptionCredit.end_date <= now,
            SubscriptionCredit.remaining_credits > 0
        )
    )
    lapsed, oldest = result.one()

    behind = bool(lapsed) and oldest is not None and now - oldest > EXPIRY_SWEEP_MAX_LAG
    return ComponentHealth(
        name="ledger",
        status=ServiceStatus.DEGRADED if behind else ServiceStatus.UP,
        message="Expiry sweep is behind" if behind else "Expiry sweep up to date",
        details={"lapsed_periods": lapsed, "oldest_lapsed_end": oldest.isoformat() if oldest else None}
    )


def _configuration_component(name: str, configured: bool) -> ComponentHealth:
    return ComponentHealth(
        name=name,
        status=ServiceStatus.UP if configured else ServiceStatus.DEGRADED,
        message="Configured" if configured else "Not configured"
    )


@router.get(
    "/healthcheck/full",
    response_model=HealthCheckResponse,
    summary="Comprehensive health check",
    responses={503: {"description": "Service is unhealthy"}}
)
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """
    Database round trip, the expiry backlog of the ledger and whether Stripe
    and the face swap provider are configured. External APIs are not called.
    """
    start_time = time.time()

    db_health = await healthcheck_database(db)
    db_up = db_health.get("status") == "healthy"
    components = [ComponentHealth(
        name="database",
        status=ServiceStatus.UP if db_up else ServiceStatus.DOWN,
        response_time_ms=db_health.get("response_time_ms"),
        message=db_health.get("message") if db_up else db_health.get("error"),
        details=get_connection_state()
    )]
    if db_up:
        components.append(await ledger_component(db))
    components.append(_configuration_component(
        "stripe", bool(settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET)
    ))
    components.append(_configuration_component(
        "face_swap_provider", bool(settings.FACEPP_API_KEY and settings.FACEPP_API_SECRET)
    ))

    if not db_up:
        overall_status = HealthStatus.UNHEALTHY
    elif any(c.status != ServiceStatus.UP for c in components):
        overall_status = HealthStatus.DEGRADED
    else:
        overall_status = HealthStatus.HEALTHY

    response = HealthCheckResponse(
        status=overall_status,
        version="1.0.0",
        uptime_seconds=_uptime(),
        check_time_ms=round((time.time() - start_time) * 1000, 2),
        components=components
    )

    if overall_status == HealthStatus.UNHEALTHY:
        raise HTTPException(status_code=503, detail=response.model_dump(mode="json"))

    logger.info("Full health check", event_type="healthcheck_full", status=overall_status.value)
    return response
