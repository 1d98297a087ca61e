"""FastAPI application entry point for the Face Swap Credits Service."""

import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings, validate_stripe_config, validate_face_swap_config, validate_internal_api_key
from app.core.secrets_validator import validate_secrets_on_startup
from app.core.exceptions import AuthException
from app.core.error_handlers import (validation_exception_handler, auth_exception_handler,
                                     http_exception_handler, generic_exception_handler,
                                     database_exception_handler, sqlalchemy_exception_handler)
from app.log.logging import logger, InterceptHandler
from app.core.db_exceptions import DatabaseException
from app.middleware.rate_limit import setup_rate_limiting
from app.middleware.request_id import setup_request_id_middleware
from app.middleware.security_headers import setup_security_headers
from app.middleware.timeout import setup_timeout_middleware
from app.core.versioning import APIVersion, describe_versions, include_versioned_router
from app.routers.healthcheck_router import router as healthcheck_router, set_shutdown_state
from app.routers.credit_router import router as credit_router
from app.routers.billing_router import router as billing_router
from app.routers.face_swap_router import router as face_swap_router
from app.routers.webhooks.stripe_webhooks import router as stripe_webhooks_router
from app.services.face_swap_service import close_face_swap_client

# Route standard library logging (uvicorn, SQLAlchemy) into loguru
logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

SHUTDOWN_GRACE_SECONDS = 5


def _log_config_validation(component: str, result) -> None:
    valid, details = result
    if not valid:
        logger.warning(
            f"{component} configuration is invalid or incomplete",
            event_type="startup_warning",
            component=component,
            issues=details["issues"]
        )
    else:
        logger.info(
            f"{component} configuration validated successfully",
            event_type="startup_info",
            component=component,
            warnings=details.get("warnings", [])
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration on startup; drain traffic and close clients on shutdown."""
    logger.info("Starting application", status="starting", event_type="service_startup")

    secrets_valid, secrets_details = validate_secrets_on_startup(settings)
    if not secrets_valid:
        logger.critical(
            "Application starting with critical secrets validation failures",
            event_type="startup_secrets_critical",
            issues=secrets_details.get("issues", [])
        )

    _log_config_validation("stripe", validate_stripe_config())
    _log_config_validation("face_swap", validate_face_swap_config())
    _log_config_validation("internal_service_auth", validate_internal_api_key())

    logger.info("Application startup complete", status="running", event_type="service_ready")

    yield

    logger.info("Initiating graceful shutdown", status="stopping", event_type="service_shutdown_start")

    # Readiness probe starts failing so the load balancer stops routing here
    set_shutdown_state(True)

    logger.info(
        f"Waiting {SHUTDOWN_GRACE_SECONDS}s for load balancer to drain traffic",
        event_type="shutdown_drain",
        grace_seconds=SHUTDOWN_GRACE_SECONDS
    )
    await asyncio.sleep(SHUTDOWN_GRACE_SECONDS)

    await close_face_swap_client()

    logger.info("Application shutdown complete", status="stopped", event_type="service_shutdown_complete")


tags_metadata = [
    {
        "name": "credits",
        "description": "Credit balance, transaction history and consumption."
    },
    {
        "name": "Face Swap",
        "description": "Face swap proxy. Charges one credit per delivered result."
    },
    {
        "name": "Billing",
        "description": "Stripe customer linking."
    },
    {
        "name": "Webhooks",
        "description": "Payment provider webhook endpoints."
    },
    {
        "name": "Health",
        "description": "Service health check endpoints."
    },
    {
        "name": "internal",
        "description": "Operator and service-to-service endpoints (requires API key)."
    }
]

app = FastAPI(
    title="Face Swap Credits Service",
    description="""
## Face Swap Credits Service

* **Credit ledger** - balances, append-only transaction history, consumption and refunds
* **Subscription credits** - per-period grants that expire at the end of their billing period
* **Stripe webhooks** - one-time purchases and subscription lifecycle
* **Face swap** - proxy to the face swap provider, charged only on success

### Authentication

User endpoints take the identity provider's access token:
```
Authorization: Bearer <access_token>
```

Internal endpoints require API key authentication:
```
X-API-Key: <internal_api_key>
```

### Request Tracking

Every response carries an `X-Request-ID` header, also included in error bodies.
""",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=tags_metadata,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "filter": True
    }
)

logger.info("Initializing application", event_type="service_init")

setup_request_id_middleware(app)

setup_security_headers(app)
logger.info("Security headers middleware configured", event_type="middleware_setup", middleware="security_headers")

setup_timeout_middleware(
    app,
    timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
    path_timeouts={"/face-swap": settings.FACE_SWAP_REQUEST_TIMEOUT_SECONDS}
)
logger.info(
    "Timeout middleware configured",
    event_type="middleware_setup",
    middleware="timeout",
    timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
    face_swap_timeout_seconds=settings.FACE_SWAP_REQUEST_TIMEOUT_SECONDS
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.cors_methods_list,
    allow_headers=settings.cors_headers_list,
    max_age=settings.CORS_MAX_AGE,
    expose_headers=["X-Request-ID"],
)

logger.info(
    "CORS configured",
    event_type="middleware_setup",
    origins=settings.cors_origins_list,
    methods=settings.cors_methods_list,
    credentials=settings.CORS_ALLOW_CREDENTIALS
)

setup_rate_limiting(app)

app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(AuthException, auth_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(DatabaseException, database_exception_handler)
app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/")
async def root():
    """Root endpoint that returns service status"""
    logger.debug("Root endpoint accessed", event_type="endpoint_access", endpoint="root", method="GET")
    return {"message": f"{settings.service_name} is up and running!"}


@app.get("/api/versions", tags=["API Info"])
async def get_api_versions():
    """Supported API versions and their base paths."""
    return {
        **describe_versions(),
        "deprecation_notice": "Non-versioned endpoints are kept for compatibility. Prefer /v1/*"
    }

# Versioned API routes (v1)
include_versioned_router(app, credit_router, "", [APIVersion.V1])
include_versioned_router(app, face_swap_router, "", [APIVersion.V1])
include_versioned_router(app, billing_router, "", [APIVersion.V1])
include_versioned_router(app, stripe_webhooks_router, "webhooks", [APIVersion.V1], tags=["Webhooks"])

# Unversioned routes
app.include_router(credit_router)
app.include_router(face_swap_router)
app.include_router(billing_router)
app.include_router(stripe_webhooks_router, prefix="/webhooks", tags=["Webhooks"])

# Health checks are version-agnostic
app.include_router(healthcheck_router)

logger.info(
    "API routes registered",
    event_type="routes_registered",
    api_version=APIVersion.latest().value,
    supported_versions=[v.value for v in APIVersion.supported()]
)
