"""Health check response schemas."""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServiceStatus(str, Enum):
    UP = "up"
    DOWN = "down"
    DEGRADED = "degraded"


class ComponentHealth(BaseModel):
    """Health of one dependency (database, ledger, Stripe, face swap provider)."""
    name: str
    status: ServiceStatus
    response_time_ms: Optional[float] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    status: HealthStatus = Field(..., description="Worst status across components")
    version: str
    uptime_seconds: Optional[float] = None
    check_time_ms: float
    components: List[ComponentHealth] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "degraded",
                "version": "1.0.0",
                "uptime_seconds": 3600.5,
                "check_time_ms": 15.3,
                "components": [
                    {"name": "database", "status": "up", "response_time_ms": 5.2},
                    {"name": "ledger", "status": "degraded",
                     "message": "Expiry sweep is behind", "details": {"lapsed_periods": 14}},
                    {"name": "stripe", "status": "up", "message": "Configured"},
                    {"name": "face_swap_provider", "status": "up", "message": "Configured"}
                ]
            }
        }
    }


class ReadinessResponse(BaseModel):
    """Readiness probe: the load balancer only routes traffic while ``ready``."""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    alive: bool
    uptime_seconds: Optional[float] = None
