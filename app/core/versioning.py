"""URL-prefix API versioning.

Routers are mounted once per supported version (``/v1/credits/...``) and the
application additionally keeps unversioned mounts for existing clients.
"""

from enum import Enum
from typing import List, Optional

from fastapi import APIRouter, FastAPI

from app.log.logging import logger


class APIVersion(str, Enum):
    """Supported API versions."""
    V1 = "v1"

    @classmethod
    def latest(cls) -> "APIVersion":
        return cls.V1

    @classmethod
    def supported(cls) -> List["APIVersion"]:
        return list(cls)


def include_versioned_router(
    app: FastAPI,
    router: APIRouter,
    prefix: str,
    versions: Optional[List[APIVersion]] = None,
    **kwargs
) -> None:
    """
    Include a router under every requested version prefix.

    Example:
        include_versioned_router(app, credit_router, "credits", [APIVersion.V1])
        # Creates routes: /v1/credits/...
    """
    for version in versions or APIVersion.supported():
        versioned_prefix = f"/{version.value}/{prefix.strip('/')}".rstrip("/")
        app.include_router(router, prefix=versioned_prefix, **kwargs)
        logger.debug(
            "Registered versioned router",
            event_type="router_registered",
            version=version.value,
            prefix=versioned_prefix
        )


def describe_versions() -> dict:
    latest = APIVersion.latest()
    return {
        "current_version": latest.value,
        "supported_versions": [
            {
                "version": version.value,
                "status": "stable" if version == latest else "supported",
                "base_path": f"/{version.value}"
            }
            for version in APIVersion.supported()
        ],
    }
