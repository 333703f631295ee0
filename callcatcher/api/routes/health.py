"""
Health probes.

The database is a hard dependency: without it no slot can be read or
booked. Redis is soft, since call state falls back to process memory,
so a Redis outage reports ``degraded`` but keeps the instance in rotation.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from callcatcher.config import settings
from callcatcher.core.scheduling.maintenance import get_housekeeping_runner
from callcatcher.infra.database import check_db_health
from callcatcher.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Dependency status plus the housekeeping loop's last results."""
    status: str
    timestamp: datetime
    checks: dict[str, str]
    housekeeping: Optional[dict] = None


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


@router.get("", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health() -> HealthResponse:
    """Process is up. Use /health/ready for dependencies."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
    )


async def _state_store_check() -> str:
    if settings.state_backend != "redis":
        return "memory"
    if await check_redis_health():
        return "ok"
    logger.warning("Readiness: Redis unreachable, call state is process-local")
    return "degraded"


@router.get(
    "/ready",
    response_model=ReadyResponse,
    responses={503: {"description": "The database is unreachable"}},
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    ``checks`` reports:
    - database: ok / failed
    - state_store: ok / degraded / memory
    - understanding: model / keywords (keywords when no API key is set)
    """
    db_ok = await check_db_health()
    if not db_ok:
        logger.warning("Readiness: database unreachable")

    checks = {
        "database": "ok" if db_ok else "failed",
        "state_store": await _state_store_check(),
        "understanding": "model" if settings.anthropic_api_key else "keywords",
    }

    if not db_ok:
        overall = "not_ready"
    elif checks["state_store"] == "degraded":
        overall = "degraded"
    else:
        overall = "ready"

    response = ReadyResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
        housekeeping=get_housekeeping_runner().get_status(),
    )
    if not db_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get("/live", response_model=LiveResponse, status_code=status.HTTP_200_OK)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
