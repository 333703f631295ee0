"""
CallCatcher service entry point.

Wires the telephony webhooks, the availability and calendar endpoints and
the background housekeeping loop into one FastAPI application.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callcatcher.api.routes import availability, calendar, health, voice
from callcatcher.config import settings
from callcatcher.core.errors import (
    InputAmbiguous,
    NoAvailability,
    SchedulingError,
    SessionExpired,
    SlotConflict,
    UpstreamUnavailable,
    ValidationError,
)
from callcatcher.core.scheduling.maintenance import get_housekeeping_runner
from callcatcher.infra.claude import close_claude_client
from callcatcher.infra.database import close_db, init_db
from callcatcher.infra.notifications import get_notification_service
from callcatcher.infra.redis import RedisClient

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InputAmbiguous: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NoAvailability: status.HTTP_404_NOT_FOUND,
    SlotConflict: status.HTTP_409_CONFLICT,
    SessionExpired: status.HTTP_410_GONE,
    UpstreamUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Webhooks arrive every few seconds per call; access lines drown the turn logs
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


async def startup() -> None:
    """Prepare stores and start housekeeping."""
    health.set_start_time()

    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    if settings.state_backend == "redis" and await RedisClient.get_client() is None:
        logger.warning("Redis unavailable; call sessions and holds start in process memory")

    if settings.housekeeping_enabled:
        get_housekeeping_runner().start()


async def shutdown() -> None:
    """Stop background work first so nothing writes to closed stores."""
    await get_housekeeping_runner().stop()
    await get_notification_service().close()
    await close_claude_client()
    await RedisClient.close()
    await close_db()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")
    await startup()
    logger.info(f"Ready on {settings.host}:{settings.port}")
    yield
    logger.info("Shutting down")
    await shutdown()
    logger.info("Shutdown complete")


app = FastAPI(
    title="CallCatcher API",
    description="""
    Phone scheduling assistant for small service businesses.

    ## Features
    - Conversational booking over the phone
    - Slot inventory generated from weekly business hours
    - Atomic, idempotent appointment commits
    - Handoff to staff when the assistant cannot help
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Scheduling failures that escaped a route become their matching status."""
    code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    log = logger.error if code >= 500 else logger.info
    log(f"{exc.__class__.__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=code,
        content={"error": exc.__class__.__name__, "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.is_development else "Internal server error",
        },
    )


@app.middleware("http")
async def webhook_latency_middleware(request: Request, call_next):
    """Warn when a request eats into the caller's turn-taking budget."""
    started = time.monotonic()
    response = await call_next(request)
    elapsed = time.monotonic() - started
    if elapsed > settings.slow_request_warning_seconds:
        logger.warning(f"Slow {request.method} {request.url.path}: {elapsed:.2f}s")
    elif settings.debug:
        logger.debug(f"{request.method} {request.url.path} {response.status_code} in {elapsed:.3f}s")
    return response


app.include_router(health.router)
app.include_router(voice.router)
app.include_router(availability.router)
app.include_router(calendar.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "environment": settings.app_env,
        "state_backend": settings.state_backend,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callcatcher.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
