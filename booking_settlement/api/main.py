"""
FastAPI application for the booking settlement service.

Stripe posts checkout notifications to ``/webhooks/stripe``; every other
route is a read-only lookup or a monitoring probe. Store faults surface as
503 so that Stripe redelivers.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from booking_settlement import __version__
from booking_settlement.config import get_settings
from booking_settlement.core.exceptions import StoreUnavailableError
from booking_settlement.database.connection import close_db, init_db
from booking_settlement.monitoring.logging import setup_logging

from .routes import get_settlement_engine, monitoring_router, orders_router, webhook_router

logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


def _docs_path(path: str) -> Optional[str]:
    # Interactive docs are off in production.
    return None if settings.is_production else path


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    setup_logging()
    logger.info(
        "settlement_service_starting",
        version=__version__,
        env=settings.app_env,
        stripe_test_mode=settings.is_test_mode,
        redis_cache_enabled=bool(settings.redis_url),
    )
    await init_db()

    yield

    if get_settlement_engine.cache_info().currsize:
        await get_settlement_engine().cache.close()
    await close_db()
    logger.info("settlement_service_stopped")


app = FastAPI(
    title="Booking Settlement Service",
    description=(
        "Settles Stripe checkout notifications into bookings against finite-capacity "
        "events: idempotent under redelivery, never oversold, refunded when full."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url=_docs_path("/docs"),
    redoc_url=_docs_path("/redoc"),
    openapi_url=_docs_path("/openapi.json"),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Stripe-Signature", REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_context(request: Request, call_next: Any) -> Response:
    """Tag the request's log lines with a request id and echo it in the response."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        elapsed = time.perf_counter() - started
        structlog.contextvars.clear_contextvars()

    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "http_request",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(elapsed * 1000, 2),
    )
    return response


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Stripe redelivers on any non-2xx response."""
    logger.error("store_unavailable", error=exc.message, path=request.url.path, **exc.context)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Settlement store unavailable, retry later"},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unexpected_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


app.include_router(webhook_router)
app.include_router(orders_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"], include_in_schema=False)
async def root() -> dict[str, Any]:
    return {
        "service": settings.app_name,
        "version": __version__,
        "webhook": "/webhooks/stripe",
        "stripe_test_mode": settings.is_test_mode,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "booking_settlement.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
