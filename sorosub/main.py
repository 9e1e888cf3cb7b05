"""
SoroSub Payment Service

A FastAPI-based service for recurring subscription payments with a
credit-scored "buy now, pay later" fallback.

Payment model:
--------------
Subscribers authorize a merchant to pull a fixed amount every interval.
When a payment is collected:

1. If the subscriber can cover it, the merchant is paid directly and the
   subscription's credit score grows by 10
2. If not, but the credit score is above 50, the liquidity pool pays the
   merchant and the amount becomes the subscriber's debt
3. Otherwise the collection is rejected and nothing changes

Debt is repaid by the subscriber straight to the liquidity pool. There is no
interest and no scheduler: callers trigger collection when a payment is due.
"""
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from sorosub.api import router
from sorosub.config import settings
from sorosub.database import engine, Base
from sorosub.errors import SorosubError
from sorosub.logging import (
    configure_logging,
    get_logger,
    set_request_context,
    clear_request_context,
    generate_request_id,
)
from sorosub import metrics

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "service_starting",
        service_name=settings.service_name,
        token_ledger_base=settings.token_ledger_base,
        collect_authorization=settings.collect_authorization,
    )

    # Create tables if they don't exist (in production, use migrations)
    Base.metadata.create_all(bind=engine)

    logger.info("service_started", service_name=settings.service_name)

    yield

    logger.info("service_stopping", service_name=settings.service_name)


app = FastAPI(
    title="SoroSub Payment Service",
    description="Recurring payments with credit-scored BNPL fallback",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request tracing, logging, and metrics.

    Sets up request context with:
    - request_id: Unique identifier for tracing
    - Timing for duration_ms calculation
    - Prometheus metrics collection
    """
    method = request.method
    path = request.url.path

    # Skip logging/metrics for health and metrics endpoints
    if path in ("/health", "/metrics"):
        return await call_next(request)

    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    set_request_context(request_id)
    request.state.request_id = request_id

    start_time = time.perf_counter()

    logger.info("request_received", method=method, path=path)

    try:
        response = await call_next(request)

        duration_seconds = time.perf_counter() - start_time

        logger.info(
            "request_completed",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=round(duration_seconds * 1000, 2),
        )

        # Label by route template so per-account paths don't explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", path)
        metrics.record_http_request(method, endpoint, response.status_code, duration_seconds)

        response.headers["X-Request-ID"] = request_id

        return response

    except Exception as e:
        duration_seconds = time.perf_counter() - start_time

        logger.error(
            "request_failed",
            method=method,
            path=path,
            duration_ms=round(duration_seconds * 1000, 2),
            error=str(e),
        )

        metrics.HTTP_REQUESTS.labels(method=method, endpoint=path, status=500).inc()

        raise

    finally:
        clear_request_context()


@app.exception_handler(SorosubError)
async def sorosub_error_handler(request: Request, exc: SorosubError):
    """Render domain errors with their status and machine-readable code."""
    request_id = getattr(request.state, "request_id", "unknown")

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_rejected",
        error_code=exc.code,
        status_code=exc.status_code,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.detail},
        headers={"X-Request-ID": request_id},
    )


app.include_router(router)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "ok", "service": settings.service_name}


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
