"""
Main Application - FastAPI application setup.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from costledger.api.routes import router
from costledger.config import settings
from costledger.db.session import close_engines, get_write_engine, get_write_session_factory
from costledger.observability import get_logger, metrics, setup_logging, setup_tracing
from costledger.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from costledger.services.credential_store import SqlCredentialStore
from costledger.services.encryption import EncryptionCodec
from costledger.services.gateway import IntegrationGateway
from costledger.services.providers import build_adapters
from costledger.services.rate_limiter import RateLimiter
from costledger.services.token_broker import TokenBroker

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Owns the shared outbound HTTP client, the rate limiter and the token broker;
    request handlers reach them through app.state.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    instrument_sqlalchemy(get_write_engine())

    adapters = build_adapters(settings)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    rate_limiter = RateLimiter()
    token_broker = TokenBroker(
        store=SqlCredentialStore(get_write_session_factory()),
        codec=EncryptionCodec.from_settings(settings.encryption_key),
        adapters=adapters,
        http_client=http_client,
        skew_seconds=settings.token_refresh_skew_seconds,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    app.state.rate_limiter = rate_limiter
    app.state.token_broker = token_broker
    app.state.gateway = IntegrationGateway(
        broker=token_broker,
        rate_limiter=rate_limiter,
        adapters=adapters,
        http_client=http_client,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    logger.info("integration_gateway_ready", providers=sorted(adapters))

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await http_client.aclose()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    import time

    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
    )

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "costledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
