"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from purple_api.api.dependencies import RejectingIdentityResolver
from purple_api.api.routes import router
from purple_api.config import settings
from purple_api.db.session import close_engines, create_schema, get_engine, get_session_factory
from purple_api.models.domain import ConnectionParams
from purple_api.observability import get_logger, log_context, metrics, setup_logging
from purple_api.services.apple_storekit_provider import build_verification_provider
from purple_api.services.checkout import CheckoutManager
from purple_api.services.clock import current_time
from purple_api.services.entitlements import EntitlementService
from purple_api.services.lightning import ClnRestInvoiceClient
from purple_api.services.store import InMemoryStore, KeyValueStore, SqlAlchemyStore
from purple_api.services.trust_anchors import TrustAnchorCache

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


async def build_store() -> KeyValueStore:
    """SQL-backed store when DATABASE_URL is set, else process memory."""
    if not settings.database_url:
        logger.warning("in_memory_store_enabled")
        return InMemoryStore()
    await create_schema(get_engine())
    return SqlAlchemyStore(get_session_factory())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Wires services onto app.state at startup and releases them on shutdown.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        deployment=settings.deployment,
        metrics_enabled=settings.metrics_enabled,
        mock_verify_receipt=settings.mock_verify_receipt,
        iap_sandbox=settings.is_sandbox,
    )

    clock = current_time
    store = await build_store()
    lightning = ClnRestInvoiceClient(
        settings.ln_rest_url,
        settings.ln_rest_rune,
        ConnectionParams(
            nodeid=settings.ln_node_id,
            address=settings.ln_node_address,
            rune=settings.ln_client_rune,
        ),
        timeout=settings.ln_request_timeout,
    )
    provider = build_verification_provider(settings, TrustAnchorCache(), clock)
    entitlements = EntitlementService(store, clock, max_retries=settings.store_max_cas_retries)

    app.state.clock = clock
    app.state.store = store
    app.state.entitlements = entitlements
    app.state.checkout_manager = CheckoutManager(store, lightning, entitlements, clock)
    app.state.verification_provider = provider
    if not hasattr(app.state, "identity_resolver"):
        app.state.identity_resolver = RejectingIdentityResolver()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await provider.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold non-serializable objects
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


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing. Route logs inherit the request id."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    # Label by route template so ids in paths don't explode metric cardinality
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)

        try:
            response = await call_next(request)
            route = request.scope.get("route")
            endpoint = getattr(route, "path", endpoint)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


if settings.metrics_enabled:

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        """
        Prometheus metrics endpoint.

        Returns metrics in Prometheus text format.
        """
        return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "purple_api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
