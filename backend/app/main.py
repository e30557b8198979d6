############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# main.py: FastAPI application entry point and configuration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI application entry point."""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api import api_router
from backend.app.core.errors import ClawsterError, PaymentRequired
from backend.app.core.locks import KeyedLockManager
from backend.app.core.provisioning.client import PhalaClient
from backend.app.db.session import create_schema, create_session_factory
from backend.app.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from backend.app.services import (
    BillingEventHandler,
    BotService,
    DeploymentOrchestrator,
    LivenessProbe,
    StatusReconciler,
    StripeBillingGateway,
    TerminationCoordinator,
    UsageMeter,
)
from backend.app.settings import Settings, get_settings

# Setup logging first
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Build every component once, hand them out via app.state, tear down on exit."""
    settings: Settings = app.state.settings
    logger.info("clawster_starting", version=settings.app_version)

    engine, session_factory = create_session_factory(settings)
    if settings.database_auto_create:
        await create_schema(engine)

    client = PhalaClient.from_settings(settings, transport=app.state.phala_transport)
    probe = LivenessProbe(
        timeout=settings.liveness_probe_timeout,
        transport=app.state.probe_transport,
    )
    locks = KeyedLockManager()

    deployer = DeploymentOrchestrator(
        session_factory, client, locks, node_options=settings.bot_node_options
    )
    reconciler = StatusReconciler(
        session_factory,
        client,
        locks,
        probe,
        booting_timeout_seconds=settings.booting_timeout_seconds,
    )
    terminator = TerminationCoordinator(session_factory, client, locks)

    billing_gateway = None
    billing_events = None
    if settings.billing_enabled:
        billing_gateway = StripeBillingGateway.from_settings(settings)
        billing_events = BillingEventHandler(session_factory, deployer, terminator)

    meter = UsageMeter(
        session_factory, client, locks, interval_seconds=settings.meter_interval_seconds
    )

    app.state.session_factory = session_factory
    app.state.phala_client = client
    app.state.billing_gateway = billing_gateway
    app.state.billing_events = billing_events
    app.state.meter = meter
    app.state.bot_service = BotService(
        session_factory,
        client,
        locks,
        deployer,
        reconciler,
        terminator,
        billing=billing_gateway,
        default_model=settings.default_model,
        bot_image=settings.bot_image,
    )

    if settings.meter_enabled:
        await meter.start()

    logger.info("clawster_started", billing_enabled=settings.billing_enabled)

    yield

    # Shutdown
    logger.info("clawster_shutting_down")
    if settings.meter_enabled:
        await meter.stop()
    await probe.close()
    await client.close()
    await engine.dispose()
    logger.info("clawster_shutdown_complete")


class RequestIDMiddleware:
    """Raw ASGI middleware for request ID injection.

    Unlike @app.middleware("http") which wraps in BaseHTTPMiddleware,
    this does NOT run the handler in a separate task, so client disconnects
    won't cancel an in-flight deploy halfway through its cleanup.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = (
            headers.get(b"x-request-id", b"").decode()
            or str(uuid.uuid4())
        )

        bind_request_context(request_id=request_id)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (b"x-request-id", request_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_request_context()


def error_body(exc: ClawsterError) -> dict:
    """JSON body for a domain error."""
    error = {"message": exc.message, "type": exc.code}
    if exc.detail:
        error["detail"] = exc.detail
    if isinstance(exc, PaymentRequired) and exc.checkout_url:
        error["checkout_url"] = exc.checkout_url
    return {"error": error}


def create_app(
    settings: Optional[Settings] = None,
    phala_transport: Optional[httpx.AsyncBaseTransport] = None,
    probe_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Confidential bot hosting on Phala Cloud CVMs",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.phala_transport = phala_transport
    app.state.probe_transport = probe_transport

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware - raw ASGI, see class docstring
    app.add_middleware(RequestIDMiddleware)

    # Exception handlers
    @app.exception_handler(ClawsterError)
    async def domain_exception_handler(request: Request, exc: ClawsterError):
        """Render domain errors with their own HTTP status."""
        log = logger.error if exc.http_status >= 500 else logger.info
        log("request_failed", path=request.url.path, error_type=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=error_body(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("unhandled_exception", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "server_error"}},
        )

    # Include routers
    app.include_router(api_router)

    return app


# Create application instance
app = create_app()


def main():
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "backend.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
