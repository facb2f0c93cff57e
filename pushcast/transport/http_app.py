# pushcast/transport/http_app.py
"""
Application factory wiring the dispatch pipeline into FastAPI.

Typical startup::

    dispatcher = build_dispatcher()
    orders = PusherRouter(dispatcher, prefix="/orders")
    ...  # declare routes on ``orders``
    app = create_app(dispatcher, routers=[orders])

Lifecycle:
- startup:  production config check, optional strict policy validation
- shutdown: close shared HTTP sessions used by the Pusher client
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import APIRouter, FastAPI

from pushcast.config import Settings, settings as default_settings
from pushcast.core.dispatcher import DispatchResolver, Transport
from pushcast.core.registry import PolicyRegistry, get_registry
from pushcast.infra.http_client import close_all_sessions
from pushcast.infra.logging_config import setup_logging, get_logger
from pushcast.infra.metrics import get_metrics_collector
from pushcast.infra.pusher_client import get_pusher_client
from pushcast.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)

logger = get_logger(__name__)


def build_dispatcher(
    registry: Optional[PolicyRegistry] = None,
    transport: Optional[Transport] = None,
    s: Settings = default_settings,
) -> DispatchResolver:
    """Create a dispatcher from settings. Defaults to the process-wide registry and Pusher client."""
    return DispatchResolver(
        registry if registry is not None else get_registry(),
        transport if transport is not None else get_pusher_client(),
        debug=s.pusher_debug,
        default_socket_id_header=s.pusher_socket_id_header,
    )


def create_app(
    dispatcher: DispatchResolver,
    routers: Iterable[APIRouter] = (),
    s: Settings = default_settings,
    *,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the FastAPI app around an existing dispatcher and its routers."""
    if configure_logging:
        setup_logging(level=s.log_level, use_json=s.is_production)

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Application lifecycle: startup and shutdown"""

        # STARTUP
        logger.info("Starting application: env=%s", s.app_env)

        if s.is_production:
            missing = s.validate_required_for_production()
            if missing:
                logger.critical("Missing required production settings: %s", missing)
                raise RuntimeError(f"Missing production config: {missing}")

        problems = dispatcher.store.validate()
        if problems:
            if s.pusher_strict_policies:
                logger.critical("Incomplete pusher policies: %s", problems)
                dispatcher.store.raise_on_problems()
            for problem in problems:
                logger.warning("Pusher policy: %s", problem)

        logger.info(
            "Pusher dispatch ready: handlers=%d, debug=%s, socket_id_header=%s",
            len(dispatcher.store), dispatcher.debug, dispatcher.default_socket_id_header,
        )

        yield

        # SHUTDOWN
        logger.info("Shutting down application")
        await close_all_sessions()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="pushcast",
        description="Route handlers that emit Pusher events",
        lifespan=lifespan,
        docs_url=None if s.is_production else "/docs",
        redoc_url=None if s.is_production else "/redoc",
        openapi_url=None if s.is_production else "/openapi.json",
    )
    app.state.dispatcher = dispatcher

    # Order matters: last added runs first
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=s.enable_request_logging)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health():
        """Basic health check"""
        return {"status": "healthy"}

    if s.enable_metrics:
        @app.get("/metrics")
        def metrics():
            """Dispatch counters and trigger latency"""
            return get_metrics_collector().get_metrics()

    for router in routers:
        app.include_router(router)

    return app
