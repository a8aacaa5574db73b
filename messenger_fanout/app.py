"""
FastAPI application factory.

Mounts the HTTP endpoints and the GraphQL schema (queries over HTTP,
subscriptions over WebSocket at ``/graphql``).
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from strawberry.fastapi import GraphQLRouter

from . import __version__
from .api import router as api_router
from .config import ServiceConfig
from .service import FanoutService
from .subscriptions import build_schema

log = structlog.get_logger()


def create_app(
    config: ServiceConfig | None = None,
    service: FanoutService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or (service.config if service else ServiceConfig())
    service = service or FanoutService(config)

    app = FastAPI(
        title="Messenger Fan-out",
        description="Message delivery fan-out: broker queues to GraphQL and SSE clients.",
        version=__version__,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept", "Origin"],
    )

    app.include_router(api_router)
    app.include_router(
        GraphQLRouter(build_schema(service.pubsub, service.registry)),
        prefix="/graphql",
    )

    @app.on_event("startup")
    async def on_startup():
        await service.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("app.shutting_down")
        await service.stop()

    return app
