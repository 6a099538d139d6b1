"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from webhook_relay import __version__
from webhook_relay.api.routes import events_router, health_router
from webhook_relay.config import Settings, get_settings
from webhook_relay.db.connection import Database, init_db
from webhook_relay.db.models import StoreBase
from webhook_relay.dispatch.models import QueueBase
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.observability.logging import setup_logging
from webhook_relay.observability.tracing import instrument_fastapi, setup_tracing
from webhook_relay.types.api import ErrorResponse

logger = logging.getLogger(__name__)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Reject malformed requests with 400 and the offending fields."""
    fields = sorted(
        {".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()}
    )
    body = ErrorResponse(
        error=f"Missing or invalid fields: {', '.join(fields)}",
        detail="; ".join(error["msg"] for error in exc.errors()),
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())


def create_app(
    settings: Settings | None = None,
    store: Database | None = None,
    queue: DispatchQueue | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Databases that are not passed in are opened by the lifespan and closed
    on shutdown.

    Args:
        settings: Configuration. Defaults to get_settings().
        store: An already-connected job store.
        queue: An already-connected dispatch queue.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # Startup
        setup_logging(settings, "api")
        setup_tracing(settings)

        owned: list[Database] = []
        if app.state.store is None:
            app.state.store = await init_db(
                settings.database_url, "store", StoreBase.metadata, settings
            )
            owned.append(app.state.store)
        if app.state.queue is None:
            queue_db = await init_db(
                settings.queue_database_url, "queue", QueueBase.metadata, settings
            )
            app.state.queue = DispatchQueue(queue_db, settings)
            owned.append(queue_db)

        logger.info("Application started")

        yield

        # Shutdown
        for db in owned:
            await db.close()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Webhook Relay API",
        description="At-least-once webhook delivery for payment events",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.queue = queue

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(events_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app, settings)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
