"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.api.routes import health_router, metrics_router, webhooks_router
from payment_reconciler.config import get_settings
from payment_reconciler.database import dispose_db, init_db
from payment_reconciler.engine import ReconciliationEngine
from payment_reconciler.engine_config import validate_production_config
from payment_reconciler.notifications import HttpNotificationDispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup - an engine injected through create_app is used as is
    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        settings = get_settings()
        _, session_factory = init_db()
        # Raises ConfigurationError for a production profile without a secret
        engine = ReconciliationEngine.from_settings(settings, session_factory)
        for issue in validate_production_config(engine.config):
            if engine.config.is_production:
                logger.warning("Configuration: %s", issue)
            else:
                logger.debug("Configuration: %s", issue)
        app.state.engine = engine
        app.state.session_factory = session_factory
    yield
    # Shutdown
    if owns_engine:
        dispatcher = app.state.engine.dispatcher
        if isinstance(dispatcher, HttpNotificationDispatcher):
            await dispatcher.aclose()
        await dispose_db()


def create_app(
    engine: ReconciliationEngine | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Pre-built engine (tests). Built from Settings at startup
            when omitted.
        session_factory: Session factory for the health and metrics routes;
            required together with engine.
    """
    app = FastAPI(
        title="Payment Reconciler API",
        description="Payment gateway webhook reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )
    if engine is not None:
        if session_factory is None:
            raise ValueError("session_factory is required when an engine is injected")
        app.state.engine = engine
        app.state.session_factory = session_factory

    # Exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Processing failed"},
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
