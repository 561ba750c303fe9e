"""
CRM Workflow Engine - FastAPI application

Entry point with lifespan management, middleware and routing.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.v1 import executions
from .config import Settings, settings as default_settings
from .container import EngineContainer, create_container
from .logging_config import get_logger, setup_logging
from .middleware.error_handler import register_exception_handlers
from .middleware.metrics import PrometheusMiddleware

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[EngineContainer] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Engine settings (defaults to the environment)
        container: Pre-built container, e.g. with in-memory collaborators for tests
    """
    settings = settings or default_settings
    setup_logging(
        log_level=settings.LOG_LEVEL,
        log_format=settings.LOG_FORMAT,
        app_name=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CRM Workflow Engine", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
        await app.state.container.initialize()
        yield
        logger.info("Shutting down CRM Workflow Engine")
        await app.state.container.shutdown()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Executes CRM workflow graphs with AI, decision, action and human-in-the-loop nodes.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    app.state.container = container or create_container(settings)

    app.add_middleware(PrometheusMiddleware)
    register_exception_handlers(app)

    @app.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "health": "/api/v1/health",
        }

    @app.get("/metrics", response_class=PlainTextResponse, tags=["Metrics"])
    async def metrics() -> PlainTextResponse:
        """Prometheus scrape endpoint."""
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(executions.router, prefix="/api/v1", tags=["Executions"])

    logger.info("FastAPI application configured", debug=settings.DEBUG)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "workflow_engine.main:app",
        host=default_settings.HOST,
        port=default_settings.PORT,
        reload=default_settings.DEBUG,
        log_level=default_settings.LOG_LEVEL.lower(),
    )
