"""
Hive - FastAPI Application
==========================

Wires the routers, the structured logging setup and the database
lifecycle into one app. Run with ``uvicorn hive.api.main:app``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from hive.api import auth, dashboard, projects, tasks
from hive.api.deps import DbSession
from hive.core.config import settings
from hive.core.database import close_db, init_db
from hive.core.pipeline.stages import PIPELINE_STAGES
from hive.core.schemas import ErrorResponse, HealthResponse


def configure_logging() -> None:
    """Route structlog through stdlib logging at ``LOG_LEVEL``."""
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create missing tables on startup, dispose the engine on shutdown."""
    logger.info(
        "hive_starting",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        dispatch_backend=settings.AGENT_DISPATCH_BACKEND,
        callback_base_url=settings.HIVE_CALLBACK_BASE_URL,
    )
    await init_db()

    yield

    await close_db()
    logger.info("hive_stopped")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Task pipeline orchestrator - drives tasks through agent-executed stages",
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # The dashboard frontend is served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        """Last resort: domain errors are mapped inside the routers."""
        logger.error(
            "request_failed",
            exc_info=exc,
            method=request.method,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=str(exc) if settings.is_development else None,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
    async def health_check(db: DbSession) -> HealthResponse:
        """Degraded when the store cannot answer a trivial query."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.warning("health_database_unavailable", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            dispatch_backend=settings.AGENT_DISPATCH_BACKEND,
        )

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Where to find things."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "api": settings.API_V1_PREFIX,
            "dashboard": f"{settings.API_V1_PREFIX}/hive/dashboard",
            "pipeline": [stage.value for stage in PIPELINE_STAGES],
        }

    for module in (auth, projects, tasks, dashboard):
        app.include_router(module.router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hive.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
