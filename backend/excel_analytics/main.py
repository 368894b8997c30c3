from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from excel_analytics.api.router import api_router
from excel_analytics.config import settings, split_csv
from excel_analytics.database import async_session_factory, init_models
from excel_analytics.exceptions import AppError, app_error_handler
from excel_analytics.services.ai.insight_service import build_insight_service
from excel_analytics.services.ingestion.pipeline_runner import PipelineRunner

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.db_auto_create:
        await init_models()

    insight_service = build_insight_service(settings)
    app.state.insight_service = insight_service
    app.state.pipeline_runner = PipelineRunner(
        async_session_factory,
        insight_service,
        concurrency=settings.pipeline_concurrency,
        sample_row_count=settings.sample_row_count,
    )
    logger.info("Excel analytics API started (%s)", settings.app_env)

    yield

    await app.state.pipeline_runner.drain(timeout=SHUTDOWN_DRAIN_SECONDS)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Excel Analytics API",
        description="Spreadsheet ingestion, profiling and AI insights",
        version="0.1.0",
        docs_url="/api/docs" if settings.app_env == "development" else None,
        redoc_url="/api/redoc" if settings.app_env == "development" else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=split_csv(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.include_router(api_router)

    @app.get("/api/v1/health")
    async def health_check():
        return {"status": "healthy", "version": "0.1.0"}

    return app


app = create_app()
