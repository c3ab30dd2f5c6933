"""
AutoApply API - Main Application Entry Point

This module initializes the FastAPI application with:
- Database connection and schema initialization
- Capability providers and services bound once at startup
- In-process pipeline scheduler and the approval expiry sweep
- Domain error → HTTP status mapping
- Prometheus metrics and CORS middleware

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── CORS + Prometheus Middleware
    └── API Router
        ├── /applications - Application lifecycle
        ├── /feed         - Ranked job feed
        ├── /jobs         - Job ingestion
        └── /profiles     - User profiles
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoapply.api import api_router
from autoapply.config import Settings, get_settings
from autoapply.container import build_container
from autoapply.database import async_session, init_db
from autoapply.errors import AutoApplyError
from autoapply.middleware import setup_metrics
from autoapply.scheduler import start_scheduler, stop_scheduler
from autoapply.services.capabilities import AutomationClient, EmbeddingProvider, TextGenerator

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def handle_domain_error(request: Request, exc: AutoApplyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    embeddings: Optional[EmbeddingProvider] = None,
    text_generator: Optional[TextGenerator] = None,
    automation: Optional[AutomationClient] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Capabilities default to the providers named in settings; tests pass
    fakes instead.
    """
    settings = settings or get_settings()
    session_factory = session_factory or async_session
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            1. Initialize database tables
            2. Bind capabilities and services
            3. Fail applications whose pipeline died with the last process
            4. Start the approval expiry sweep

        Shutdown:
            1. Stop the sweep
            2. Cancel running pipelines at their next stage boundary
        """
        await init_db(session_factory)
        container = build_container(
            settings,
            session_factory,
            embeddings=embeddings,
            text_generator=text_generator,
            automation=automation,
        )
        app.state.container = container
        await container.applications.recover_interrupted()
        sweep = start_scheduler(container.applications, settings)
        yield
        stop_scheduler(sweep)
        await container.shutdown()

    app = FastAPI(
        title="AutoApply API",
        description="Job matching feed and automated application pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_metrics(app)
    app.add_exception_handler(AutoApplyError, handle_domain_error)
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
