# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn app.main:app --reload
#   celery -A app.workers.celery_app worker --loglevel=info
#   celery -A app.workers.celery_app beat --loglevel=info
#
# Or, without Postgres / Redis:
#   STORE_BACKEND=memory DISPATCHER=thread uvicorn app.main:app
#
# STARTUP:
# In postgres mode the lifespan hook creates the pgvector extension and the
# tables. The in-memory mode needs no setup.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.documents import router as documents_router
from app.api.study import router as study_router
from app.config import settings
from app.models.responses import HealthResponse

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting %s v%s (store=%s, dispatcher=%s)",
        settings.app_name, settings.app_version,
        settings.store_backend, settings.dispatcher,
    )
    if settings.store_backend == "postgres":
        from app.db.engine import async_engine, init_models

        await init_models()
        logger.info("Database schema ready")
        yield
        await async_engine.dispose()
    else:
        yield
    logger.info("Shutting down %s", settings.app_name)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Resumable document processing pipeline (extract, chunk, embed) "
            "with retrieval-backed chat, quizzes and flashcards."
        ),
        lifespan=lifespan,
    )
    app.include_router(documents_router)
    app.include_router(study_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok", version=settings.app_version, service=settings.app_name,
        )

    return app


app = create_app()
