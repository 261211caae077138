# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one schema:
#
# - Async engine (asyncpg): used by FastAPI request handlers and by the
#   retrieval service (nearest-neighbour search, representative sampling).
# - Sync engine (psycopg2): used by the pipeline controller, the extraction
#   worker and the chunk workers. These run inside Celery tasks or worker
#   threads, neither of which has an event loop.
#
# COMMIT POLICY:
# Both session helpers commit on clean exit and roll back on exception.
# Pipeline state transitions are single UPDATE statements, so each helper
# call is one short transaction and no lock is held across a network call
# (embedding, blob download, LLM).
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo=settings.debug: log SQL while developing.
# - pool_size / max_overflow: sized for a handful of concurrent pollers.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False keeps loaded attributes readable after commit,
# which async sessions cannot lazily refresh.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — Lazy Initialization
# ---------------------------------------------------------------------------
# psycopg2 is only needed where pipeline code runs against PostgreSQL.
# Lazy init keeps the API importable without it in memory mode.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session.

    Usage:
        with get_sync_session() as session:
            session.execute(update(Chunk).where(...).values(...))
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session is committed when the request completes and rolled back
    if the handler raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models() -> None:
    """
    Create the pgvector extension and all tables if they do not exist.

    Called from the FastAPI lifespan when store_backend == "postgres".
    """
    # Imported here so the ORM module is registered on Base before create_all
    from app.db.models import Base

    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
