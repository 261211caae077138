# =============================================================================
# Database Package
# =============================================================================
# Provides async/sync SQLAlchemy engines, session management, and ORM models.
#
# Key exports:
#   - get_async_session / get_sync_session: session lifecycles
#   - Base: SQLAlchemy declarative base for ORM models
#   - Job, Chunk: pipeline job per document and its embedded chunks
# =============================================================================
