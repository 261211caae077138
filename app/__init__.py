# =============================================================================
# Study Document Pipeline
# =============================================================================
# Ingests study documents, splits them into chunks, embeds every chunk and
# serves retrieval-backed chat, quizzes and flashcards.
#
# The embedding pipeline is poll-driven: each status poll both reports
# progress and advances the job (claims extraction, dispatches a bounded
# number of chunk workers, finalises the job).
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (documents, study aids)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Business logic (chunking, extraction, embedding,
#   │                    controller, chunk worker, retrieval, clustering)
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
