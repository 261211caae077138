# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the pipeline and study-aid logic, separated from API handlers:
#   - parser.py / chunker.py: Docling text extraction, character windows
#   - blob_store.py / job_store.py / chunk_store.py: persisted state
#     (PostgreSQL + pgvector, or in-memory)
#   - controller.py: poll-driven state machine for one document
#   - extraction.py / chunk_worker.py: the two units of background work
#   - dispatcher.py: Celery or thread-pool hand-off of that work
#   - embedder.py: embedding providers, validation, rate-limit hints
#   - retrieval.py / clustering.py: similarity search, representative sampling
#   - llm.py / study.py: chat, quiz and flashcard generation
#   - pipeline.py: wires the above together from settings
# =============================================================================
