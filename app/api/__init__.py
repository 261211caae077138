# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - documents.py: upload, start processing, status polling, chunk trigger
#   - study.py: chat, quiz and flashcard generation
# =============================================================================
