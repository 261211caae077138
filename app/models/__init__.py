# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API, in camelCase on the wire.
# These are SEPARATE from the database models (app/db/models.py): chunk
# embeddings and claim tokens never leave the service.
# =============================================================================
